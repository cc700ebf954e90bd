"""Dispute model. The dispute lifecycle is driven elsewhere; escrow only reads status."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskpay.database import Base, UTCDateTime


class DisputeStatus(enum.Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


# Statuses that block any release of the booking's payment.
BLOCKING_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING)


class Dispute(Base):
    __tablename__ = "disputes"

    dispute_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.booking_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    raised_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

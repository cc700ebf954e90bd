"""Performer payout account (Stripe Connect)."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskpay.database import Base, UTCDateTime


class PayoutAccountStatus(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RESTRICTED = "restricted"


class PayoutAccount(Base):
    __tablename__ = "payout_accounts"

    payout_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.user_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    stripe_account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    account_status: Mapped[PayoutAccountStatus] = mapped_column(
        Enum(PayoutAccountStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PayoutAccountStatus.PENDING,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

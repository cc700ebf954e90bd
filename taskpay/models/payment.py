"""Escrow ledger models: one Payment row per booking plus an append-only audit log."""

import enum
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskpay.database import Base, JSONType, UTCDateTime


class PaymentStatus(enum.Enum):
    """External charge lifecycle."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EscrowStatus(enum.Enum):
    """Fund-custody lifecycle (the primary state machine)."""
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class ReleaseType(enum.Enum):
    MANUAL = "manual"
    AUTO_72HR = "auto_72hr"
    DISPUTE_RESOLUTION = "dispute_resolution"


class DisbursementStatus(enum.Enum):
    """Outbound money movement after funds leave escrow (transfer or refund)."""
    AWAITING_ACCOUNT = "awaiting_account"
    PENDING = "pending"
    UNKNOWN = "unknown"
    COMPLETED = "completed"
    FAILED = "failed"


# Valid escrow transitions. Released and refunded are terminal.
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.HELD: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED},
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}

# Disbursements the reconciliation job may pick up again.
RETRYABLE_DISBURSEMENTS = (
    DisbursementStatus.AWAITING_ACCOUNT,
    DisbursementStatus.FAILED,
    DisbursementStatus.UNKNOWN,
)


class LedgerAction(enum.Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    DISBURSED = "disbursed"
    DISBURSEMENT_FAILED = "disbursement_failed"


@dataclass(frozen=True)
class Released:
    """Funds have left escrow; ``transferred`` says whether they reached the payee."""
    transferred: bool


class Payment(Base):
    __tablename__ = "payments"

    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.booking_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=False
    )
    payee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=False
    )

    task_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payout_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="cad")

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    escrow_status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.HELD,
        index=True,
    )
    external_charge_ref: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    auto_release_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    auto_release_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    release_type: Mapped[ReleaseType | None] = mapped_column(
        Enum(ReleaseType, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )

    disbursement_status: Mapped[DisbursementStatus | None] = mapped_column(
        Enum(DisbursementStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    transfer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    disbursement_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_disbursement_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payout_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def release_state(self) -> Released | None:
        if self.escrow_status != EscrowStatus.RELEASED:
            return None
        return Released(transferred=self.disbursement_status == DisbursementStatus.COMPLETED)

    @property
    def platform_revenue(self) -> Decimal:
        return self.amount - self.tax_amount - self.payout_amount


class PaymentAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "payment_audit_log"

    audit_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[LedgerAction] = mapped_column(
        Enum(LedgerAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)

"""Create profiles, tasks, bookings, payments, payment_audit_log, payout_accounts,
disputes and notifications.

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ENUMS = (
    "taskstatus", "bookingstatus", "paymentstatus", "escrowstatus", "releasetype",
    "disbursementstatus", "ledgeraction", "payoutaccountstatus", "disputestatus",
)


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("stripe_customer_id", sa.String(64), unique=True, nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.Uuid(), primary_key=True),
        sa.Column("task_giver_id", sa.Uuid(), sa.ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("pay_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "assigned", "in_progress", "completed", "cancelled", name="taskstatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("deposit_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.Uuid(), primary_key=True),
        sa.Column("task_id", sa.Uuid(), sa.ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("task_doer_id", sa.Uuid(), sa.ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "in_progress", "completed", "cancelled", name="bookingstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_agreed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Uuid(), primary_key=True),
        sa.Column("booking_id", sa.Uuid(), sa.ForeignKey("bookings.booking_id", ondelete="RESTRICT"), unique=True, nullable=False),
        sa.Column("task_id", sa.Uuid(), sa.ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payer_id", sa.Uuid(), sa.ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payee_id", sa.Uuid(), sa.ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("task_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payout_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="cad"),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="paymentstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "escrow_status",
            sa.Enum("held", "released", "refunded", "disputed", name="escrowstatus"),
            nullable=False,
            server_default="held",
        ),
        sa.Column("external_charge_ref", sa.String(255), unique=True, nullable=False),
        sa.Column("auto_release_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_release_triggered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "release_type",
            sa.Enum("manual", "auto_72hr", "dispute_resolution", name="releasetype"),
            nullable=True,
        ),
        sa.Column(
            "disbursement_status",
            sa.Enum("awaiting_account", "pending", "unknown", "completed", "failed", name="disbursementstatus"),
            nullable=True,
        ),
        sa.Column("transfer_ref", sa.String(255), nullable=True),
        sa.Column("refund_ref", sa.String(255), nullable=True),
        sa.Column("disbursement_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_disbursement_error", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("task_amount + platform_fee + tax_amount = amount", name="ck_payments_amount_split"),
        sa.CheckConstraint("payout_amount = task_amount - platform_fee", name="ck_payments_payout"),
    )
    op.create_index("ix_payments_task_id", "payments", ["task_id"])
    op.create_index("ix_payments_escrow_status", "payments", ["escrow_status"])
    op.create_index("ix_payments_auto_release_at", "payments", ["auto_release_at"])
    # Sweep candidates: held, confirmed, not yet auto-released.
    op.create_index(
        "ix_payments_auto_release_due",
        "payments",
        ["auto_release_at"],
        postgresql_where=sa.text(
            "escrow_status = 'held' AND status = 'completed' AND auto_release_triggered = false"
        ),
    )

    op.create_table(
        "payment_audit_log",
        sa.Column("audit_id", sa.Uuid(), primary_key=True),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "confirmed", "released", "refunded", "disputed",
                "disbursed", "disbursement_failed",
                name="ledgeraction",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_payment_audit_log_payment_id", "payment_audit_log", ["payment_id"])

    op.create_table(
        "payout_accounts",
        sa.Column("payout_account_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("profiles.user_id", ondelete="RESTRICT"), unique=True, nullable=False),
        sa.Column("stripe_account_id", sa.String(64), unique=True, nullable=False),
        sa.Column(
            "account_status",
            sa.Enum("pending", "active", "restricted", name="payoutaccountstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column("booking_id", sa.Uuid(), sa.ForeignKey("bookings.booking_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("raised_by", sa.Uuid(), sa.ForeignKey("profiles.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "investigating", "resolved", name="disputestatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("resolution", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_disputes_booking_id", "disputes", ["booking_id"])

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(256), nullable=True),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("disputes")
    op.drop_table("payout_accounts")
    op.drop_table("payment_audit_log")
    op.drop_table("payments")
    op.drop_table("bookings")
    op.drop_table("tasks")
    op.drop_table("profiles")
    for name in _ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")

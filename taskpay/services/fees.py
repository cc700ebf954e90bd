"""Fee calculation for escrowed task payments.

Fee structure (rates configurable via settings):

1. **Platform fee**: % of the agreed task amount. Charged to the requester on
   top of the task amount and withheld from the performer's payout.

2. **Tax**: % of the task amount, charged to the requester and passed through.

For a task amount ``A``:

    total_charge  = A + fee + tax        (what the requester pays)
    payout_amount = A - fee              (what the performer receives)
    platform_revenue = total_charge - tax - payout_amount

All arithmetic is done in integer cents, rounding half-up per line item, so
``payout_amount + platform_revenue + tax == total_charge`` holds exactly.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from taskpay.config import settings
from taskpay.errors import ValidationFailed

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    """Itemized split of a task amount."""
    task_amount: Decimal
    platform_fee: Decimal
    tax: Decimal
    payout_amount: Decimal
    total_charge: Decimal

    @property
    def platform_revenue(self) -> Decimal:
        return self.total_charge - self.tax - self.payout_amount

    @property
    def total_charge_cents(self) -> int:
        return to_cents(self.total_charge)

    def to_dict(self) -> dict:
        return {
            "task_amount": str(self.task_amount),
            "platform_fee": str(self.platform_fee),
            "tax": str(self.tax),
            "payout_amount": str(self.payout_amount),
            "total_charge": str(self.total_charge),
            "platform_revenue": str(self.platform_revenue),
        }


def to_cents(amount: Decimal) -> int:
    """Convert a currency amount to integer minor units."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def _rate_of(cents: int, rate: Decimal) -> int:
    return int((Decimal(cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_fees(task_amount: Decimal | int | str) -> FeeBreakdown:
    """Split a task amount into fee, tax, payout and total charge.

    Raises ValidationFailed for non-numeric, non-positive or oversized amounts.
    """
    try:
        amount = Decimal(str(task_amount))
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"Invalid amount: {task_amount!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed("Amount must be positive")
    if amount > settings.max_task_amount:
        raise ValidationFailed(f"Amount exceeds maximum of {settings.max_task_amount}")

    task_cents = to_cents(amount)
    if task_cents <= 0:
        raise ValidationFailed("Amount must be at least 0.01")
    fee_cents = _rate_of(task_cents, settings.fee_platform_rate)
    tax_cents = _rate_of(task_cents, settings.fee_tax_rate)

    return FeeBreakdown(
        task_amount=from_cents(task_cents),
        platform_fee=from_cents(fee_cents),
        tax=from_cents(tax_cents),
        payout_amount=from_cents(task_cents - fee_cents),
        total_charge=from_cents(task_cents + fee_cents + tax_cents),
    )


def get_fee_schedule() -> dict:
    """Return the current fee schedule for display to requesters and performers."""
    example = calculate_fees(Decimal("100.00"))
    return {
        "currency": settings.currency,
        "platform_fee": {
            "rate_percent": str(settings.fee_platform_rate * 100),
            "charged_to": "Requester (added to the task amount) and withheld from the performer's payout",
        },
        "tax": {
            "rate_percent": str(settings.fee_tax_rate * 100),
            "charged_to": "Requester",
        },
        "escrow": {
            "auto_release_hours": settings.auto_release_hours,
            "refund_cutoff_hours": settings.refund_cutoff_hours,
        },
        "example": example.to_dict(),
    }

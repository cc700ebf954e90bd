"""Stripe adapter.

Every processor call goes through this module so timeouts, idempotency keys
and error translation are handled the same way everywhere. The Stripe SDK is
blocking; calls run in the default thread executor and are bounded by
``settings.stripe_timeout_seconds``.

Error mapping:
- connection failures and timeouts → ``TransferStatusUnknown`` (the request
  may have reached Stripe; retry with the same idempotency key)
- rate limits and 5xx → ``ExternalServiceError(retryable=True)``
- everything else → ``ExternalServiceError(retryable=False)``
"""

import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import stripe

from taskpay.config import settings
from taskpay.errors import ExternalServiceError, TransferStatusUnknown, ValidationFailed

logger = logging.getLogger(__name__)

# Grace on top of the HTTP client timeout before the executor call is abandoned.
_EXECUTOR_GRACE_SECONDS = 5

_configured = False


@dataclass
class PaymentIntentResult:
    id: str
    status: str
    amount_cents: int
    currency: str
    client_secret: str | None = None
    captured: bool = False
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class TransferResult:
    id: str
    amount_cents: int
    currency: str
    destination_account: str


@dataclass
class RefundResult:
    id: str
    amount_cents: int
    status: str
    payment_intent_id: str


def _configure() -> None:
    global _configured
    if _configured:
        return
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = settings.stripe_max_network_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)
    _configured = True


def _translate(exc: Exception, operation: str) -> ExternalServiceError:
    if isinstance(exc, stripe.APIConnectionError):
        logger.error("Stripe %s: connection error, outcome unknown: %s", operation, exc)
        return TransferStatusUnknown(
            f"Payment processor did not respond during {operation}", retryable=True,
        )
    if isinstance(exc, stripe.RateLimitError):
        logger.warning("Stripe %s: rate limited", operation)
        return ExternalServiceError("Payment processor rate limit exceeded", retryable=True)
    if isinstance(exc, stripe.APIError):
        logger.error("Stripe %s: API error: %s", operation, exc)
        return ExternalServiceError("Payment processor error", retryable=True)
    if isinstance(exc, stripe.CardError):
        logger.warning("Stripe %s: card error %s", operation, exc.code)
        return ExternalServiceError(str(exc.user_message or exc), code="card_declined")
    if isinstance(exc, stripe.AuthenticationError):
        logger.critical("Stripe %s: authentication failed, check STRIPE_SECRET_KEY", operation)
        return ExternalServiceError("Payment processor authentication failed")
    if isinstance(exc, stripe.InvalidRequestError):
        logger.error("Stripe %s: invalid request (%s): %s", operation, exc.code, exc)
        return ExternalServiceError(f"Payment processor rejected {operation}: {exc.user_message or exc}")
    logger.exception("Stripe %s: unexpected error", operation)
    return ExternalServiceError(f"Unexpected payment processor error during {operation}")


async def _call(operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking Stripe call off the event loop with a bounded wait."""
    if not settings.stripe_configured:
        raise ExternalServiceError("Payment processor is not configured")
    _configure()
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
            timeout=settings.stripe_timeout_seconds + _EXECUTOR_GRACE_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("Stripe %s timed out after %ss", operation, settings.stripe_timeout_seconds)
        raise TransferStatusUnknown(f"Payment processor timed out during {operation}", retryable=True)
    except stripe.StripeError as exc:
        raise _translate(exc, operation) from exc


async def get_or_create_customer(email: str | None, user_id: str, existing_id: str | None = None) -> str:
    """Return the Stripe customer id for a user, creating one if needed."""
    if existing_id:
        return existing_id
    customer = await _call(
        "create_customer",
        stripe.Customer.create,
        email=email,
        metadata={"user_id": user_id},
        idempotency_key=f"customer:{user_id}",
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer.id


def _intent_result(intent: Any) -> PaymentIntentResult:
    return PaymentIntentResult(
        id=intent.id,
        status=intent.status,
        amount_cents=intent.amount,
        currency=intent.currency,
        client_secret=getattr(intent, "client_secret", None),
        captured=intent.status == "succeeded",
        metadata=dict(intent.metadata or {}),
    )


async def create_payment_intent(
    amount_cents: int,
    currency: str,
    customer_id: str | None,
    metadata: dict[str, str],
    idempotency_key: str,
) -> PaymentIntentResult:
    if amount_cents <= 0:
        raise ValidationFailed("Charge amount must be positive")
    intent = await _call(
        "create_payment_intent",
        stripe.PaymentIntent.create,
        amount=amount_cents,
        currency=currency,
        customer=customer_id,
        capture_method="automatic",
        automatic_payment_methods={"enabled": True},
        metadata=metadata,
        idempotency_key=idempotency_key,
    )
    logger.info("Created PaymentIntent %s for %d %s", intent.id, amount_cents, currency)
    return _intent_result(intent)


async def retrieve_payment_intent(payment_intent_id: str) -> PaymentIntentResult:
    intent = await _call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id)
    return _intent_result(intent)


async def cancel_payment_intent(payment_intent_id: str, idempotency_key: str) -> PaymentIntentResult:
    intent = await _call(
        "cancel_payment_intent",
        stripe.PaymentIntent.cancel,
        payment_intent_id,
        idempotency_key=idempotency_key,
    )
    logger.info("Canceled PaymentIntent %s", payment_intent_id)
    return _intent_result(intent)


async def create_transfer(
    amount_cents: int,
    currency: str,
    destination: str,
    metadata: dict[str, str],
    idempotency_key: str,
) -> TransferResult:
    """Move funds from the platform balance to a connected account."""
    transfer = await _call(
        "create_transfer",
        stripe.Transfer.create,
        amount=amount_cents,
        currency=currency,
        destination=destination,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )
    logger.info("Created transfer %s of %d %s to %s", transfer.id, amount_cents, currency, destination)
    return TransferResult(
        id=transfer.id,
        amount_cents=transfer.amount,
        currency=transfer.currency,
        destination_account=destination,
    )


async def create_refund(
    payment_intent_id: str,
    idempotency_key: str,
    metadata: dict[str, str] | None = None,
    reason: str = "requested_by_customer",
) -> RefundResult:
    """Refund a captured charge in full."""
    refund = await _call(
        "create_refund",
        stripe.Refund.create,
        payment_intent=payment_intent_id,
        reason=reason,
        metadata=metadata or {},
        idempotency_key=idempotency_key,
    )
    logger.info("Created refund %s for PaymentIntent %s", refund.id, payment_intent_id)
    return RefundResult(
        id=refund.id,
        amount_cents=refund.amount,
        status=refund.status,
        payment_intent_id=payment_intent_id,
    )


def construct_webhook_event(payload: bytes, signature: str | None) -> dict:
    """Verify a webhook signature and return the event as a dict.

    Raises ValidationFailed on a bad payload or signature.
    """
    if not settings.stripe_webhook_secret:
        raise ExternalServiceError("Webhook secret is not configured")
    if not signature:
        raise ValidationFailed("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    except ValueError:
        raise ValidationFailed("Invalid webhook payload")
    except stripe.SignatureVerificationError:
        logger.warning("Rejected webhook with invalid signature")
        raise ValidationFailed("Invalid webhook signature")
    return json.loads(payload)

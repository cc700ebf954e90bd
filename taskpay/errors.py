"""Domain errors for the escrow engine.

Each error is an ``HTTPException`` so services can raise it directly and the
API renders it as ``{"detail": ..., "code": ...}``. The ``code`` is stable and
lets clients explain *why* an operation was refused (e.g. an open dispute).
"""

from fastapi import HTTPException


class EscrowError(HTTPException):
    status_code: int = 400
    code: str = "escrow_error"

    def __init__(self, detail: str, code: str | None = None) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail)
        if code is not None:
            self.code = code


class ValidationFailed(EscrowError):
    status_code = 422
    code = "validation_error"


class Forbidden(EscrowError):
    """Caller does not own the resource (ownership mismatch)."""

    status_code = 403
    code = "forbidden"


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"


class ConflictError(EscrowError):
    """The row is in a state incompatible with the requested transition."""

    status_code = 409
    code = "conflict"


class PolicyBlocked(EscrowError):
    status_code = 409
    code = "policy_blocked"


class DisputeOpen(PolicyBlocked):
    code = "dispute_open"


class RefundWindowClosed(PolicyBlocked):
    code = "refund_window_closed"


class PaymentNotReady(PolicyBlocked):
    code = "payment_not_ready"


class PaymentFailed(PolicyBlocked):
    code = "payment_failed"


class ExternalServiceError(EscrowError):
    """Payment processor call failed."""

    status_code = 502
    code = "external_service_error"

    def __init__(self, detail: str, code: str | None = None, retryable: bool = False) -> None:
        super().__init__(detail, code)
        self.retryable = retryable


class TransferStatusUnknown(ExternalServiceError):
    """The processor call timed out; the operation may or may not have happened."""

    code = "external_status_unknown"

"""ASGI middleware: Content-Length cap, response hardening headers, access log."""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("taskpay.access")

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Refuse requests whose declared Content-Length exceeds max_bytes."""

    def __init__(self, app, max_bytes: int = 262_144) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.max_bytes = max_bytes

    def _too_large(self, request: Request) -> bool:
        declared = request.headers.get("content-length", "")
        return request.method in _BODY_METHODS and declared.isdigit() and int(declared) > self.max_bytes

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        if self._too_large(request):
            logger.warning("Rejected %s %s: body over %d bytes", request.method, request.url.path, self.max_bytes)
            return JSONResponse(
                status_code=413,
                content={"detail": f"Request body exceeds {self.max_bytes} bytes", "code": "payload_too_large"},
            )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Stamp every response with hardening headers; payment data is never cached."""

    headers = {
        "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        response = await call_next(request)
        response.headers.update(self.headers)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and latency for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
        )
        return response

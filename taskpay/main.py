"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskpay.config import settings
from taskpay.errors import EscrowError
from taskpay.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware, SecurityHeadersMiddleware
from taskpay.routers import disputes, fees, internal, payments, webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    sweep_task = None
    if settings.auto_release_loop_enabled:
        from taskpay.services.auto_release import run_auto_release_loop
        sweep_task = asyncio.create_task(run_auto_release_loop())
    else:
        logger.info("In-process auto-release loop disabled; expecting external scheduler")

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Task Payments & Escrow",
    description="Escrow, auto-release and refunds for task marketplace bookings",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=exc.headers,
    )


# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added runs outermost
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=262_144)
app.add_middleware(RequestLoggingMiddleware)

# Routers
app.include_router(fees.router)
app.include_router(payments.router)
app.include_router(disputes.router)
app.include_router(internal.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}

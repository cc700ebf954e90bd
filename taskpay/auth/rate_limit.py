"""Per-caller request throttling in Redis (GCRA, the token bucket's single-key form)."""

import time
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from taskpay.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


# KEYS[1] holds the theoretical arrival time of the next request.
# ARGV: burst, seconds per token, now. Returns {allowed, remaining, retry_after}.
_GCRA_SCRIPT = """
local burst = tonumber(ARGV[1])
local interval = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local tat = tonumber(redis.call('GET', KEYS[1]) or now)
if tat < now then tat = now end

local next_tat = tat + interval
local allow_at = next_tat - burst * interval
if now < allow_at then
    return {0, 0, math.ceil(allow_at - now)}
end

redis.call('SET', KEYS[1], next_tat, 'PX', math.ceil((next_tat - now) * 1000))
return {1, math.floor((now - allow_at) / interval), 0}
"""

_LIMITS = {
    "payment": ("rate_limit_payment_capacity", "rate_limit_payment_refill_per_min"),
    "write": ("rate_limit_write_capacity", "rate_limit_write_refill_per_min"),
    "read": ("rate_limit_read_capacity", "rate_limit_read_refill_per_min"),
}


def _category(method: str, path: str) -> str:
    if method == "POST" and (path.startswith("/payments") or path.endswith("/refund")):
        return "payment"
    if method in ("POST", "PATCH", "DELETE"):
        return "write"
    return "read"


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) for an endpoint."""
    category = _category(method, path)
    capacity_field, refill_field = _LIMITS[category]
    return getattr(settings, capacity_field), getattr(settings, refill_field), category


def _bucket_owner(request: Request) -> str:
    """Bearer token tail when present, else the first forwarded address or peer host.

    The token is not verified here; auth runs separately on the same request.
    """
    scheme, _, credential = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credential.strip():
        return "token:" + credential.strip()[-32:]
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    host = forwarded or (request.client.host if request.client else "unknown")
    return "ip:" + host


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    capacity, refill_per_min, category = _get_rate_config(request.method.upper(), request.url.path)
    key = f"ratelimit:{_bucket_owner(request)}:{category}"

    allowed, remaining, retry_after = (
        int(v) for v in await redis.eval(_GCRA_SCRIPT, 1, key, capacity, 60.0 / refill_per_min, time.time())
    )

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(max(retry_after, 1))},
        )

"""Bearer-token and service-key verification dependencies for FastAPI.

User tokens are HS256 JWTs issued by the identity provider; ``sub`` is the
user id. Internal callers (cron, scheduler) authenticate with a shared
``X-Service-Key``.
"""

import hmac
import uuid

from fastapi import Header, HTTPException, Request
from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

from taskpay.config import settings


class AuthenticatedUser:
    """Container for the verified caller identity."""

    def __init__(self, user_id: uuid.UUID, claims: dict) -> None:
        self.user_id = user_id
        self.claims = claims


def _signing_key() -> OctKey:
    return OctKey.import_key(settings.auth_jwt_secret)


def decode_token(token: str) -> AuthenticatedUser:
    """Verify a bearer token and return the caller. Raises 401 on any failure."""
    try:
        decoded = jwt.decode(token, _signing_key(), algorithms=["HS256"])
        registry = jwt.JWTClaimsRegistry(
            sub={"essential": True},
            exp={"essential": True},
            aud={"essential": True, "value": settings.auth_jwt_audience},
        )
        registry.validate(decoded.claims)
        user_id = uuid.UUID(decoded.claims["sub"])
    except (JoseError, ValueError, KeyError, TypeError):
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return AuthenticatedUser(user_id=user_id, claims=decoded.claims)


async def get_current_user(request: Request) -> AuthenticatedUser:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization scheme",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_token(token.strip())


async def require_service_key(x_service_key: str | None = Header(default=None)) -> None:
    """Constant-time check of the internal service credential."""
    if not x_service_key or not hmac.compare_digest(
        x_service_key.encode(), settings.service_api_key.encode()
    ):
        raise HTTPException(status_code=403, detail="Invalid service key")

"""
Bearer-token authentication.

Tokens are HS256 JWTs carrying user_id, role and exp. Routes declare what they
need through the get_current_user / require_admin dependencies; failures raise
domain errors that the app maps to 401 and 403.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request

from api.common import get_real_ip
from api.enums import UserRole
from api.errors import ForbiddenError, UnauthenticatedError
from config import JWT_ALGORITHM, JWT_EXPIRY_HOURS, JWT_SECRET

# Security event logger for authentication events
security_logger = logging.getLogger("security.auth")


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def create_access_token(user_id: int, role: str, expires_in: Optional[timedelta] = None) -> str:
    """Issue a signed token; expires after JWT_EXPIRY_HOURS unless expires_in is given."""
    expires_in = expires_in if expires_in is not None else timedelta(hours=JWT_EXPIRY_HOURS)
    payload = {
        "user_id": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Verify a token and return its claims.

    Raises:
        UnauthenticatedError: bad signature, expired, or missing claims
    """
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "user_id", "role"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError:
        raise UnauthenticatedError("Invalid token")
    return claims


def _auth_failure(request: Request, reason: str, detail: str) -> UnauthenticatedError:
    security_logger.warning(
        f"Auth failed: {detail}",
        extra={
            "event": "auth_failure",
            "reason": reason,
            "path": request.url.path,
            "client_ip": get_real_ip(request),
        },
    )
    return UnauthenticatedError(detail)


async def get_current_user(request: Request) -> CurrentUser:
    """Dependency: the caller identified by an `Authorization: Bearer <token>` header."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if not header:
        raise _auth_failure(request, "no_credentials", "Authorization header required")
    if scheme.lower() != "bearer" or not token.strip():
        raise _auth_failure(request, "bad_scheme", "Invalid authorization header")

    try:
        claims = decode_access_token(token.strip())
    except UnauthenticatedError as e:
        raise _auth_failure(request, "invalid_token", e.detail)

    try:
        user_id = int(claims["user_id"])
    except (TypeError, ValueError):
        raise _auth_failure(request, "invalid_claims", "Invalid token")

    return CurrentUser(user_id=user_id, role=str(claims["role"]))


async def require_admin(request: Request, user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Dependency: like get_current_user, but only for the admin role."""
    if not user.is_admin:
        security_logger.warning(
            "Admin access denied",
            extra={
                "event": "auth_forbidden",
                "reason": "not_admin",
                "path": request.url.path,
                "client_ip": get_real_ip(request),
                "user_id": user.user_id,
            },
        )
        raise ForbiddenError("Admin access required")
    return user

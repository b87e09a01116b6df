"""
Decision Pipeline Security Utilities

JWT handling for dashboard users and service-role detection for scheduled calls.
"""

import hmac
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT. Returns None when invalid or expired."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def is_service_role_token(token: str) -> bool:
    """Scheduler calls authenticate with the raw service-role key."""
    return hmac.compare_digest(token.encode(), get_settings().service_role_key.encode())

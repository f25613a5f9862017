"""
Auth utilities for the MarketHub API.

Validates Supabase-issued JWTs and extracts the caller's user_id and email.
Outside production, falls back to X-User-Id / X-User-Email headers (tests, local runs).
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from markethub.core.config import settings
from markethub.core.errors import AuthenticationRequiredError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


def verify_supabase_jwt(token: str) -> AuthenticatedUser:
    """
    Verify a Supabase access token and extract the user.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        AuthenticatedUser built from the 'sub' and 'email' claims

    Raises:
        AuthenticationRequiredError: Missing secret, invalid or expired token
    """
    if not settings.SUPABASE_JWT_SECRET:
        logger.warning("SUPABASE_JWT_SECRET not configured; rejecting bearer token")
        raise AuthenticationRequiredError("Authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequiredError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationRequiredError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationRequiredError("Token has no subject")

    return AuthenticatedUser(user_id=user_id, email=payload.get("email"))


def _header_auth_allowed() -> bool:
    return settings.ENV.lower() != "production"


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: caller user ID"),
    x_user_email: Optional[str] = Header(None, description="Non-production: caller email"),
) -> AuthenticatedUser:
    """
    Resolve the caller from the request.

    Priority:
    1. Supabase JWT from Authorization header
    2. X-User-Id (+ optional X-User-Email) header outside production
    3. AuthenticationRequiredError
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user = verify_supabase_jwt(auth_header[7:])
        request.state.user_id = user.user_id
        return user

    if x_user_id and _header_auth_allowed():
        request.state.user_id = x_user_id
        return AuthenticatedUser(user_id=x_user_id, email=x_user_email)

    raise AuthenticationRequiredError("Missing Authorization (Bearer JWT)")

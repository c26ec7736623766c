"""
Auth utilities.

Validates Clerk JWTs and extracts user_id from request context.
Falls back to the X-User-Id header outside production (tests, local dev).
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from resumesaas.core.config import is_production, settings
from resumesaas.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def verify_clerk_jwt(token: str) -> Optional[str]:
    """
    Verify a Clerk session JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when Clerk is not configured

    Raises:
        UnauthorizedError: Invalid or expired token
    """
    if not settings.CLERK_SECRET_KEY:
        logger.debug("No CLERK_SECRET_KEY configured, skipping JWT validation")
        return None

    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.CLERK_SECRET_KEY,
            algorithms=["HS256"],
            audience=settings.CLERK_AUDIENCE,
            issuer=settings.CLERK_ISSUER,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.PyJWTError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    return user_id


def header_auth_allowed() -> bool:
    return settings.ALLOW_HEADER_AUTH and not is_production()


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Test/dev user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Clerk JWT from Authorization header
    2. X-User-Id header (non-production only)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_clerk_jwt(auth_header[7:].strip())
        if user_id:
            request.state.user_id = user_id
            return user_id

    if x_user_id and header_auth_allowed():
        user_id = x_user_id.strip()
        if user_id:
            request.state.user_id = user_id
            return user_id

    raise UnauthorizedError("Authentication required")

"""
Auth utilities for the PromptPro API.

Validates identity-provider JWTs and extracts user_id from request context.
Falls back to X-User-Id header outside production (tests, local dev).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
from promptpro.core.config import settings, split_csv
import jwt
import logging

logger = logging.getLogger(__name__)


def _algorithms():
    return split_csv(settings.JWT_ALGORITHMS) or ["HS256"]


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a bearer JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.JWT_SECRET_KEY:
        logger.debug("No JWT_SECRET_KEY configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=_algorithms(),
            options={"verify_signature": True, "verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID")
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. JWT from Authorization header
    2. X-User-Id header (not in production)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:])
        if user_id:
            return user_id

    if x_user_id and x_user_id.strip() and settings.ENV != "production":
        return x_user_id.strip()

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )

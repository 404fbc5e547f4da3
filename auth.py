"""
Authentication dependencies

Identity is issued by the external identity provider as a signed JWT carrying
the user id (``sub``) and email. This module only verifies it.
"""

from dataclasses import dataclass
from typing import Optional
from fastapi import HTTPException, Header, Cookie
import logging

from auth_utils import decode_jwt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str = ""


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Cookie first (browser clients), then Bearer header (API consumers)
    if auth_token:
        return auth_token
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "").strip()
    return None


# Dependency for protected routes
async def get_current_identity(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Identity:
    """
    Dependency function to get the authenticated caller.

    Authentication priority:
    1. Check auth_token cookie first
    2. Fallback to Authorization header (Bearer token)
    3. Raise 401 if neither is found or the token does not verify
    """
    token = _extract_token(auth_token, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    try:
        payload = decode_jwt(token)
    except ValueError as e:
        logger.error(f"Cannot verify identity tokens: {e}")
        raise HTTPException(status_code=401, detail="Authentication unavailable")
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return Identity(user_id=str(user_id), email=payload.get("email") or "")

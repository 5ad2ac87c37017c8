"""
Dashboard authentication for the stored-report endpoints.

GET /api/dmarc/records is the only user-facing route; the inbound webhooks
use a shared secret instead (see routers/dmarc_intake.py). Callers send the
Supabase session token as "Authorization: Bearer <jwt>".

With SUPABASE_JWT_SECRET set, tokens are checked locally (HS256) with
python-jose. Without it each token is handed to the Supabase Auth API.
"""

import logging
import os
from typing import Optional

from fastapi import Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from dmarc_intake.db import supabase

logger = logging.getLogger(__name__)

SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _unauthorized("Not authenticated")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token or " " in token:
        raise _unauthorized("Invalid authentication credentials")
    return token


def _user_from_claims(token: str) -> str:
    try:
        # Supabase session tokens carry the "authenticated" audience; only the
        # signature, expiry and subject matter here.
        claims = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except JWTError:
        raise _unauthorized("Invalid token")

    user_id = claims.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token")
    return user_id


def _user_from_auth_api(token: str) -> str:
    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        logger.info(f"Supabase Auth rejected dashboard token: {e}")
        raise _unauthorized("Token expired" if "expired" in str(e).lower() else "Invalid token")

    user = getattr(response, "user", None)
    if not user:
        raise _unauthorized("Invalid token")
    return user.id


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency returning the dashboard user's id (the token subject).

    Raises:
        HTTPException: 401 if the token is missing, malformed, invalid or expired
    """
    token = _bearer_token(authorization)
    if SUPABASE_JWT_SECRET:
        return _user_from_claims(token)
    return _user_from_auth_api(token)

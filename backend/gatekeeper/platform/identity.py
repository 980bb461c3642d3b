"""
Session identity resolution.

The account identity is the ``sub`` claim of an HS256 session token, read
from the session cookie or, failing that, an ``Authorization: Bearer``
header. Identity is ALWAYS taken from a verified token, never from request
body or query.

Outcomes:
- no token, or a token that fails verification -> no identity (None)
- token present but SESSION_JWT_SECRET unset -> InfrastructureError
  (the caller must deny; an unverifiable token is never trusted)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from jwt.exceptions import InvalidTokenError
from starlette.requests import Request

from gatekeeper.config.settings import GateSettings
from gatekeeper.entitlements.errors import InfrastructureError

logger = logging.getLogger(__name__)

SESSION_TOKEN_ALGORITHM = "HS256"


def extract_session_token(request: Request, cookie_name: str) -> Optional[str]:
    """Return the raw session token from cookie or Bearer header, if any."""
    token = request.cookies.get(cookie_name)
    if token:
        return token

    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()

    return None


def resolve_account_id(request: Request, settings: GateSettings) -> Optional[str]:
    """
    Resolve the authenticated account id for a request.

    Raises:
        InfrastructureError: A token was presented but no secret is configured
    """
    token = extract_session_token(request, settings.session_cookie_name)
    if not token:
        return None

    if not settings.session_jwt_secret:
        raise InfrastructureError("SESSION_JWT_SECRET is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=[SESSION_TOKEN_ALGORITHM],
            options={"verify_exp": True, "verify_aud": False},
        )
    except InvalidTokenError as e:
        logger.info(
            "Session token rejected",
            extra={"path": request.url.path, "error": type(e).__name__},
        )
        return None

    account_id = payload.get("sub")
    if not account_id or not isinstance(account_id, str):
        logger.info("Session token missing subject", extra={"path": request.url.path})
        return None

    return account_id


def issue_session_token(
    account_id: str,
    secret: str,
    expires_in: timedelta = timedelta(hours=12),
) -> str:
    """Mint a session token for ``account_id`` (sign-in flow and tests)."""
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": account_id, "iat": now, "exp": now + expires_in},
        secret,
        algorithm=SESSION_TOKEN_ALGORITHM,
    )


def caller_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else X-Real-IP, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def caller_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"

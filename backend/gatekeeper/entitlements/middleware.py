"""
Access Gate Middleware - per-request entitlement enforcement.

Decision table (identity = verified session token subject):

    identity | route                | outcome
    ---------+----------------------+-------------------------------------
    any      | other allow-listed   | allow (identity not resolved)
    none     | allow-listed sign-in | allow
    none     | protected            | redirect to sign-in (?redirectTo=...)
    present  | sign-in / sign-up    | entitled -> landing, else external
    present  | protected            | entitled -> allow, else external
    any      | evaluation error     | external redirect (FAIL CLOSED)

Enforcement responses are always 307 redirects. Every denial is written to
the entitlement audit log. Nothing is cached: each request opens a fresh
session and reads the subscriber store.
"""

import logging
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlencode

from fastapi import Request, status
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse
from starlette.types import ASGIApp
from sqlalchemy.orm import Session

from gatekeeper.config.settings import GateSettings, get_settings
from gatekeeper.database.session import open_session
from gatekeeper.entitlements.audit import (
    AccessDenialEvent,
    DenialReason,
    log_access_denial,
)
from gatekeeper.entitlements.policy import EntitlementDecision
from gatekeeper.entitlements.service import EntitlementService
from gatekeeper.models.base import utc_now
from gatekeeper.platform.identity import caller_ip, caller_user_agent, resolve_account_id

logger = logging.getLogger(__name__)


def path_matches(path: str, prefix: str) -> bool:
    """Prefix match on path segment boundaries (/login matches /login/x, not /loginx)."""
    prefix = prefix.rstrip("/") or "/"
    if prefix == "/":
        return path == "/"
    return path == prefix or path.startswith(prefix + "/")


class AccessGateMiddleware(BaseHTTPMiddleware):
    """
    ASGI middleware enforcing subscriber entitlement on every request.

    Usage:
        app = FastAPI()
        app.add_middleware(AccessGateMiddleware)
    """

    def __init__(
        self,
        app: ASGIApp,
        settings: Optional[GateSettings] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize middleware.

        Args:
            app: FastAPI/Starlette application
            settings: Gate settings (defaults to the loaded config on each request)
            session_factory: Opens a database session (defaults to the shared factory)
            now_fn: Clock for the entitlement predicate
        """
        super().__init__(app)
        self._settings = settings
        self._session_factory = session_factory or open_session
        self._now = now_fn

    @property
    def settings(self) -> GateSettings:
        return self._settings or get_settings()

    def _is_public(self, path: str, settings: GateSettings) -> bool:
        return any(path_matches(path, p) for p in settings.public_paths)

    def _is_auth_route(self, path: str, settings: GateSettings) -> bool:
        return any(path_matches(path, p) for p in settings.auth_paths)

    async def dispatch(self, request: Request, call_next):
        """Apply the decision table to one request."""
        settings = self.settings
        path = request.url.path

        is_auth_route = self._is_auth_route(path, settings)
        if not is_auth_route and self._is_public(path, settings):
            return await call_next(request)

        try:
            account_id = resolve_account_id(request, settings)
        except Exception as e:
            # FAIL CLOSED: an identity we cannot verify is never trusted
            logger.critical(
                "Identity resolution failed, fail-closed",
                extra={"path": path, "error": str(e), "alert_type": "identity_resolution_failed"},
            )
            return self._deny(request, settings, DenialReason.EVALUATION_FAILED, detail=str(e))

        if account_id is None:
            if self._is_public(path, settings):
                return await call_next(request)
            return self._redirect_to_sign_in(request, settings)

        try:
            decision = await run_in_threadpool(self._evaluate, account_id)
        except Exception as e:
            logger.critical(
                "Entitlement evaluation failed, fail-closed",
                extra={
                    "account_id": account_id,
                    "path": path,
                    "error": str(e),
                    "alert_type": "entitlement_eval_failed",
                },
            )
            return self._deny(
                request, settings, DenialReason.EVALUATION_FAILED,
                account_id=account_id, detail=str(e),
            )

        if not decision.entitled:
            return self._deny(
                request, settings, DenialReason.NOT_ENTITLED,
                account_id=account_id,
                subscriber_status=decision.subscriber_status,
                detail=decision.reason,
            )

        if is_auth_route:
            return RedirectResponse(
                settings.default_landing_path,
                status_code=status.HTTP_307_TEMPORARY_REDIRECT,
            )

        request.state.account_id = account_id
        return await call_next(request)

    def _evaluate(self, account_id: str) -> EntitlementDecision:
        session = self._session_factory()
        try:
            return EntitlementService(session, now_fn=self._now).check(account_id)
        finally:
            session.close()

    def _redirect_to_sign_in(self, request: Request, settings: GateSettings) -> RedirectResponse:
        return_to = request.url.path
        if request.url.query:
            return_to = f"{return_to}?{request.url.query}"

        target = f"{settings.sign_in_path}?{urlencode({settings.return_to_param: return_to})}"
        log_access_denial(AccessDenialEvent(
            reason=DenialReason.UNAUTHENTICATED,
            endpoint=request.url.path,
            method=request.method,
            redirect_to=target,
            ip_address=caller_ip(request),
            user_agent=caller_user_agent(request),
        ))
        return RedirectResponse(target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    def _deny(
        self,
        request: Request,
        settings: GateSettings,
        reason: str,
        account_id: Optional[str] = None,
        subscriber_status: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> RedirectResponse:
        target = settings.no_entitlement_url
        log_access_denial(AccessDenialEvent(
            reason=reason,
            endpoint=request.url.path,
            method=request.method,
            redirect_to=target,
            account_id=account_id,
            subscriber_status=subscriber_status,
            detail=detail,
            ip_address=caller_ip(request),
            user_agent=caller_user_agent(request),
        ))
        return RedirectResponse(target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

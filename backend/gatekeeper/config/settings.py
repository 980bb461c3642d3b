"""
Access gate configuration loader.

Loads route, enforcement, billing and cache settings from
config/access_gate.yml and overlays secrets from the environment.

Consumers:
  - AccessGateMiddleware: allow-list, redirects, session cookie
  - BillingWebhookHandler: shared secret, billing interval, ledger retention
  - LicenseVerifier: verification interval
  - ClientEntitlementCache: TTL and wait bound

Usage:
    from gatekeeper.config.settings import get_settings

    settings = get_settings()
    settings.no_entitlement_url  # "https://google.com"
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "test"})

DEFAULT_PUBLIC_PATHS: Tuple[str, ...] = (
    "/login",
    "/register",
    "/forgot-password",
    "/reset-password",
    "/health",
    "/static",
    "/api/webhooks/billing",
    "/api/license/verify",
    "/api/entitlement",
)


@dataclass(frozen=True)
class GateSettings:
    """Resolved configuration snapshot. Immutable; use ``with_overrides`` in tests."""

    # Routes
    sign_in_path: str = "/login"
    sign_up_path: str = "/register"
    default_landing_path: str = "/dashboard"
    return_to_param: str = "redirectTo"
    public_paths: Tuple[str, ...] = DEFAULT_PUBLIC_PATHS

    # Enforcement
    no_entitlement_url: str = "https://google.com"
    session_cookie_name: str = "session"

    # Billing
    webhook_token_header: str = "asaas-access-token"
    billing_interval_months: int = 1
    webhook_event_retention_days: int = 30

    # Verification
    verification_interval_hours: int = 24

    # Client cache
    client_cache_ttl_seconds: float = 300.0
    client_cache_wait_seconds: float = 5.0

    # Environment
    webhook_token: Optional[str] = field(default=None, repr=False)
    session_jwt_secret: Optional[str] = field(default=None, repr=False)
    # Unset ENV is treated as production; development aids need an explicit opt-in
    environment: str = "production"

    @property
    def auth_paths(self) -> Tuple[str, str]:
        """Sign-in and sign-up paths."""
        return (self.sign_in_path, self.sign_up_path)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def replay_enabled(self) -> bool:
        """Development webhook replay is served only in development and test."""
        return self.environment in DEVELOPMENT_ENVIRONMENTS

    def with_overrides(self, **overrides: Any) -> "GateSettings":
        return replace(self, **overrides)


class SettingsLoader:
    """
    Thread-safe singleton loader for config/access_gate.yml.

    Missing YAML falls back to built-in defaults; environment secrets are
    always applied on top.
    """

    _instance: Optional["SettingsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("ACCESS_GATE_CONFIG")
        self._settings: Optional[GateSettings] = None
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "access_gate.yml",
            Path(os.getcwd()) / "config" / "access_gate.yml",
            Path(os.getcwd()) / ".." / "config" / "access_gate.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        return None

    def _read_yaml(self) -> Dict[str, Any]:
        path = self._resolve_path()
        if path is None:
            logger.warning("access_gate.yml not found, using built-in defaults")
            return {}

        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ValueError(f"{path} must contain a mapping at the top level")

        logger.info("Loaded access gate config", extra={"path": str(path)})
        return raw

    def _load(self) -> None:
        with self._load_lock:
            raw = self._read_yaml()
            self._settings = build_settings(raw, os.environ)

    def reload(self) -> GateSettings:
        """Re-read YAML and environment."""
        self._load()
        return self._settings

    @property
    def settings(self) -> GateSettings:
        return self._settings


def build_settings(raw: Dict[str, Any], environ) -> GateSettings:
    """Build a GateSettings from parsed YAML sections and an environment mapping."""
    defaults = GateSettings()
    routes = raw.get("routes") or {}
    enforcement = raw.get("enforcement") or {}
    billing = raw.get("billing") or {}
    verification = raw.get("verification") or {}
    client_cache = raw.get("client_cache") or {}

    public_paths = routes.get("public_paths")

    return GateSettings(
        sign_in_path=routes.get("sign_in_path", defaults.sign_in_path),
        sign_up_path=routes.get("sign_up_path", defaults.sign_up_path),
        default_landing_path=routes.get("default_landing_path", defaults.default_landing_path),
        return_to_param=routes.get("return_to_param", defaults.return_to_param),
        public_paths=tuple(public_paths) if public_paths else defaults.public_paths,
        no_entitlement_url=enforcement.get("no_entitlement_url", defaults.no_entitlement_url),
        session_cookie_name=enforcement.get("session_cookie_name", defaults.session_cookie_name),
        webhook_token_header=billing.get("webhook_token_header", defaults.webhook_token_header),
        billing_interval_months=int(
            billing.get("billing_interval_months", defaults.billing_interval_months)
        ),
        webhook_event_retention_days=int(
            billing.get("webhook_event_retention_days", defaults.webhook_event_retention_days)
        ),
        verification_interval_hours=int(
            verification.get("interval_hours", defaults.verification_interval_hours)
        ),
        client_cache_ttl_seconds=float(
            client_cache.get("ttl_seconds", defaults.client_cache_ttl_seconds)
        ),
        client_cache_wait_seconds=float(
            client_cache.get("wait_seconds", defaults.client_cache_wait_seconds)
        ),
        webhook_token=environ.get("BILLING_WEBHOOK_TOKEN") or None,
        session_jwt_secret=environ.get("SESSION_JWT_SECRET") or None,
        environment=(environ.get("ENV") or defaults.environment).strip().lower(),
    )


def get_settings() -> GateSettings:
    """Get the current settings from the singleton loader."""
    return SettingsLoader().settings


def reset_settings() -> None:
    """Drop the singleton so the next get_settings() re-reads config (tests)."""
    with SettingsLoader._lock:
        SettingsLoader._instance = None

"""
Entitlement enforcement for subscriber-based access control.

This package provides:
- policy: the single entitlement predicate (is_entitled / evaluate)
- EntitlementService: capability interface for collaborators
- AccessGateMiddleware: per-request enforcement (middleware module)
- ClientEntitlementCache: session-side decision cache (client_cache module)
- Audit logging of every access denial
- Structured error classes

Entitled <=> status in {active, trial} AND (no expiry OR expiry not passed)

Service, middleware and cache are imported from their modules directly;
repositories depend on this package's errors, so they are not re-exported
here.
"""

from gatekeeper.entitlements.errors import (
    EntitlementError,
    AuthenticationError,
    ValidationError,
    PayloadValidationError,
    NotFoundError,
    InfrastructureError,
    ConcurrentUpdateError,
)
from gatekeeper.entitlements.policy import EntitlementDecision, is_entitled, evaluate

__all__ = [
    "EntitlementError",
    "AuthenticationError",
    "ValidationError",
    "PayloadValidationError",
    "NotFoundError",
    "InfrastructureError",
    "ConcurrentUpdateError",
    "EntitlementDecision",
    "is_entitled",
    "evaluate",
]

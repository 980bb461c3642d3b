"""
Unit tests for LicenseVerifier.

Tests cover:
- Input normalization and validation
- Outcomes: active, not found, inactive, expired
- Lazy demotion of expired records
- Verification metadata writes (never touching version)
- Store failures surfaced as InfrastructureError
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from gatekeeper.entitlements.errors import InfrastructureError, ValidationError
from gatekeeper.models.base import as_utc
from gatekeeper.services.license_verifier import (
    LicenseVerifier,
    VerificationResult,
    VerificationStatus,
    normalize,
)

from conftest import FIXED_NOW


@pytest.fixture
def verifier(db_session, settings, fixed_now):
    return LicenseVerifier(db_session, settings=settings, now_fn=fixed_now)


class TestNormalize:

    @pytest.mark.parametrize("raw,expected", [
        ("  Owner@Example.COM ", "owner@example.com"),
        ("EXAMPLE.com", "example.com"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize(raw) == expected


class TestValidation:
    """Missing inputs are rejected before any lookup."""

    @pytest.mark.parametrize("email,domain,field", [
        (None, "example.com", "email"),
        ("   ", "example.com", "email"),
        ("owner@example.com", None, "domain"),
        ("owner@example.com", "", "domain"),
    ])
    def test_missing_field(self, verifier, email, domain, field):
        with pytest.raises(ValidationError) as exc_info:
            verifier.verify(email, domain)
        assert exc_info.value.field == field

    def test_validation_error_does_not_touch_store(self, verifier, db_session):
        with patch.object(db_session, "query") as mock_query:
            with pytest.raises(ValidationError):
                verifier.verify("", "example.com")
        mock_query.assert_not_called()


class TestActiveLicense:
    """Entitled subscribers verify successfully."""

    def test_active_subscriber_verifies(self, verifier, db_session, make_subscriber):
        subscriber = make_subscriber(status="active", expires_at=FIXED_NOW + timedelta(days=10))

        result = verifier.verify(
            "owner@example.com",
            "example.com",
            caller_ip="203.0.113.7",
            caller_user_agent="integration/1.0",
        )

        assert result.status == VerificationStatus.ACTIVE
        assert result.http_status == 200
        assert result.data["email"] == "owner@example.com"
        assert result.data["domain"] == "example.com"
        assert result.data["expires_at"] == (FIXED_NOW + timedelta(days=10)).isoformat()
        assert result.data["verified_at"] == FIXED_NOW.isoformat()

        db_session.refresh(subscriber)
        assert as_utc(subscriber.last_checked_at) == FIXED_NOW
        assert as_utc(subscriber.next_check_due_at) == FIXED_NOW + timedelta(hours=24)
        assert subscriber.last_caller_ip == "203.0.113.7"
        assert subscriber.last_caller_user_agent == "integration/1.0"
        assert subscriber.version == 1

    def test_inputs_are_normalized_before_lookup(self, verifier, make_subscriber):
        make_subscriber(status="active")

        result = verifier.verify("  OWNER@Example.com ", " Example.COM")

        assert result.status == VerificationStatus.ACTIVE

    def test_trial_is_treated_as_active(self, verifier, make_subscriber):
        make_subscriber(status="trial")

        assert verifier.verify("owner@example.com", "example.com").status == VerificationStatus.ACTIVE

    def test_no_expiry_verifies(self, verifier, make_subscriber):
        make_subscriber(status="active", expires_at=None)

        result = verifier.verify("owner@example.com", "example.com")

        assert result.status == VerificationStatus.ACTIVE
        assert result.data["expires_at"] is None

    def test_unknown_caller_metadata_defaults(self, verifier, db_session, make_subscriber):
        subscriber = make_subscriber(status="active")

        verifier.verify("owner@example.com", "example.com")

        db_session.refresh(subscriber)
        assert subscriber.last_caller_ip == "unknown"
        assert subscriber.last_caller_user_agent == "unknown"

    def test_response_body(self, verifier, make_subscriber):
        make_subscriber(status="active")

        body = verifier.verify("owner@example.com", "example.com").to_response()

        assert body["status"] == "active"
        assert body["message"] == "License active"
        assert "subscriber_status" not in body
        assert set(body["data"]) == {"email", "domain", "expires_at", "verified_at"}


class TestApiKey:
    """api_key narrows the match only when supplied."""

    def test_matching_api_key(self, verifier, make_subscriber):
        make_subscriber(status="active", api_key="key-123")

        result = verifier.verify("owner@example.com", "example.com", api_key="key-123")

        assert result.status == VerificationStatus.ACTIVE

    def test_mismatched_api_key_is_not_found(self, verifier, make_subscriber):
        make_subscriber(status="active", api_key="key-123")

        result = verifier.verify("owner@example.com", "example.com", api_key="other")

        assert result.status == VerificationStatus.INVALID
        assert result.message == "License not found"

    def test_omitted_api_key_matches_any(self, verifier, make_subscriber):
        make_subscriber(status="active", api_key="key-123")

        result = verifier.verify("owner@example.com", "example.com", api_key="  ")

        assert result.status == VerificationStatus.ACTIVE


class TestInvalidLicense:
    """Unknown, inactive and expired records are invalid."""

    def test_unknown_license(self, verifier):
        result = verifier.verify("nobody@example.com", "example.com")

        assert result.status == VerificationStatus.INVALID
        assert result.http_status == 403
        assert result.message == "License not found"
        assert result.subscriber_status is None

    @pytest.mark.parametrize("status", ["suspended", "canceled"])
    def test_inactive_status(self, verifier, db_session, make_subscriber, status):
        subscriber = make_subscriber(status=status, expires_at=FIXED_NOW + timedelta(days=30))

        result = verifier.verify("owner@example.com", "example.com")

        assert result.status == VerificationStatus.INVALID
        assert result.message == "License inactive"
        assert result.subscriber_status == status
        db_session.refresh(subscriber)
        assert subscriber.last_checked_at is None
        assert subscriber.version == 1

    def test_expired_license_is_demoted(self, verifier, db_session, make_subscriber):
        expiry = FIXED_NOW - timedelta(days=1)
        subscriber = make_subscriber(status="active", expires_at=expiry)

        result = verifier.verify("owner@example.com", "example.com")

        assert result.status == VerificationStatus.INVALID
        assert result.message == "License expired"
        assert result.subscriber_status == "expired"

        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"
        assert subscriber.version == 2
        assert as_utc(subscriber.expires_at) == expiry

    def test_expired_trial_is_demoted(self, verifier, db_session, make_subscriber):
        subscriber = make_subscriber(status="trial", expires_at=FIXED_NOW - timedelta(minutes=1))

        verifier.verify("owner@example.com", "example.com")

        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"

    def test_second_call_after_demotion_reports_inactive(self, verifier, make_subscriber):
        make_subscriber(status="active", expires_at=FIXED_NOW - timedelta(days=1))

        verifier.verify("owner@example.com", "example.com")
        result = verifier.verify("owner@example.com", "example.com")

        assert result.message == "License inactive"
        assert result.subscriber_status == "suspended"

    def test_entitled_record_preferred_over_canceled_duplicate(self, verifier, make_subscriber):
        make_subscriber(status="canceled")
        make_subscriber(status="active")

        assert verifier.verify("owner@example.com", "example.com").status == VerificationStatus.ACTIVE


class TestStoreFailure:
    """Store failures propagate as InfrastructureError."""

    def test_query_failure_is_infrastructure_error(self, verifier, db_session):
        failure = OperationalError("SELECT", {}, Exception("connection refused"))

        with patch.object(db_session, "query", side_effect=failure):
            with pytest.raises(InfrastructureError):
                verifier.verify("owner@example.com", "example.com")

    def test_unavailable_result(self):
        result = VerificationResult.unavailable()

        assert result.http_status == 503
        assert result.to_response() == {
            "status": "error",
            "message": "License service temporarily unavailable",
        }

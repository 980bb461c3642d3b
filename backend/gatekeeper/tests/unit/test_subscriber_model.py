"""
Tests for the entitlement predicate.

Entitled <=> status in {active, trial} AND (no expiry OR expiry >= now).
"""

from datetime import datetime, timedelta, timezone

import pytest

from gatekeeper.entitlements import policy
from gatekeeper.models.base import as_utc
from gatekeeper.models.subscriber import Subscriber

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


def _subscriber(status: str, expires_at=None) -> Subscriber:
    return Subscriber(
        account_id="acct_1",
        email="owner@example.com",
        domain="example.com",
        status=status,
        expires_at=expires_at,
    )


class TestIsEntitled:
    """Subscriber.is_entitled and policy.is_entitled."""

    @pytest.mark.parametrize("status", ["active", "trial"])
    def test_entitled_status_without_expiry(self, status):
        assert _subscriber(status).is_entitled(NOW) is True

    @pytest.mark.parametrize("status", ["active", "trial"])
    def test_entitled_status_with_future_expiry(self, status):
        assert _subscriber(status, NOW + timedelta(days=1)).is_entitled(NOW) is True

    @pytest.mark.parametrize("status", ["active", "trial"])
    def test_entitled_status_with_past_expiry(self, status):
        assert _subscriber(status, NOW - timedelta(seconds=1)).is_entitled(NOW) is False

    def test_expiry_equal_to_now_is_still_entitled(self):
        assert _subscriber("active", NOW).is_entitled(NOW) is True

    @pytest.mark.parametrize("status", ["suspended", "canceled"])
    def test_non_entitled_status_ignores_future_expiry(self, status):
        assert _subscriber(status, NOW + timedelta(days=30)).is_entitled(NOW) is False

    def test_naive_expiry_is_treated_as_utc(self):
        naive = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert _subscriber("active", naive).is_entitled(NOW) is True

    def test_missing_record_is_not_entitled(self):
        assert policy.is_entitled(None, NOW) is False


class TestEvaluate:
    """policy.evaluate explains the decision."""

    def test_no_subscriber(self):
        decision = policy.evaluate(None, NOW)
        assert decision.entitled is False
        assert decision.reason == "no_subscriber"
        assert decision.subscriber_status is None

    def test_status_not_entitled(self):
        decision = policy.evaluate(_subscriber("suspended"), NOW)
        assert decision.entitled is False
        assert decision.reason == "status_not_entitled"
        assert decision.subscriber_status == "suspended"

    def test_expired(self):
        decision = policy.evaluate(_subscriber("trial", NOW - timedelta(days=1)), NOW)
        assert decision.entitled is False
        assert decision.reason == "expired"
        assert decision.subscriber_status == "trial"

    def test_entitled_details_include_plan(self):
        subscriber = _subscriber("active", NOW + timedelta(days=3))
        subscriber.plan_name = "Pro"

        decision = policy.evaluate(subscriber, NOW)

        assert decision.entitled is True
        assert decision.details["plan_name"] == "Pro"
        assert decision.details["status"] == "active"
        assert decision.details["expires_at"] == (NOW + timedelta(days=3)).isoformat()

    def test_to_dict_shape(self):
        data = policy.evaluate(None, NOW).to_dict()
        assert set(data) == {"entitled", "reason", "subscriber_status", "details"}


class TestAsUtc:

    def test_none(self):
        assert as_utc(None) is None

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))
        value = datetime(2026, 1, 1, 14, 0, tzinfo=plus_two)
        assert as_utc(value) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

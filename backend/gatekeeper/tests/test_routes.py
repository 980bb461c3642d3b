"""
HTTP-level tests for the allow-listed API routes.

The full application is built with create_app() against the in-memory
database; secrets are supplied through the environment the way a deploy
supplies them.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import main
from gatekeeper.database.session import get_db_session
from gatekeeper.entitlements.errors import InfrastructureError
from gatekeeper.models.base import utc_now
from gatekeeper.models.webhook_event import BillingWebhookEvent
from gatekeeper.platform.identity import issue_session_token
from gatekeeper.services.license_verifier import LicenseVerifier

from conftest import SESSION_SECRET, WEBHOOK_TOKEN

WEBHOOK_PATH = "/api/webhooks/billing"
TOKEN_HEADER = "asaas-access-token"


@pytest.fixture
def app_env(monkeypatch):
    monkeypatch.setenv("BILLING_WEBHOOK_TOKEN", WEBHOOK_TOKEN)
    monkeypatch.setenv("SESSION_JWT_SECRET", SESSION_SECRET)
    monkeypatch.setenv("ENV", "test")


@pytest.fixture
def client(app_env, session_factory):
    app = main.create_app(session_factory=session_factory)

    def _override_db_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = _override_db_session
    return TestClient(app, follow_redirects=False)


def _future(days: int = 10):
    return utc_now() + timedelta(days=days)


class TestHealth:

    def test_health_is_public(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestBillingWebhookRoute:
    """POST /api/webhooks/billing"""

    def test_payment_confirmed_activates(self, client, db_session, make_subscriber):
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_route")

        response = client.post(
            WEBHOOK_PATH,
            json={"id": "evt_route_1", "event": "PAYMENT_CONFIRMED", "payment": {"subscription": "sub_route"}},
            headers={TOKEN_HEADER: WEBHOOK_TOKEN},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["processed"] is True
        db_session.refresh(subscriber)
        assert subscriber.status == "active"

    def test_ignored_event_is_still_acknowledged(self, client):
        response = client.post(
            WEBHOOK_PATH,
            json={"event": "PAYMENT_CREATED", "payment": {"subscription": "sub_x"}},
            headers={TOKEN_HEADER: WEBHOOK_TOKEN},
        )

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "processed": False,
            "message": "Event PAYMENT_CREATED not handled",
        }

    def test_wrong_token_is_unauthorized(self, client, db_session, make_subscriber):
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_route")

        response = client.post(
            WEBHOOK_PATH,
            json={"event": "PAYMENT_CONFIRMED", "payment": {"subscription": "sub_route"}},
            headers={TOKEN_HEADER: "wrong"},
        )

        assert response.status_code == 401
        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"
        assert db_session.query(BillingWebhookEvent).count() == 0

    def test_missing_token_is_unauthorized(self, client):
        response = client.post(WEBHOOK_PATH, json={"event": "PAYMENT_CONFIRMED"})

        assert response.status_code == 401

    def test_invalid_json_is_bad_request(self, client):
        response = client.post(
            WEBHOOK_PATH,
            content=b"{not json",
            headers={TOKEN_HEADER: WEBHOOK_TOKEN, "Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_missing_event_is_bad_request(self, client):
        response = client.post(WEBHOOK_PATH, json={"payment": {}}, headers={TOKEN_HEADER: WEBHOOK_TOKEN})

        assert response.status_code == 400

    def test_get_is_not_allowed(self, client):
        assert client.get(WEBHOOK_PATH).status_code == 405


class TestReplayRoute:
    """POST /api/webhooks/billing/test"""

    REPLAY_PATH = f"{WEBHOOK_PATH}/test"

    def test_replay_activates_subscriber(self, client, db_session, make_subscriber):
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_replay")

        response = client.post(
            self.REPLAY_PATH,
            json={"subscriptionId": "sub_replay"},
            headers={TOKEN_HEADER: WEBHOOK_TOKEN},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["subscriber"] == {"id": subscriber.id, "status": "active"}

    def test_replay_requires_subscription_id(self, client):
        response = client.post(self.REPLAY_PATH, json={}, headers={TOKEN_HEADER: WEBHOOK_TOKEN})

        assert response.status_code == 400

    def test_replay_unknown_subscription(self, client):
        response = client.post(
            self.REPLAY_PATH,
            json={"subscriptionId": "sub_missing"},
            headers={TOKEN_HEADER: WEBHOOK_TOKEN},
        )

        assert response.status_code == 404

    def test_replay_disabled_in_production(self, client, db_session, make_subscriber, monkeypatch):
        monkeypatch.setenv("ENV", "production")
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_replay")

        response = client.post(
            self.REPLAY_PATH,
            json={"subscriptionId": "sub_replay"},
            headers={TOKEN_HEADER: WEBHOOK_TOKEN},
        )

        assert response.status_code == 403
        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"

    def test_replay_disabled_when_env_unset(self, client, db_session, make_subscriber, monkeypatch):
        monkeypatch.delenv("ENV", raising=False)
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_replay")

        response = client.post(self.REPLAY_PATH, json={"subscriptionId": "sub_replay"})

        assert response.status_code == 403
        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"
        assert subscriber.version == 1

    def test_replay_requires_shared_secret_when_configured(self, client, db_session, make_subscriber):
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_replay")

        missing = client.post(self.REPLAY_PATH, json={"subscriptionId": "sub_replay"})
        wrong = client.post(
            self.REPLAY_PATH,
            json={"subscriptionId": "sub_replay"},
            headers={TOKEN_HEADER: "wrong"},
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"

    def test_replay_without_configured_secret(self, client, db_session, make_subscriber, monkeypatch):
        monkeypatch.delenv("BILLING_WEBHOOK_TOKEN")
        subscriber = make_subscriber(status="suspended", billing_subscription_id="sub_replay")

        response = client.post(self.REPLAY_PATH, json={"subscriptionId": "sub_replay"})

        assert response.status_code == 200
        db_session.refresh(subscriber)
        assert subscriber.status == "active"


class TestLicenseRoute:
    """POST /api/license/verify"""

    def test_active_license(self, client, make_subscriber):
        make_subscriber(status="active", expires_at=_future())

        response = client.post(
            "/api/license/verify",
            json={"email": "Owner@Example.com", "domain": "example.com"},
            headers={"X-Forwarded-For": "198.51.100.4"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert body["data"]["email"] == "owner@example.com"

    def test_unknown_license_is_forbidden(self, client):
        response = client.post(
            "/api/license/verify",
            json={"email": "nobody@example.com", "domain": "example.com"},
        )

        assert response.status_code == 403
        assert response.json() == {"status": "invalid", "message": "License not found"}

    def test_expired_license_is_forbidden(self, client, db_session, make_subscriber):
        subscriber = make_subscriber(status="active", expires_at=utc_now() - timedelta(days=1))

        response = client.post(
            "/api/license/verify",
            json={"email": "owner@example.com", "domain": "example.com"},
        )

        assert response.status_code == 403
        assert response.json()["subscriber_status"] == "expired"
        db_session.refresh(subscriber)
        assert subscriber.status == "suspended"

    def test_missing_domain_is_bad_request(self, client):
        response = client.post("/api/license/verify", json={"email": "owner@example.com"})

        assert response.status_code == 400
        assert response.json()["field"] == "domain"

    def test_invalid_json_is_bad_request(self, client):
        response = client.post(
            "/api/license/verify",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_non_object_body_is_bad_request(self, client):
        response = client.post("/api/license/verify", json=["owner@example.com"])

        assert response.status_code == 400

    def test_store_unavailable(self, client):
        with patch.object(LicenseVerifier, "verify", side_effect=InfrastructureError("db down")):
            response = client.post(
                "/api/license/verify",
                json={"email": "owner@example.com", "domain": "example.com"},
            )

        assert response.status_code == 503
        assert response.json()["status"] == "error"


class TestEntitlementRoute:
    """GET /api/entitlement"""

    def test_entitled_account(self, client, make_subscriber):
        make_subscriber(account_id="acct_route", status="active", expires_at=_future())
        token = issue_session_token("acct_route", SESSION_SECRET)

        response = client.get("/api/entitlement", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        body = response.json()
        assert body["entitled"] is True
        assert body["reason"] == "entitled"
        assert body["details"]["plan_name"] == "Pro"

    def test_not_entitled_account(self, client, make_subscriber):
        make_subscriber(account_id="acct_route", status="canceled", expires_at=_future())
        token = issue_session_token("acct_route", SESSION_SECRET)

        response = client.get("/api/entitlement", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["entitled"] is False
        assert response.json()["subscriber_status"] == "canceled"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/api/entitlement").status_code == 401


class TestGateOnApplication:
    """The assembled application gates non-public routes."""

    def test_unknown_protected_path_redirects_to_sign_in(self, client):
        response = client.get("/dashboard")

        assert response.status_code == 307
        assert response.headers["location"] == "/login?redirectTo=%2Fdashboard"

    def test_billing_flow_reopens_access(self, client, make_subscriber):
        make_subscriber(
            account_id="acct_flow",
            status="suspended",
            billing_subscription_id="sub_flow",
            expires_at=utc_now() - timedelta(days=2),
        )
        headers = {"Authorization": f"Bearer {issue_session_token('acct_flow', SESSION_SECRET)}"}

        assert client.get("/login", headers=headers).headers["location"] == "https://google.com"

        client.post(
            WEBHOOK_PATH,
            json={"event": "PAYMENT_CONFIRMED", "payment": {"subscription": "sub_flow"}},
            headers={TOKEN_HEADER: WEBHOOK_TOKEN},
        )

        assert client.get("/login", headers=headers).headers["location"] == "/dashboard"

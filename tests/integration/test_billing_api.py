"""HTTP tests for the billing API.

Exercise every endpoint through FastAPI's TestClient against the in-memory
backends configured in conftest.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from billing_engine.api.billing import SIGNATURE_HEADER, compute_signature, verify_signature
from billing_engine.errors import RetryExhaustedError, WebhookSignatureError
from billing_engine.main import create_app
from billing_engine.models import FailureKind, HistoryAction, RetryableError, SubscriptionStatus
from billing_engine.repositories.payment_store import get_payment_store

WEBHOOK_SECRET = "whsec_test_secret"

VERIFY_BODY = {
    "reference": "pay_abc",
    "payment_id": "4099260516",
    "amount": 1500000,
    "currency": "NGN",
}


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(create_app())


def charge_payload(subscription_id="sub_1", event="charge.success", **data):
    body = {
        "event": event,
        "data": {
            "id": 4099260516,
            "reference": "pay_abc",
            "amount": 1500000,
            "currency": "NGN",
            "status": "success",
            "customer": {"email": "ada@example.com"},
            "metadata": {"subscription_id": subscription_id} if subscription_id else {},
            "authorization": {"authorization_code": "AUTH_8dfhjjdt"},
        },
    }
    body["data"].update(data)
    return body


def post_webhook(client, payload, secret=WEBHOOK_SECRET, signature=None):
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {"content-type": "application/json"}
    if secret is not None:
        headers[SIGNATURE_HEADER] = signature or compute_signature(raw, secret)
    return client.post("/billing/webhook", content=raw, headers=headers)


class TestSignature:
    def test_compute_signature_is_sha512_hex(self):
        assert len(compute_signature(b"{}", "secret")) == 128

    def test_verify_signature(self):
        raw = b'{"event": "charge.success"}'
        verify_signature(raw, compute_signature(raw, "s3cret"), "s3cret")
        with pytest.raises(WebhookSignatureError):
            verify_signature(raw, compute_signature(raw, "other"), "s3cret")
        with pytest.raises(WebhookSignatureError):
            verify_signature(raw, None, "s3cret")
        with pytest.raises(WebhookSignatureError):
            verify_signature(raw, "anything", None)


class TestWebhook:
    def test_signed_event_activates(self, client, engine, make_subscription):
        make_subscription("sub_1")

        response = post_webhook(client, charge_payload())

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "status": "processed",
            "subscription_id": "sub_1",
            "reason": None,
        }
        subscription = engine.get_subscription("sub_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        payment = get_payment_store().find_by_reference("pay_abc")
        assert payment.authorization_code == "AUTH_8dfhjjdt"
        assert payment.provider_payment_id == "4099260516"

    def test_redelivery_is_already_active(self, client, engine, make_subscription):
        make_subscription("sub_1")
        post_webhook(client, charge_payload())

        response = post_webhook(client, charge_payload())

        assert response.status_code == 200
        assert response.json()["reason"] == "already_active"
        assert engine.history.count_by_action("sub_1", HistoryAction.ACTIVATED) == 1

    def test_invalid_signature(self, client, make_subscription):
        make_subscription("sub_1")
        response = post_webhook(client, charge_payload(), signature="0" * 128)
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "invalid_signature"

    def test_missing_signature(self, client):
        response = post_webhook(client, charge_payload(), secret=None)
        assert response.status_code == 401

    def test_unconfigured_secret_rejects(self, client, engine, make_subscription):
        make_subscription("sub_1")
        with patch("billing_engine.api.billing.get_config") as get_config:
            get_config.return_value.settings.webhook.secret = None
            response = post_webhook(client, charge_payload())
        assert response.status_code == 401
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.INCOMPLETE

    def test_malformed_json(self, client):
        assert post_webhook(client, b"{not json").status_code == 400

    def test_missing_reference(self, client):
        response = post_webhook(client, charge_payload(reference=None))
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_payload"

    def test_unmatched_payment_accepted(self, client):
        response = post_webhook(
            client, charge_payload(subscription_id=None, customer={"email": "stranger@example.com"})
        )
        assert response.status_code == 202
        assert response.json()["status"] == "unmatched"
        assert get_payment_store().find_by_reference("pay_abc").subscription_id is None

    def test_permanent_failure_acknowledged(self, client, make_subscription):
        make_subscription("sub_1")
        response = post_webhook(client, charge_payload(amount=900000))
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_unhandled_event_ignored(self, client):
        response = post_webhook(client, charge_payload(event="transfer.success"))
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_transient_failure_is_503(self, client):
        processor = MagicMock()
        processor.process_event.side_effect = RetryExhaustedError(
            "activate_subscription", 3, RetryableError(kind=FailureKind.LOCK_TIMEOUT)
        )
        with patch("billing_engine.api.billing.get_event_processor", return_value=processor):
            response = post_webhook(client, charge_payload())

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "service_unavailable"

    def test_unexpected_error_is_500(self, engine):
        client = TestClient(create_app(), raise_server_exceptions=False)
        processor = MagicMock()
        processor.process_event.side_effect = KeyError("bug")
        with patch("billing_engine.api.billing.get_event_processor", return_value=processor):
            response = post_webhook(client, charge_payload())

        assert response.status_code == 500
        assert response.json() == {
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        }


class TestVerifyPayment:
    def test_verify_activates(self, client, make_subscription):
        make_subscription("sub_1")

        response = client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "subscription_id": "sub_1",
            "status": "active",
            "reason": None,
            "message": "Subscription activated",
        }

    def test_verify_after_webhook(self, client, make_subscription):
        make_subscription("sub_1")
        post_webhook(client, charge_payload())

        response = client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)

        assert response.status_code == 200
        assert response.json()["reason"] == "already_active"
        assert response.json()["message"] == "Subscription is already active"
        assert get_payment_store().count() == 1

    def test_unknown_subscription(self, client):
        response = client.post("/billing/subscriptions/sub_missing/verify", json=VERIFY_BODY)
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "subscription_not_found"

    def test_invalid_status(self, client, engine, make_subscription):
        make_subscription("sub_1")
        engine.mark_unpaid("sub_1")
        response = client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "invalid_status"

    def test_invalid_body(self, client, make_subscription):
        make_subscription("sub_1")
        response = client.post("/billing/subscriptions/sub_1/verify", json={"reference": "pay_abc"})
        assert response.status_code == 422

    def test_transient_failure_is_503(self, client, make_subscription):
        make_subscription("sub_1")
        service = MagicMock()
        service.activate_subscription.side_effect = ConnectionError("connection reset by 10.0.0.7")
        with patch("billing_engine.api.billing.get_activation_service", return_value=service):
            response = client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)

        assert response.status_code == 503
        assert "10.0.0.7" not in response.text


class TestManualActivation:
    def test_activate_without_reference(self, client, engine, make_subscription):
        make_subscription("sub_1")

        response = client.post(
            "/billing/subscriptions/sub_1/activate",
            json={"payment_id": "manual-1", "amount": 1500000, "currency": "NGN"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert engine.get_history("sub_1")[0].source.value == "manual"
        assert engine.get_payments("sub_1")[0].provider_reference.startswith("manual_sub_1_")


class TestSubscriptions:
    def test_create(self, client):
        response = client.post(
            "/billing/subscriptions",
            json={
                "user_id": "user-123",
                "plan_id": "plan_pro_monthly",
                "customer_email": "ada@example.com",
                "subscription_id": "sub_1",
            },
        )
        assert response.status_code == 201
        assert response.json()["id"] == "sub_1"
        assert response.json()["status"] == "incomplete"

    def test_create_unknown_plan(self, client):
        response = client.post(
            "/billing/subscriptions", json={"user_id": "user-123", "plan_id": "plan_missing"}
        )
        assert response.status_code == 404

    def test_create_duplicate_id(self, client, make_subscription):
        make_subscription("sub_1")
        response = client.post(
            "/billing/subscriptions",
            json={"user_id": "user-123", "plan_id": "plan_pro_monthly", "subscription_id": "sub_1"},
        )
        assert response.status_code == 400

    def test_get(self, client, make_subscription):
        make_subscription("sub_1")
        response = client.get("/billing/subscriptions/sub_1")
        assert response.status_code == 200
        assert response.json()["plan_id"] == "plan_pro_monthly"

    def test_get_missing(self, client):
        assert client.get("/billing/subscriptions/sub_missing").status_code == 404

    def test_history(self, client, make_subscription):
        make_subscription("sub_1")
        client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)
        client.post("/billing/subscriptions/sub_1/cancel")

        response = client.get("/billing/subscriptions/sub_1/history")

        assert response.status_code == 200
        assert [e["action"] for e in response.json()] == ["activated", "cancelled"]
        assert response.json()[0]["source"] == "verification"

    def test_history_missing(self, client):
        assert client.get("/billing/subscriptions/sub_missing/history").status_code == 404


class TestCancel:
    def test_immediate(self, client, make_subscription):
        make_subscription("sub_1")
        client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)

        response = client.post("/billing/subscriptions/sub_1/cancel", json={"reason": "Too expensive"})

        assert response.status_code == 200
        assert response.json()["status"] == "canceled"
        assert response.json()["message"] == "Subscription cancelled"

    def test_at_period_end(self, client, make_subscription):
        make_subscription("sub_1")
        client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)

        response = client.post("/billing/subscriptions/sub_1/cancel", json={"immediate": False})

        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["message"] == "Cancellation scheduled"

    def test_incomplete_conflict(self, client, make_subscription):
        make_subscription("sub_1")
        assert client.post("/billing/subscriptions/sub_1/cancel").status_code == 409

    def test_missing(self, client):
        assert client.post("/billing/subscriptions/sub_missing/cancel").status_code == 404


class TestGracePeriods:
    def test_enforce_cancels_expired(self, client, engine, clock, make_subscription):
        make_subscription("sub_1")
        client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)
        engine.record_payment_failure("sub_1")
        clock.advance(days=7)

        response = client.post("/billing/grace-periods/enforce")

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "cancelled": 1, "warned": 0, "errors": []}
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.CANCELED

    def test_enforce_with_overrides(self, client, engine, clock, make_subscription):
        make_subscription("sub_1")
        client.post("/billing/subscriptions/sub_1/verify", json=VERIFY_BODY)
        engine.record_payment_failure("sub_1")
        clock.advance(days=7)

        response = client.post("/billing/grace-periods/enforce", json={"enable_auto_cancel": False})

        assert response.json()["cancelled"] == 0
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.PAST_DUE


class TestApplication:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["lock_backend"] == "memory"
        assert response.json()["config"] == "loaded (3 plans)"

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

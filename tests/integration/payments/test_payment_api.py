"""Integration tests for the payment endpoints.

Signature failures are answered with 400 and permanently block the
source IP; every later request from it is rejected by the middleware.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import patch

import pytest

from django.core import mail

from modules.abuse.constants import BlockType, IncidentType
from modules.abuse.models import BlockRecord, OffenseRecord
from modules.orders.constants import PaymentStatus
from modules.orders.models import Order
from modules.payments.exceptions import GatewayError
from modules.payments.gateway import GatewayOrder

pytestmark = pytest.mark.integration

VERIFY_URL = "/api/v1/payments/verify/"
INITIATE_URL = "/api/v1/payments/orders/"
WEBHOOK_URL = "/api/v1/payments/webhook/"
GATEWAY_ORDER_ID = "order_GW123"
ATTACKER_IP = "198.51.100.23"


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


@pytest.fixture()
def pending_order(make_order):
    return make_order(gateway_order_id=GATEWAY_ORDER_ID)


@pytest.fixture(autouse=True)
def _no_gateway_double_check():
    """The gateway client is exercised separately; don't call it here."""
    with patch("modules.payments.views.PaymentGatewayClient", return_value=None):
        yield


def _verify_payload(order, signature: str | None = None) -> dict:
    payment_id = "pay_ABC"
    return {
        "order_id": str(order.id),
        "gateway_order_id": GATEWAY_ORDER_ID,
        "payment_id": payment_id,
        "signature": signature
        or _sign("test-key-secret", f"{GATEWAY_ORDER_ID}|{payment_id}".encode()),
    }


def _captured_body(order_id) -> bytes:
    return json.dumps(
        {
            "event": "payment.captured",
            "payload": {
                "payment": {"entity": {"id": "pay_ABC", "notes": {"order_id": str(order_id)}}}
            },
        }
    ).encode()


# ---------------------------------------------------------------------------
# Browser callback
# ---------------------------------------------------------------------------


class TestVerifyEndpoint:
    def test_valid_proof_confirms(self, api_client, pending_order, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            response = api_client.post(VERIFY_URL, _verify_payload(pending_order), format="json")

        assert response.status_code == 200
        assert response.json() == {"status": "confirmed", "order_id": str(pending_order.id)}
        assert len(mail.outbox) == 1

    def test_replayed_proof_is_already_processed(self, api_client, pending_order):
        api_client.post(VERIFY_URL, _verify_payload(pending_order), format="json")
        response = api_client.post(VERIFY_URL, _verify_payload(pending_order), format="json")

        assert response.status_code == 200
        assert response.json()["status"] == "already_processed"

    def test_forged_signature_blocks_ip_permanently(self, api_client, pending_order):
        response = api_client.post(
            VERIFY_URL,
            _verify_payload(pending_order, signature="0" * 64),
            format="json",
            REMOTE_ADDR=ATTACKER_IP,
        )

        assert response.status_code == 400
        assert Order.objects.get(id=pending_order.id).payment_status == PaymentStatus.INITIATED
        record = BlockRecord.objects.get(ip_address=ATTACKER_IP)
        assert record.block_type == BlockType.PERMANENT
        assert OffenseRecord.objects.get(ip_address=ATTACKER_IP).incident_type == (
            IncidentType.PAYMENT_SIGNATURE_INVALID
        )

        retry = api_client.post(
            VERIFY_URL, _verify_payload(pending_order), format="json", REMOTE_ADDR=ATTACKER_IP
        )
        assert retry.status_code == 403

    def test_unknown_order_is_404(self, api_client, pending_order):
        payload = _verify_payload(pending_order)
        pending_order.delete()
        response = api_client.post(VERIFY_URL, payload, format="json")
        assert response.status_code == 404

    def test_missing_fields_are_400(self, api_client):
        response = api_client.post(VERIFY_URL, {"order_id": "x"}, format="json")
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestWebhookEndpoint:
    def test_signed_capture_confirms(self, api_client, pending_order):
        body = _captured_body(pending_order.id)
        response = api_client.post(
            WEBHOOK_URL,
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=_sign("test-webhook-secret", body),
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "event": "payment.captured", "handled": True}
        assert Order.objects.get(id=pending_order.id).payment_status == PaymentStatus.PAID

    def test_bad_signature_is_400_and_blocks(self, api_client, pending_order):
        response = api_client.post(
            WEBHOOK_URL,
            data=_captured_body(pending_order.id),
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE="f" * 64,
            REMOTE_ADDR=ATTACKER_IP,
        )

        assert response.status_code == 400
        assert Order.objects.get(id=pending_order.id).payment_status == PaymentStatus.INITIATED
        assert BlockRecord.objects.get(ip_address=ATTACKER_IP).block_type == BlockType.PERMANENT

    def test_missing_signature_is_400(self, api_client, pending_order):
        response = api_client.post(
            WEBHOOK_URL, data=_captured_body(pending_order.id), content_type="application/json"
        )
        assert response.status_code == 400

    def test_signed_but_malformed_is_400_without_block(self, api_client):
        body = b'{"event": "payment.captured"}'
        response = api_client.post(
            WEBHOOK_URL,
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=_sign("test-webhook-secret", body),
            REMOTE_ADDR=ATTACKER_IP,
        )
        assert response.status_code == 400
        assert not BlockRecord.objects.filter(ip_address=ATTACKER_IP).exists()

    def test_allowlisted_gateway_is_never_blocked(self, api_client, pending_order):
        from modules.abuse.services import AbuseEscalationService

        AbuseEscalationService().add_allowlist_entry(
            label="gateway", category="webhook_provider", actor="ops", ip_address=ATTACKER_IP
        )
        api_client.post(
            WEBHOOK_URL,
            data=_captured_body(pending_order.id),
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE="bad",
            REMOTE_ADDR=ATTACKER_IP,
        )

        assert not BlockRecord.objects.filter(ip_address=ATTACKER_IP).exists()
        body = _captured_body(pending_order.id)
        ok = api_client.post(
            WEBHOOK_URL,
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=_sign("test-webhook-secret", body),
            REMOTE_ADDR=ATTACKER_IP,
        )
        assert ok.status_code == 200


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


class TestInitiateEndpoint:
    def test_creates_gateway_order_once(self, api_client, make_order):
        order = make_order()
        with patch("modules.payments.views.PaymentGatewayClient") as client_cls:
            client_cls.return_value.create_order.return_value = GatewayOrder(
                id="order_NEW", amount_minor=105000, currency="INR"
            )
            first = api_client.post(
                INITIATE_URL, {"order_id": str(order.id), "email": order.guest_email}, format="json"
            )
            second = api_client.post(
                INITIATE_URL, {"order_id": str(order.id), "email": order.guest_email}, format="json"
            )

        assert first.status_code == 201
        assert first.json() == {
            "order_id": str(order.id),
            "gateway_order_id": "order_NEW",
            "amount": 105000,
            "currency": "INR",
            "key_id": "rzp_test_key",
        }
        assert second.json()["gateway_order_id"] == "order_NEW"
        client_cls.return_value.create_order.assert_called_once()

    def test_wrong_email_is_404(self, api_client, make_order):
        order = make_order()
        response = api_client.post(
            INITIATE_URL, {"order_id": str(order.id), "email": "other@example.com"}, format="json"
        )
        assert response.status_code == 404

    def test_paid_order_is_409(self, api_client, paid_order):
        response = api_client.post(
            INITIATE_URL,
            {"order_id": str(paid_order.id), "email": paid_order.guest_email},
            format="json",
        )
        assert response.status_code == 409

    def test_gateway_failure_is_502(self, api_client, make_order):
        order = make_order()
        with patch("modules.payments.views.PaymentGatewayClient") as client_cls:
            client_cls.return_value.create_order.side_effect = GatewayError("down")
            response = api_client.post(
                INITIATE_URL, {"order_id": str(order.id), "email": order.guest_email}, format="json"
            )
        assert response.status_code == 502

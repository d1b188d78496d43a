"""Integration tests for refunds of cancelled paid orders.

The gateway is mocked at the client (service tests) or at
``requests.request`` (client tests); nothing leaves the process.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests
from django.core import mail

from modules.orders.constants import CarrierStatus, OrderStatus, PaymentStatus, RefundStatus
from modules.orders.models import Order
from modules.payments.exceptions import GatewayError
from modules.payments.gateway import GatewayRefund, PaymentGatewayClient
from modules.payments.refunds import RefundOutcome, RefundService

pytestmark = pytest.mark.integration

WEBHOOK_URL = "/api/v1/payments/webhook/"


def _sign(payload: bytes) -> str:
    return hmac.new(b"test-webhook-secret", payload, hashlib.sha256).hexdigest()


def _refund(status: str = "processed", refund_id: str = "rfnd_1") -> GatewayRefund:
    return GatewayRefund(id=refund_id, payment_id="pay_ABC", status=status, amount_minor=105000)


@pytest.fixture()
def cancelled_order(make_order):
    return make_order(
        order_status=OrderStatus.CANCELLED,
        payment_status=PaymentStatus.PAID,
        carrier_status=CarrierStatus.NOT_SHIPPED,
        payment_id="pay_ABC",
    )


@pytest.fixture()
def gateway():
    client = MagicMock()
    client.refund_payment.return_value = _refund()
    return client


@pytest.fixture()
def service(gateway):
    return RefundService(gateway=gateway)


def _reload(order) -> Order:
    return Order.objects.get(id=order.id)


# ---------------------------------------------------------------------------
# Refund service
# ---------------------------------------------------------------------------


class TestRefundService:
    def test_processed_refund_completes(
        self, service, gateway, cancelled_order, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            outcome = service.refund_cancelled_order(str(cancelled_order.id))

        assert outcome == RefundOutcome.COMPLETED
        gateway.refund_payment.assert_called_once_with("pay_ABC", Decimal("1050.00"))
        order = _reload(cancelled_order)
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.refund_id == "rfnd_1"
        assert order.refund_amount == Decimal("1050.00")
        assert order.refund_initiated_at is not None
        assert order.refund_completed_at is not None
        assert order.payment_status == PaymentStatus.PAID
        assert len(mail.outbox) == 1
        assert "rfnd_1" in mail.outbox[0].body

    def test_pending_refund_waits_for_webhook(self, service, gateway, cancelled_order):
        gateway.refund_payment.return_value = _refund(status="pending")

        outcome = service.refund_cancelled_order(str(cancelled_order.id))

        assert outcome == RefundOutcome.PENDING
        order = _reload(cancelled_order)
        assert order.refund_status == RefundStatus.INITIATED
        assert order.refund_id == "rfnd_1"
        assert len(mail.outbox) == 0

    def test_second_call_never_refunds_twice(self, service, gateway, cancelled_order):
        service.refund_cancelled_order(str(cancelled_order.id))
        outcome = service.refund_cancelled_order(str(cancelled_order.id))

        assert outcome == RefundOutcome.SKIPPED
        gateway.refund_payment.assert_called_once()

    def test_gateway_error_records_failure(self, service, gateway, cancelled_order):
        gateway.refund_payment.side_effect = GatewayError("Gateway request failed.")

        outcome = service.refund_cancelled_order(str(cancelled_order.id))

        assert outcome == RefundOutcome.FAILED
        order = _reload(cancelled_order)
        assert order.refund_status == RefundStatus.FAILED
        assert order.refund_error_reason == "Gateway request failed."

    def test_missing_payment_id_fails_without_gateway_call(
        self, service, gateway, cancelled_order
    ):
        Order.objects.filter(id=cancelled_order.id).update(payment_id="")

        assert service.refund_cancelled_order(str(cancelled_order.id)) == RefundOutcome.FAILED
        gateway.refund_payment.assert_not_called()

    @pytest.mark.parametrize(
        "fields",
        [
            {"order_status": OrderStatus.CONFIRMED},
            {"payment_status": PaymentStatus.FAILED},
            {"carrier_status": CarrierStatus.PICKUP_SCHEDULED},
            {"carrier_status": CarrierStatus.CANCELLATION_FAILED},
        ],
    )
    def test_ineligible_orders_are_skipped(self, service, gateway, cancelled_order, fields):
        Order.objects.filter(id=cancelled_order.id).update(**fields)

        assert service.refund_cancelled_order(str(cancelled_order.id)) == RefundOutcome.SKIPPED
        gateway.refund_payment.assert_not_called()
        assert _reload(cancelled_order).refund_status == RefundStatus.NONE

    def test_failed_refund_can_be_locked_again(self, service, gateway, cancelled_order):
        gateway.refund_payment.side_effect = [GatewayError("down"), _refund()]

        service.refund_cancelled_order(str(cancelled_order.id))
        outcome = service.refund_cancelled_order(str(cancelled_order.id))

        assert outcome == RefundOutcome.COMPLETED
        assert _reload(cancelled_order).refund_status == RefundStatus.COMPLETED


# ---------------------------------------------------------------------------
# refund.* webhook events
# ---------------------------------------------------------------------------


def _refund_event(event: str, refund_id: str = "rfnd_1", payment_id: str = "pay_ABC", **extra):
    entity = {"id": refund_id, "payment_id": payment_id, "amount": 105000, **extra}
    return json.dumps({"event": event, "payload": {"refund": {"entity": entity}}}).encode()


def _post(client, body: bytes):
    return client.post(
        WEBHOOK_URL,
        data=body,
        content_type="application/json",
        HTTP_X_RAZORPAY_SIGNATURE=_sign(body),
    )


@pytest.fixture()
def pending_refund(cancelled_order):
    Order.objects.filter(id=cancelled_order.id).update(refund_status=RefundStatus.INITIATED)
    return cancelled_order


class TestRefundWebhook:
    def test_processed_completes_once(
        self, api_client, pending_refund, django_capture_on_commit_callbacks
    ):
        body = _refund_event("refund.processed")
        with django_capture_on_commit_callbacks(execute=True):
            first = _post(api_client, body)
            second = _post(api_client, body)

        assert first.json()["handled"] is True
        assert second.json()["handled"] is False
        order = _reload(pending_refund)
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.refund_id == "rfnd_1"
        assert order.order_status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.PAID
        assert len(mail.outbox) == 1

    def test_created_records_refund_id(self, api_client, pending_refund):
        response = _post(api_client, _refund_event("refund.created", refund_id="rfnd_9"))

        assert response.json()["handled"] is True
        order = _reload(pending_refund)
        assert order.refund_id == "rfnd_9"
        assert order.refund_status == RefundStatus.INITIATED

    def test_failed_records_reason(self, api_client, pending_refund):
        body = json.dumps(
            {
                "event": "refund.failed",
                "payload": {
                    "refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_ABC"}},
                    "payment": {"entity": {"error_description": "Card account closed"}},
                },
            }
        ).encode()

        response = _post(api_client, body)

        assert response.json()["handled"] is True
        order = _reload(pending_refund)
        assert order.refund_status == RefundStatus.FAILED
        assert order.refund_error_reason == "Card account closed"

    def test_late_success_overrides_recorded_failure(self, api_client, pending_refund):
        Order.objects.filter(id=pending_refund.id).update(
            refund_status=RefundStatus.FAILED, refund_id="rfnd_1"
        )

        _post(api_client, _refund_event("refund.processed"))

        assert _reload(pending_refund).refund_status == RefundStatus.COMPLETED

    def test_unknown_payment_is_acknowledged(self, api_client, pending_refund):
        response = _post(api_client, _refund_event("refund.processed", "rfnd_X", "pay_OTHER"))

        assert response.status_code == 200
        assert response.json()["handled"] is False
        assert _reload(pending_refund).refund_status == RefundStatus.INITIATED

    def test_refund_without_id_is_400(self, api_client, pending_refund):
        body = json.dumps(
            {"event": "refund.processed", "payload": {"refund": {"entity": {}}}}
        ).encode()
        assert _post(api_client, body).status_code == 400


# ---------------------------------------------------------------------------
# Operator retry
# ---------------------------------------------------------------------------


class TestRefundRetryEndpoint:
    def _url(self, order) -> str:
        return f"/api/v1/payments/refunds/{order.id}/retry/"

    def test_requires_admin(self, api_client, cancelled_order):
        assert api_client.post(self._url(cancelled_order)).status_code in (401, 403)

    def test_failed_refund_is_retried(self, admin_client, cancelled_order):
        Order.objects.filter(id=cancelled_order.id).update(
            refund_status=RefundStatus.FAILED, refund_error_reason="down"
        )

        with patch("modules.payments.refunds.PaymentGatewayClient") as client_cls:
            client_cls.return_value.refund_payment.return_value = _refund()
            response = admin_client.post(self._url(cancelled_order))

        assert response.status_code == 200
        assert response.json()["outcome"] == RefundOutcome.COMPLETED
        assert response.json()["refund_status"] == RefundStatus.COMPLETED

    def test_only_failed_refunds_are_retried(self, admin_client, cancelled_order):
        with patch("modules.payments.refunds.PaymentGatewayClient") as client_cls:
            response = admin_client.post(self._url(cancelled_order))

        assert response.status_code == 409
        client_cls.assert_not_called()


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


class TestRefundPaymentCall:
    def test_posts_amount_in_minor_units(self):
        resp = MagicMock()
        resp.json.return_value = {"id": "rfnd_1", "status": "processed", "amount": 105000}
        client = PaymentGatewayClient(key_id="k", key_secret="s")

        with patch("modules.payments.gateway.requests.request", return_value=resp) as request:
            refund = client.refund_payment("pay_ABC", Decimal("1050.00"))

        method, url = request.call_args.args
        assert method == "POST"
        assert url.endswith("payments/pay_ABC/refund")
        assert request.call_args.kwargs["json"] == {"amount": 105000}
        assert refund.is_processed
        assert refund.amount == Decimal("1050")

    def test_transport_error_becomes_gateway_error(self):
        client = PaymentGatewayClient(key_id="k", key_secret="s")
        with patch(
            "modules.payments.gateway.requests.request",
            side_effect=requests.ConnectionError("reset"),
        ):
            with pytest.raises(GatewayError):
                client.refund_payment("pay_ABC", Decimal("10.00"))

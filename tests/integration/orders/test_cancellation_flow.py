"""Integration tests for the code-verified cancellation and return flow."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from django.core import mail
from django.utils import timezone
from freezegun import freeze_time

from modules.abuse.constants import BlockType, IncidentType
from modules.abuse.models import BlockRecord, OffenseRecord
from modules.orders.constants import (
    CancellationStatus,
    CarrierStatus,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
)
from modules.orders.models import Order
from modules.payments.gateway import GatewayRefund
from modules.shipping.exceptions import CarrierAuthError

pytestmark = pytest.mark.integration

CODE = "123456"
GUEST_IP = "192.0.2.44"


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fixed_code():
    with patch("modules.orders.services.secrets.randbelow", return_value=int(CODE)):
        yield


@pytest.fixture()
def gateway():
    with patch("modules.payments.refunds.PaymentGatewayClient") as client_cls:
        client = client_cls.return_value
        client.refund_payment.return_value = GatewayRefund(
            id="rfnd_1", payment_id="pay_ABC", status="processed", amount_minor=105000
        )
        yield client


def _code_url(order) -> str:
    return f"/api/v1/orders/{order.id}/cancellation-code/"


def _cancel_url(order) -> str:
    return f"/api/v1/orders/{order.id}/cancel/"


def _request_code(client, order):
    return client.post(_code_url(order), {"email": order.guest_email}, format="json")


def _cancel(client, order, code: str = CODE, **extra):
    return client.post(
        _cancel_url(order),
        {"email": order.guest_email, "code": code, "reason": "changed my mind"},
        format="json",
        **extra,
    )


# ---------------------------------------------------------------------------
# Code issuance
# ---------------------------------------------------------------------------


class TestCodeIssuance:
    def test_code_is_emailed_and_stored_hashed(self, api_client, paid_order):
        response = _request_code(api_client, paid_order)

        assert response.status_code == 200
        assert response.json()["sent"] is True
        assert len(mail.outbox) == 1
        assert CODE in mail.outbox[0].body
        order = Order.objects.get(id=paid_order.id)
        assert order.otp_hash and CODE not in order.otp_hash

    def test_unpaid_checkout_cannot_request_code(self, api_client, make_order):
        response = _request_code(api_client, make_order())
        assert response.status_code == 400
        assert len(mail.outbox) == 0

    def test_wrong_email_is_404(self, api_client, paid_order):
        response = api_client.post(
            _code_url(paid_order), {"email": "someone@example.com"}, format="json"
        )
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_valid_code_cancels(self, api_client, paid_order):
        _request_code(api_client, paid_order)
        response = _cancel(api_client, paid_order)

        assert response.status_code == 200
        assert response.json()["order_status"] == OrderStatus.CANCELLED
        order = Order.objects.get(id=paid_order.id)
        assert order.cancellation_status == CancellationStatus.CANCELLED
        assert order.cancellation_reason == "changed my mind"
        assert order.otp_hash == ""
        assert order.status_history.filter(
            new_status=OrderStatus.CANCELLED, actor="guest"
        ).exists()

    def test_code_is_single_use(self, api_client, paid_order):
        _request_code(api_client, paid_order)
        _cancel(api_client, paid_order)
        response = _cancel(api_client, paid_order)
        assert response.status_code == 400

    def test_cancelling_shipped_booking_releases_it_then_refunds(
        self, api_client, make_order, gateway, django_capture_on_commit_callbacks
    ):
        order = make_order(
            order_status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            carrier_status=CarrierStatus.AWB_ASSIGNED,
            carrier_order_id="SR-9001",
            payment_id="pay_ABC",
        )
        _request_code(api_client, order)

        with patch("modules.shipping.tasks.CarrierClient") as client_cls:
            with django_capture_on_commit_callbacks(execute=True):
                response = _cancel(api_client, order)

        assert response.status_code == 200
        client_cls.return_value.cancel_orders.assert_called_once_with(["SR-9001"])
        gateway.refund_payment.assert_called_once_with("pay_ABC", Decimal("1050.00"))
        order = Order.objects.get(id=order.id)
        assert order.carrier_status == CarrierStatus.CANCELLED
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.payment_status == PaymentStatus.PAID

    def test_failed_carrier_release_holds_the_refund(
        self, api_client, make_order, gateway, django_capture_on_commit_callbacks
    ):
        order = make_order(
            order_status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            carrier_status=CarrierStatus.AWB_ASSIGNED,
            carrier_order_id="SR-9001",
            payment_id="pay_ABC",
        )
        _request_code(api_client, order)

        with patch("modules.shipping.tasks.CarrierClient") as client_cls:
            client_cls.return_value.cancel_orders.side_effect = CarrierAuthError("bad token")
            with django_capture_on_commit_callbacks(execute=True):
                response = _cancel(api_client, order)

        assert response.status_code == 200
        order = Order.objects.get(id=order.id)
        assert order.order_status == OrderStatus.CANCELLED
        assert order.carrier_status == CarrierStatus.CANCELLATION_FAILED
        assert order.refund_status == RefundStatus.NONE
        gateway.refund_payment.assert_not_called()

    def test_order_without_booking_is_refunded_directly(
        self, api_client, paid_order, gateway, django_capture_on_commit_callbacks
    ):
        _request_code(api_client, paid_order)
        with patch("modules.shipping.tasks.CarrierClient") as client_cls:
            with django_capture_on_commit_callbacks(execute=True):
                _cancel(api_client, paid_order)

        client_cls.assert_not_called()
        gateway.refund_payment.assert_called_once_with("pay_ABC", Decimal("1050.00"))
        order = Order.objects.get(id=paid_order.id)
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.refund_id == "rfnd_1"
        assert mail.outbox[-1].subject == f"Refund processed for order {paid_order.id}"

    def test_return_request_is_not_refunded(
        self, api_client, paid_order, gateway, django_capture_on_commit_callbacks
    ):
        Order.objects.filter(id=paid_order.id).update(order_status=OrderStatus.DELIVERED)
        _request_code(api_client, paid_order)

        with django_capture_on_commit_callbacks(execute=True):
            _cancel(api_client, paid_order)

        gateway.refund_payment.assert_not_called()
        assert Order.objects.get(id=paid_order.id).refund_status == RefundStatus.NONE

    def test_delivered_order_becomes_return_request(self, api_client, paid_order):
        Order.objects.filter(id=paid_order.id).update(order_status=OrderStatus.DELIVERED)
        _request_code(api_client, paid_order)

        response = _cancel(api_client, paid_order)

        assert response.status_code == 200
        assert response.json()["order_status"] == OrderStatus.RETURN_REQUESTED
        assert response.json()["cancellation_status"] == CancellationStatus.RETURN_REQUESTED

    def test_code_without_issuance_is_400(self, api_client, paid_order):
        response = _cancel(api_client, paid_order)
        assert response.status_code == 400
        assert Order.objects.get(id=paid_order.id).order_status == OrderStatus.CONFIRMED

    def test_expired_code_is_400(self, api_client, paid_order):
        with freeze_time(timezone.now()) as frozen:
            _request_code(api_client, paid_order)
            frozen.tick(timedelta(minutes=11))
            response = _cancel(api_client, paid_order)

        assert response.status_code == 400
        assert Order.objects.get(id=paid_order.id).order_status == OrderStatus.CONFIRMED


# ---------------------------------------------------------------------------
# Brute force
# ---------------------------------------------------------------------------


class TestWrongCodes:
    def test_wrong_code_reports_attempts_remaining(self, api_client, paid_order):
        _request_code(api_client, paid_order)
        response = _cancel(api_client, paid_order, code="000000")

        assert response.status_code == 400
        assert response.json()["attempts_remaining"] == 4
        assert Order.objects.get(id=paid_order.id).otp_attempts == 1

    def test_exhausting_attempts_locks_and_blocks_ip(self, api_client, paid_order):
        _request_code(api_client, paid_order)
        for remaining in (4, 3, 2, 1):
            response = _cancel(api_client, paid_order, code="000000", REMOTE_ADDR=GUEST_IP)
            assert response.json()["attempts_remaining"] == remaining

        response = _cancel(api_client, paid_order, code="000000", REMOTE_ADDR=GUEST_IP)

        assert response.status_code == 429
        assert response.json()["locked_until"]
        assert OffenseRecord.objects.get(ip_address=GUEST_IP).incident_type == (
            IncidentType.OTP_BRUTE_FORCE
        )
        block = BlockRecord.objects.get(ip_address=GUEST_IP)
        assert block.block_type == BlockType.TEMPORARY

        order = Order.objects.get(id=paid_order.id)
        assert order.otp_locked_until is not None
        assert order.order_status == OrderStatus.CONFIRMED

    def test_locked_order_refuses_new_codes(self, api_client, paid_order):
        Order.objects.filter(id=paid_order.id).update(
            otp_locked_until=timezone.now() + timedelta(minutes=30)
        )
        response = _request_code(api_client, paid_order)

        assert response.status_code == 429
        assert len(mail.outbox) == 0

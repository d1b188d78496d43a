"""Integration tests for the guest checkout and order read endpoints."""

from __future__ import annotations

import pytest

from modules.orders.constants import OrderStatus, PaymentStatus
from modules.orders.models import Order, OrderItem

pytestmark = pytest.mark.integration

ORDERS_URL = "/api/v1/orders/"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def checkout_payload() -> dict:
    return {
        "guest_email": "  Buyer@Example.com ",
        "guest_phone": "9876543210",
        "shipping": {
            "first_name": "Asha",
            "last_name": "Patel",
            "address_line1": "12 Relief Road",
            "city": "Ahmedabad",
            "state": "Gujarat",
            "state_code": "24",
            "pincode": "380001",
        },
        "items": [
            {
                "product_name": "Block-print cushion",
                "sku": "CUSH-01",
                "hsn": "9404",
                "unit_price": "1050.00",
                "quantity": 2,
                "weight": "0.400",
            },
            {"product_name": "Table runner", "sku": "RUN-02", "unit_price": "450.00", "quantity": 1},
        ],
        "shipping_cost": "80.00",
    }


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class TestCheckout:
    def test_creates_checked_out_order(self, api_client, checkout_payload):
        response = api_client.post(ORDERS_URL, checkout_payload, format="json")

        assert response.status_code == 201
        data = response.json()
        assert data["order_status"] == OrderStatus.CHECKED_OUT
        assert data["payment_status"] == PaymentStatus.INITIATED
        assert data["guest_email"] == "buyer@example.com"
        assert data["total_amount"] == "2630.00"
        assert len(data["items"]) == 2

    def test_snapshots_billing_from_shipping(self, api_client, checkout_payload):
        response = api_client.post(ORDERS_URL, checkout_payload, format="json")

        order = Order.objects.get(id=response.json()["id"])
        assert order.billing_first_name == "Asha"
        assert order.billing_pincode == "380001"
        assert OrderItem.objects.get(order=order, sku="CUSH-01").subtotal == 2100

    def test_response_never_exposes_code_state(self, api_client, checkout_payload):
        data = api_client.post(ORDERS_URL, checkout_payload, format="json").json()
        assert not {"otp_hash", "otp_attempts", "otp_expires_at"} & set(data)

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda p: p.update(items=[]),
            lambda p: p["shipping"].update(pincode="12345"),
            lambda p: p["items"][0].update(quantity=0),
            lambda p: p.update(guest_email="not-an-email"),
        ],
    )
    def test_invalid_payload_is_400(self, api_client, checkout_payload, mutate):
        mutate(checkout_payload)
        response = api_client.post(ORDERS_URL, checkout_payload, format="json")
        assert response.status_code == 400
        assert not Order.objects.exists()


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


class TestRetrieve:
    def test_owner_can_read(self, api_client, make_order):
        order = make_order()
        response = api_client.get(f"{ORDERS_URL}{order.id}/", {"email": "GUEST@example.com"})

        assert response.status_code == 200
        assert response.json()["id"] == str(order.id)
        assert response.json()["status_history"]

    def test_wrong_email_and_unknown_order_look_the_same(self, api_client, make_order):
        order = make_order()
        wrong_email = api_client.get(f"{ORDERS_URL}{order.id}/", {"email": "x@example.com"})
        unknown = api_client.get(f"{ORDERS_URL}not-a-uuid/", {"email": order.guest_email})

        assert wrong_email.status_code == unknown.status_code == 404
        assert wrong_email.json() == unknown.json()


# ---------------------------------------------------------------------------
# Fulfilment (admin)
# ---------------------------------------------------------------------------


class TestAdvance:
    def test_requires_admin(self, api_client, paid_order):
        response = api_client.post(
            f"{ORDERS_URL}{paid_order.id}/advance/", {"status": "PICKED_UP"}, format="json"
        )
        assert response.status_code in (401, 403)

    def test_admin_advances_and_history_names_actor(self, admin_client, paid_order):
        response = admin_client.post(
            f"{ORDERS_URL}{paid_order.id}/advance/",
            {"status": "PICKED_UP", "notes": "handed to courier"},
            format="json",
        )

        assert response.status_code == 200
        assert response.json()["order_status"] == OrderStatus.PICKED_UP
        latest = paid_order.status_history.get(new_status=OrderStatus.PICKED_UP)
        assert latest.actor == "ops"
        assert latest.notes == "handed to courier"

    def test_skipping_a_step_is_400(self, admin_client, paid_order):
        response = admin_client.post(
            f"{ORDERS_URL}{paid_order.id}/advance/", {"status": "DELIVERED"}, format="json"
        )
        assert response.status_code == 400

    def test_unknown_order_is_404(self, admin_client):
        response = admin_client.post(
            f"{ORDERS_URL}0190f3c2-7a1b-7c3d-8e4f-123456789abc/advance/",
            {"status": "PICKED_UP"},
            format="json",
        )
        assert response.status_code == 404

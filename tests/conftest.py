from __future__ import annotations

from decimal import Decimal

import pytest

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils import timezone

from rest_framework.test import APIClient

from modules.orders.constants import CarrierStatus, OrderStatus, PaymentStatus
from modules.orders.dtos import AddressDTO, CheckoutDTO, CheckoutItemDTO
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.shipping.carrier import reset_token_cache

GUEST_EMAIL = "guest@example.com"


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture(autouse=True)
def _clear_cache():
    """Block status and the allowlist are cached; start every test clean."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def _fresh_carrier_token():
    """The carrier token cache is process-wide; never leak it between tests."""
    reset_token_cache()
    yield
    reset_token_cache()


@pytest.fixture()
def api_client():
    """DRF APIClient for testing API endpoints."""
    return APIClient()


@pytest.fixture()
def api_client_with_correlation(api_client):
    """APIClient pre-configured with a known correlation ID header."""
    cid = "test-correlation-id-fixture"
    api_client.defaults["HTTP_X_REQUEST_ID"] = cid
    return api_client, cid


@pytest.fixture()
def admin_client():
    """APIClient force-authenticated as a staff user."""
    client = APIClient()
    user = get_user_model().objects.create_user(
        username="ops", password="testpass123", is_staff=True
    )
    client.force_authenticate(user=user)
    return client


def build_checkout(
    email: str = GUEST_EMAIL,
    items: list[dict] | None = None,
    state_code: str = "24",
    shipping_cost: Decimal = Decimal("0.00"),
) -> CheckoutDTO:
    address = AddressDTO(
        first_name="Asha",
        last_name="Patel",
        address_line1="12 Relief Road",
        city="Ahmedabad",
        state="Gujarat",
        state_code=state_code,
        pincode="380001",
    )
    items = items or [
        {
            "product_name": "Block-print cushion",
            "sku": "CUSH-01",
            "hsn": "9404",
            "unit_price": Decimal("1050.00"),
            "quantity": 1,
            "weight": Decimal("0.400"),
            "length": Decimal("30"),
            "breadth": Decimal("30"),
            "height": Decimal("8"),
        }
    ]
    return CheckoutDTO(
        guest_email=email,
        guest_phone="9876543210",
        shipping=address,
        items=[CheckoutItemDTO(**item) for item in items],
        shipping_cost=shipping_cost,
    )


@pytest.fixture()
def make_order():
    """Factory: create a checkout, optionally forcing lifecycle fields."""

    def _make(email: str = GUEST_EMAIL, items: list[dict] | None = None, **fields) -> Order:
        order = OrderDjangoRepository().create(build_checkout(email=email, items=items))
        if fields:
            Order.objects.filter(id=order.id).update(**fields)
            order.refresh_from_db()
        return order

    return _make


@pytest.fixture()
def paid_order(make_order):
    return make_order(
        order_status=OrderStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        carrier_status=CarrierStatus.NOT_SHIPPED,
        gateway_order_id="order_GW123",
        payment_id="pay_ABC",
        paid_at=timezone.now(),
    )

"""Integration tests for the Shipment Assignment Engine.

The carrier is a ``MagicMock``; the service writes through the real
repository so stored state and CAS guards are exercised.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from modules.orders.constants import CarrierStatus, PaymentStatus
from modules.orders.exceptions import OrderNotFound
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.shipping.carrier import CarrierClient, CreatedShipment
from modules.shipping.exceptions import (
    AwbAssignmentError,
    CarrierRequestError,
    LabelGenerationFailed,
    ManifestGenerationFailed,
    ShipmentNotReady,
)
from modules.shipping.package import PackageMetrics
from modules.shipping.services import (
    STATUS_ALREADY_ASSIGNED,
    STATUS_AWB_PENDING,
    STATUS_SUCCESS,
    ShipmentService,
)

pytestmark = pytest.mark.integration


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def carrier():
    client = MagicMock(spec=CarrierClient)
    client.create_shipment.return_value = CreatedShipment(
        shipment_id="SHP-1", carrier_order_id="SR-1"
    )
    client.assign_awb.return_value = "AWB123"
    client.generate_label.return_value = "https://labels.test/SHP-1.pdf"
    client.schedule_pickup.return_value = {"pickup_status": 1}
    client.generate_manifest.return_value = "https://manifests.test/SHP-1.pdf"
    return client


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def service(carrier, sleeps):
    return ShipmentService(OrderDjangoRepository(), carrier, sleep=sleeps.append)


@pytest.fixture()
def assigned_order(make_order):
    return make_order(
        order_status="CONFIRMED",
        payment_status=PaymentStatus.PAID,
        carrier_shipment_id="SHP-1",
        carrier_order_id="SR-1",
        awb_code="AWB123",
        carrier_status=CarrierStatus.AWB_ASSIGNED,
    )


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


class TestAssignShipment:
    def test_books_and_assigns_awb(self, service, carrier, paid_order, sleeps):
        result = service.assign_shipment(str(paid_order.id))

        assert result == {"status": STATUS_SUCCESS, "shipment_id": "SHP-1", "awb_code": "AWB123"}
        assert sleeps == []
        order = Order.objects.get(id=paid_order.id)
        assert order.awb_code == "AWB123"
        assert order.carrier_shipment_id == "SHP-1"
        assert order.carrier_order_id == "SR-1"
        assert order.carrier_status == CarrierStatus.AWB_ASSIGNED

    def test_package_metrics_come_from_single_item(self, service, carrier, paid_order):
        service.assign_shipment(str(paid_order.id))

        order = Order.objects.get(id=paid_order.id)
        assert order.package_weight == Decimal("0.400")
        assert order.package_length == Decimal("30.00")
        payload = carrier.create_shipment.call_args.args[0]
        assert payload["order_id"] == str(paid_order.id)
        assert payload["weight"] == "0.400"
        assert payload["order_items"][0]["sku"] == "CUSH-01"

    def test_explicit_metrics_win(self, service, carrier, paid_order):
        explicit = PackageMetrics(
            length=Decimal("40"), breadth=Decimal("25"), height=Decimal("12"), weight=Decimal("2.5")
        )
        service.assign_shipment(str(paid_order.id), explicit)

        assert Order.objects.get(id=paid_order.id).package_weight == Decimal("2.500")
        assert carrier.create_shipment.call_args.args[0]["length"] == "40"

    def test_exhausted_awb_attempts_leave_order_pending(self, service, carrier, paid_order, sleeps):
        carrier.assign_awb.side_effect = AwbAssignmentError("no courier serviceable")

        result = service.assign_shipment(str(paid_order.id))

        assert result == {"status": STATUS_AWB_PENDING, "shipment_id": "SHP-1"}
        assert carrier.assign_awb.call_count == 3
        assert sleeps == [2, 4]
        order = Order.objects.get(id=paid_order.id)
        assert order.carrier_status == CarrierStatus.AWB_PENDING
        assert order.carrier_shipment_id == "SHP-1"
        assert order.awb_code is None

    def test_awb_succeeds_on_a_later_attempt(self, service, carrier, paid_order, sleeps):
        carrier.assign_awb.side_effect = [CarrierRequestError("gateway timeout", 504), "AWB777"]

        result = service.assign_shipment(str(paid_order.id))

        assert result["awb_code"] == "AWB777"
        assert sleeps == [2]

    def test_retry_reuses_existing_booking(self, service, carrier, paid_order):
        carrier.assign_awb.side_effect = AwbAssignmentError("not yet")
        service.assign_shipment(str(paid_order.id))

        carrier.assign_awb.side_effect = None
        carrier.assign_awb.return_value = "AWB999"
        result = service.assign_shipment(str(paid_order.id))

        assert result["status"] == STATUS_SUCCESS
        assert result["awb_code"] == "AWB999"
        carrier.create_shipment.assert_called_once()
        carrier.assign_awb.assert_called_with("SHP-1")

    def test_assigned_order_is_not_rebooked(self, service, carrier, assigned_order):
        result = service.assign_shipment(str(assigned_order.id))

        assert result == {"status": STATUS_ALREADY_ASSIGNED, "awb_code": "AWB123"}
        carrier.create_shipment.assert_not_called()
        carrier.assign_awb.assert_not_called()

    def test_unpaid_order_is_not_ready(self, service, carrier, make_order):
        with pytest.raises(ShipmentNotReady):
            service.assign_shipment(str(make_order().id))
        carrier.create_shipment.assert_not_called()

    def test_unknown_order(self, service):
        with pytest.raises(OrderNotFound):
            service.assign_shipment("0190f3c2-7a1b-7c3d-8e4f-123456789abc")

    def test_booking_failure_stores_nothing(self, service, carrier, paid_order):
        carrier.create_shipment.side_effect = CarrierRequestError("bad pincode", 422)

        with pytest.raises(CarrierRequestError):
            service.assign_shipment(str(paid_order.id))

        order = Order.objects.get(id=paid_order.id)
        assert order.carrier_shipment_id is None
        carrier.assign_awb.assert_not_called()


# ---------------------------------------------------------------------------
# Paperwork
# ---------------------------------------------------------------------------


class TestShip:
    def test_label_pickup_and_manifest(self, service, carrier, assigned_order):
        result = service.ship(str(assigned_order.id))

        assert result == {
            "label_url": "https://labels.test/SHP-1.pdf",
            "pickup_scheduled": True,
            "manifest_url": "https://manifests.test/SHP-1.pdf",
        }
        carrier.generate_manifest.assert_called_once_with(["SHP-1"])
        order = Order.objects.get(id=assigned_order.id)
        assert order.label_url == "https://labels.test/SHP-1.pdf"
        assert order.pickup_scheduled_at is not None
        assert order.manifest_generated is True
        assert order.carrier_status == CarrierStatus.MANIFESTED

    def test_stored_label_is_not_regenerated(self, service, carrier, make_order):
        order = make_order(
            order_status="CONFIRMED",
            payment_status=PaymentStatus.PAID,
            carrier_shipment_id="SHP-1",
            awb_code="AWB123",
            label_url="https://labels.test/old.pdf",
        )

        result = service.ship(str(order.id))

        carrier.generate_label.assert_not_called()
        assert result["label_url"] == "https://labels.test/old.pdf"

    def test_label_failure_stops_everything(self, service, carrier, assigned_order):
        carrier.generate_label.side_effect = CarrierRequestError("boom", 500)

        with pytest.raises(LabelGenerationFailed):
            service.ship(str(assigned_order.id))

        carrier.schedule_pickup.assert_not_called()
        carrier.generate_manifest.assert_not_called()

    def test_manifest_failure_keeps_label(self, service, carrier, assigned_order):
        carrier.generate_manifest.side_effect = CarrierRequestError("boom", 500)

        with pytest.raises(ManifestGenerationFailed):
            service.ship(str(assigned_order.id))

        order = Order.objects.get(id=assigned_order.id)
        assert order.label_url == "https://labels.test/SHP-1.pdf"
        assert order.manifest_generated is False

        # A retry picks up where it stopped.
        carrier.generate_manifest.side_effect = None
        service.ship(str(assigned_order.id))
        carrier.generate_label.assert_called_once()
        carrier.schedule_pickup.assert_called_once()

    def test_pickup_failure_is_not_fatal(self, service, carrier, assigned_order):
        carrier.schedule_pickup.side_effect = CarrierRequestError("slot full", 400)

        result = service.ship(str(assigned_order.id))

        assert result["pickup_scheduled"] is False
        assert Order.objects.get(id=assigned_order.id).manifest_generated is True

    def test_requires_awb(self, service, paid_order):
        with pytest.raises(ShipmentNotReady):
            service.ship(str(paid_order.id))

    def test_manifest_only_once(self, service, carrier, assigned_order):
        service.ship(str(assigned_order.id))
        with pytest.raises(ShipmentNotReady):
            service.ship(str(assigned_order.id))
        carrier.generate_manifest.assert_called_once()

"""Shipment Assignment Engine.

``assign_shipment`` books a confirmed order with the carrier and obtains
its AWB:

1. resolve package metrics (see ``package.py``) and store them;
2. create the carrier shipment once, then store its id right away with
   ``carrier_status=AWB_PENDING``;
3. assign the AWB with ``AWB_MAX_ATTEMPTS`` attempts, waiting
   ``attempt * AWB_BASE_DELAY_SECONDS`` between them;
4. store the AWB, or leave the order in AWB_PENDING for a later retry.

Calling it again for an AWB_PENDING order skips step 2, so the carrier
never sees a second booking for the same parcel.

``ship`` runs the paperwork for an assigned order: label (skipped when
stored), pickup (best-effort) and manifest.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import structlog
from django.conf import settings
from django.utils import timezone

from modules.core.retry import call_with_retry, linear_backoff
from modules.orders.constants import CarrierStatus, OrderStatus, PaymentStatus
from modules.orders.exceptions import OrderNotFound
from modules.orders.transitions import (
    ASSIGN_AWB,
    ATTACH_LABEL,
    ATTACH_MANIFEST,
    RECORD_PACKAGE_METRICS,
    RECORD_SHIPMENT,
    SCHEDULE_PICKUP,
)
from modules.shipping.exceptions import (
    CarrierError,
    LabelGenerationFailed,
    ManifestGenerationFailed,
    ShipmentNotReady,
)
from modules.shipping.package import PackageMetrics, resolve_package_metrics

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from modules.shipping.carrier import CarrierClient, CourierRate

logger = structlog.get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_AWB_PENDING = "awb_pending"
STATUS_ALREADY_ASSIGNED = "already_assigned"


def build_shipment_payload(order: Order, metrics: PackageMetrics) -> Dict[str, Any]:
    items = list(order.items.all())
    return {
        "order_id": str(order.id),
        "order_date": timezone.now().strftime("%Y-%m-%d %H:%M"),
        "pickup_location": settings.CARRIER_PICKUP_LOCATION,
        "billing_customer_name": order.billing_first_name,
        "billing_last_name": order.billing_last_name,
        "billing_address": order.billing_address_line1,
        "billing_address_2": order.billing_address_line2,
        "billing_city": order.billing_city,
        "billing_pincode": order.billing_pincode,
        "billing_state": order.billing_state,
        "billing_country": order.billing_country,
        "billing_email": order.guest_email,
        "billing_phone": order.guest_phone,
        "shipping_is_billing": False,
        "shipping_customer_name": order.shipping_first_name,
        "shipping_last_name": order.shipping_last_name,
        "shipping_address": order.shipping_address_line1,
        "shipping_address_2": order.shipping_address_line2,
        "shipping_city": order.shipping_city,
        "shipping_pincode": order.shipping_pincode,
        "shipping_state": order.shipping_state,
        "shipping_country": order.shipping_country,
        "shipping_email": order.guest_email,
        "shipping_phone": order.guest_phone,
        "order_items": [
            {
                "name": item.product_name,
                "sku": item.sku,
                "units": item.quantity,
                "selling_price": str(item.unit_price),
                "discount": 0,
                "tax": 0,
                "hsn": item.hsn,
            }
            for item in items
        ],
        "payment_method": "Prepaid",
        "shipping_charges": str(order.shipping_cost),
        "sub_total": str(sum((item.subtotal for item in items), Decimal("0"))),
        "length": str(metrics.length),
        "breadth": str(metrics.breadth),
        "height": str(metrics.height),
        "weight": str(metrics.weight),
    }


class ShipmentService:
    """Receives the repository and carrier via constructor injection (DIP)."""

    def __init__(
        self,
        order_repository: IOrderRepository,
        carrier: CarrierClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._order_repo = order_repository
        self._carrier = carrier
        self._sleep = sleep

    def _load_shippable(self, order_id: str) -> Order:
        order = self._order_repo.get_by_id(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        if (
            order.order_status != OrderStatus.CONFIRMED
            or order.payment_status != PaymentStatus.PAID
        ):
            raise ShipmentNotReady(
                f"Order is {order.order_status}/{order.payment_status}; "
                "only paid, confirmed orders can be shipped."
            )
        return order

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_shipment(
        self, order_id: str, explicit_metrics: Optional[PackageMetrics] = None
    ) -> Dict[str, Any]:
        """Book the shipment and obtain an AWB.

        Returns ``{"status": "success" | "awb_pending" | "already_assigned", ...}``.

        Raises:
            OrderNotFound: unknown order.
            ShipmentNotReady: the order is not paid and confirmed.
            CarrierError: the shipment could not be created.
        """
        order = self._load_shippable(order_id)
        log = logger.bind(order_id=str(order.id))

        if order.awb_code:
            return {"status": STATUS_ALREADY_ASSIGNED, "awb_code": order.awb_code}

        shipment_id = order.carrier_shipment_id
        carrier_order_id = order.carrier_order_id

        if not shipment_id:
            metrics = resolve_package_metrics(list(order.items.all()), explicit_metrics)
            self._order_repo.transition(order.id, RECORD_PACKAGE_METRICS, metrics.as_changes())
            log.info("shipment.package_resolved", source=metrics.source, weight=str(metrics.weight))

            created = self._carrier.create_shipment(build_shipment_payload(order, metrics))
            shipment_id = created.shipment_id
            carrier_order_id = created.carrier_order_id
            rows = self._order_repo.transition(
                order.id,
                RECORD_SHIPMENT,
                {
                    "carrier_shipment_id": shipment_id,
                    "carrier_order_id": carrier_order_id,
                    "carrier_status": CarrierStatus.AWB_PENDING,
                },
            )
            if not rows:
                # A concurrent request recorded its own booking first; continue with it.
                log.error("shipment.duplicate_booking", discarded_shipment_id=shipment_id)
                current = self._load_shippable(str(order.id))
                shipment_id = current.carrier_shipment_id
                carrier_order_id = current.carrier_order_id
            else:
                log.info("shipment.created", shipment_id=shipment_id)
        else:
            log.info("shipment.reusing_booking", shipment_id=shipment_id)

        try:
            awb_code = call_with_retry(
                lambda: self._carrier.assign_awb(shipment_id),
                max_attempts=settings.AWB_MAX_ATTEMPTS,
                backoff=linear_backoff(settings.AWB_BASE_DELAY_SECONDS),
                is_retryable=lambda exc: isinstance(exc, CarrierError),
                sleep=self._sleep,
                operation="shipment.assign_awb",
            )
        except CarrierError as exc:
            log.warning("shipment.awb_pending", shipment_id=shipment_id, error=str(exc))
            return {"status": STATUS_AWB_PENDING, "shipment_id": shipment_id}

        rows = self._order_repo.transition(
            order.id,
            ASSIGN_AWB,
            {
                "awb_code": awb_code,
                "carrier_status": CarrierStatus.AWB_ASSIGNED,
                "carrier_shipment_id": shipment_id,
                "carrier_order_id": carrier_order_id,
            },
        )
        if not rows:
            log.error("shipment.awb_not_recorded", awb_code=awb_code)
        else:
            log.info("shipment.awb_assigned", awb_code=awb_code)
        return {"status": STATUS_SUCCESS, "shipment_id": shipment_id, "awb_code": awb_code}

    # ------------------------------------------------------------------
    # Paperwork
    # ------------------------------------------------------------------

    def ship(self, order_id: str) -> Dict[str, Any]:
        """Generate label, schedule pickup and generate the manifest.

        Raises:
            ShipmentNotReady: no AWB yet, or the manifest already exists.
            LabelGenerationFailed: no label; nothing else attempted.
            ManifestGenerationFailed: label (and maybe pickup) done, manifest not.
        """
        order = self._load_shippable(order_id)
        log = logger.bind(order_id=str(order.id))

        if not order.carrier_shipment_id or not order.awb_code:
            raise ShipmentNotReady("Assign an AWB before shipping.")
        if order.manifest_generated:
            raise ShipmentNotReady("Manifest already generated for this order.")

        shipment_id = order.carrier_shipment_id
        label_url = order.label_url
        if not label_url:
            try:
                label_url = self._carrier.generate_label(shipment_id)
            except CarrierError as exc:
                log.error("shipment.label_failed", error=str(exc))
                raise LabelGenerationFailed("Label generation failed.") from exc
            self._order_repo.transition(order.id, ATTACH_LABEL, {"label_url": label_url})
            log.info("shipment.label_generated")

        pickup_scheduled = order.pickup_scheduled_at is not None
        if not pickup_scheduled:
            try:
                self._carrier.schedule_pickup(shipment_id)
            except CarrierError as exc:
                log.warning("shipment.pickup_failed", error=str(exc))
            else:
                pickup_scheduled = bool(
                    self._order_repo.transition(
                        order.id,
                        SCHEDULE_PICKUP,
                        {
                            "pickup_scheduled_at": timezone.now(),
                            "carrier_status": CarrierStatus.PICKUP_SCHEDULED,
                        },
                    )
                )

        try:
            manifest_url = self._carrier.generate_manifest([shipment_id])
        except CarrierError as exc:
            log.error("shipment.manifest_failed", error=str(exc))
            raise ManifestGenerationFailed("Label was generated but manifest failed.") from exc

        self._order_repo.transition(
            order.id,
            ATTACH_MANIFEST,
            {
                "manifest_url": manifest_url,
                "manifest_generated": True,
                "carrier_status": CarrierStatus.MANIFESTED,
            },
        )
        log.info("shipment.manifest_generated")
        return {
            "label_url": label_url,
            "pickup_scheduled": pickup_scheduled,
            "manifest_url": manifest_url,
        }

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------

    def estimate_rates(self, delivery_pincode: str, weight: Decimal) -> List[CourierRate]:
        return self._carrier.get_rates(settings.STORE_PINCODE, delivery_pincode, weight)

"""Carrier tracking updates pushed by webhook.

Every update mirrors the carrier's label into ``carrier_tracking_status``
without touching our own ``carrier_status``.  Two labels also move the
order forward: ``PICKED UP`` and ``Delivered``.  A delivery reported
without a prior pickup walks through PICKED_UP first, so the lifecycle
and its history stay forward-only.  Cancelled or returned orders are
never moved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from django.db import transaction
from django.utils import timezone

from modules.orders.constants import OrderStatus
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.repositories.interfaces import IOrderRepository
from modules.orders.transitions import ADVANCE_STATUS, RECORD_TRACKING

logger = structlog.get_logger(__name__)

CARRIER_ACTOR = "carrier"
LABEL_PICKED_UP = "PICKED UP"
LABEL_DELIVERED = "DELIVERED"

# label -> steps, each (allowed current status, new status)
_STEPS = {
    LABEL_PICKED_UP: ((OrderStatus.CONFIRMED, OrderStatus.PICKED_UP),),
    LABEL_DELIVERED: (
        (OrderStatus.CONFIRMED, OrderStatus.PICKED_UP),
        (OrderStatus.PICKED_UP, OrderStatus.DELIVERED),
    ),
}


@dataclass(frozen=True)
class TrackingResult:
    handled: bool
    order_id: Optional[str] = None
    order_status: Optional[str] = None


class TrackingService:
    def __init__(self, order_repository: Optional[IOrderRepository] = None) -> None:
        self._order_repo = order_repository or OrderDjangoRepository()

    def apply(self, awb: str, label: str) -> TrackingResult:
        order_id = Order.objects.filter(awb_code=awb).values_list("id", flat=True).first()
        if order_id is None:
            logger.warning("shipping.tracking_unknown_awb", awb=awb, label=label)
            return TrackingResult(handled=False)

        order_id = str(order_id)
        normalized = label.strip().upper()
        with transaction.atomic():
            self._order_repo.transition(
                order_id,
                RECORD_TRACKING,
                {
                    "carrier_tracking_status": label[:64],
                    "carrier_tracking_updated_at": timezone.now(),
                },
            )
            for current, target in _STEPS.get(normalized, ()):
                self._order_repo.transition(
                    order_id,
                    ADVANCE_STATUS,
                    {"order_status": target},
                    actor=CARRIER_ACTOR,
                    notes=f"Carrier reported {label}",
                    order_status=[current],
                )

        status = Order.objects.filter(id=order_id).values_list("order_status", flat=True).first()
        logger.info("shipping.tracking_applied", order_id=order_id, label=label, order_status=status)
        return TrackingResult(handled=True, order_id=order_id, order_status=status)

"""Refunds for cancelled paid orders.

A refund starts with one conditional write, ``LOCK_REFUND``, that moves
``refund_status`` to ``REFUND_INITIATED``.  It only matches a cancelled,
paid order with no live carrier booking, so the gateway is called at
most once per lock.  The gateway either settles the refund on the spot
(``processed``) or later through a ``refund.*`` webhook; both paths
settle through ``complete`` / ``fail`` and only the winning write sends
the refund email.

``payment_status`` is never touched: it records what the buyer paid.
A failed refund can be locked again by an operator.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog
from django.db import transaction
from django.utils import timezone

from modules.orders.constants import RefundStatus
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.repositories.interfaces import IOrderRepository
from modules.orders.transitions import LOCK_REFUND, SETTLE_REFUND
from modules.payments.exceptions import GatewayError
from modules.payments.gateway import PaymentGatewayClient

logger = structlog.get_logger(__name__)

# The gateway is the source of truth: a late success overrides a failure we recorded.
SETTLEABLE = [RefundStatus.INITIATED, RefundStatus.FAILED]


class RefundOutcome(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    SKIPPED = "skipped"


class RefundService:
    def __init__(
        self,
        order_repository: Optional[IOrderRepository] = None,
        gateway: Optional[PaymentGatewayClient] = None,
    ) -> None:
        self._order_repo = order_repository or OrderDjangoRepository()
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGatewayClient:
        if self._gateway is None:
            self._gateway = PaymentGatewayClient()
        return self._gateway

    def refund_cancelled_order(self, order_id: str) -> RefundOutcome:
        """Lock, then refund the full order total through the gateway."""
        log = logger.bind(order_id=order_id)
        order = self._order_repo.get_by_id(order_id)
        if order is None:
            log.warning("refund.order_missing")
            return RefundOutcome.SKIPPED

        rows = self._order_repo.transition(
            order_id,
            LOCK_REFUND,
            {
                "refund_status": RefundStatus.INITIATED,
                "refund_amount": order.total_amount,
                "refund_initiated_at": timezone.now(),
                "refund_error_reason": "",
            },
        )
        if not rows:
            log.info("refund.lock_missed", refund_status=order.refund_status)
            return RefundOutcome.SKIPPED

        if not order.payment_id:
            self.fail(order_id, "Order has no captured payment to refund.")
            return RefundOutcome.FAILED

        try:
            refund = self.gateway.refund_payment(order.payment_id, order.total_amount)
        except GatewayError as exc:
            self.fail(order_id, str(exc))
            return RefundOutcome.FAILED

        log.info("refund.created", refund_id=refund.id, gateway_status=refund.status)
        if refund.is_processed:
            self.complete(order_id, refund.id, refund.amount)
            return RefundOutcome.COMPLETED

        self.record_refund_id(order_id, refund.id)
        return RefundOutcome.PENDING

    # ------------------------------------------------------------------
    # Settlement (shared with the gateway webhook)
    # ------------------------------------------------------------------

    def find_order_id(self, refund_id: str, payment_id: str) -> Optional[str]:
        found = None
        if refund_id:
            found = Order.objects.filter(refund_id=refund_id).values_list("id", flat=True).first()
        if found is None and payment_id:
            found = (
                Order.objects.filter(payment_id=payment_id).values_list("id", flat=True).first()
            )
        return str(found) if found is not None else None

    def record_refund_id(self, order_id: str, refund_id: str) -> int:
        return self._order_repo.transition(
            order_id, SETTLE_REFUND, {"refund_id": refund_id}, refund_id=[None]
        )

    def complete(
        self, order_id: str, refund_id: str, amount: Optional[Decimal] = None
    ) -> bool:
        changes = {
            "refund_status": RefundStatus.COMPLETED,
            "refund_id": refund_id,
            "refund_completed_at": timezone.now(),
            "refund_error_reason": "",
        }
        if amount is not None:
            changes["refund_amount"] = amount
        rows = self._order_repo.transition(
            order_id, SETTLE_REFUND, changes, refund_status=SETTLEABLE
        )
        if rows:
            logger.info("refund.completed", order_id=order_id, refund_id=refund_id)
            transaction.on_commit(lambda: self._on_refund_completed(order_id), robust=True)
        return bool(rows)

    def fail(self, order_id: str, reason: str, refund_id: Optional[str] = None) -> bool:
        changes = {
            "refund_status": RefundStatus.FAILED,
            "refund_error_reason": reason[:255],
        }
        if refund_id:
            changes["refund_id"] = refund_id
        rows = self._order_repo.transition(order_id, SETTLE_REFUND, changes)
        if rows:
            logger.error("refund.failed", order_id=order_id, reason=reason)
        return bool(rows)

    def _on_refund_completed(self, order_id: str) -> None:
        from modules.notifications.tasks import send_refund_processed

        send_refund_processed.delay(order_id)

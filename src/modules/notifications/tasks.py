"""Async notification tasks."""

from __future__ import annotations

from smtplib import SMTPException

import structlog
from celery import shared_task

from modules.notifications.services import EmailNotifier
from modules.orders.models import Order
from modules.payments.tax import TaxBreakdown

logger = structlog.get_logger(__name__)


@shared_task(bind=True, name="notifications.send_order_confirmation", max_retries=3)
def send_order_confirmation(self, order_id: str) -> bool:
    """Email the receipt for a freshly confirmed order.

    Enqueued exactly once per order, on the transition that moved
    ``payment_status`` to ``paid``.  Transport failures are retried
    with exponential backoff; a vanished order is not.
    """
    order = Order.objects.prefetch_related("items").filter(id=order_id).first()
    if order is None:
        logger.warning("notification.order_missing", order_id=order_id)
        return False

    breakdown = TaxBreakdown.from_order(order) if order.taxable_amount is not None else None
    try:
        return EmailNotifier().send_order_confirmation(order, breakdown)
    except (SMTPException, OSError) as exc:
        logger.error(
            "notification.confirmation_failed",
            order_id=order_id,
            retries=self.request.retries,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=60 * (2**self.request.retries))


@shared_task(bind=True, name="notifications.send_refund_processed", max_retries=3)
def send_refund_processed(self, order_id: str) -> bool:
    """Tell the guest their refund went through; sent once per completed refund."""
    order = Order.objects.filter(id=order_id).first()
    if order is None:
        logger.warning("notification.order_missing", order_id=order_id)
        return False

    try:
        return EmailNotifier().send_refund_processed(order)
    except (SMTPException, OSError) as exc:
        logger.error(
            "notification.refund_email_failed",
            order_id=order_id,
            retries=self.request.retries,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=60 * (2**self.request.retries))

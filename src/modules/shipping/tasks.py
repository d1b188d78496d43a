"""Asynchronous carrier housekeeping."""

import structlog
from celery import shared_task

from modules.orders.constants import CarrierStatus
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.transitions import CARRIER_CANCELLATION_FAILED, CARRIER_CANCELLED
from modules.shipping.carrier import CarrierClient
from modules.shipping.exceptions import CarrierAuthError, CarrierError

logger = structlog.get_logger(__name__)


@shared_task(bind=True, name="shipping.cancel_carrier_order", max_retries=3)
def cancel_carrier_order(self, order_id: str) -> dict:
    """Release the carrier booking of a cancelled order.

    The outcome is written to ``carrier_status``: ``CANCELLED`` (and the
    refund is queued) or ``CANCELLATION_FAILED`` once credentials are
    rejected or the last retry fails.  Operators retry from there.
    """
    repo = OrderDjangoRepository()
    order = repo.get_by_id(order_id)
    if order is None or not order.carrier_order_id:
        logger.warning("shipping.carrier_cancel_skipped", order_id=order_id)
        return {"order_id": order_id, "carrier_status": None}

    log = logger.bind(order_id=order_id, carrier_order_id=order.carrier_order_id)
    try:
        CarrierClient().cancel_orders([order.carrier_order_id])
    except CarrierAuthError:
        log.error("shipping.carrier_cancel_unauthenticated")
        return _record_failure(repo, order_id, log)
    except CarrierError as exc:
        if self.request.retries >= self.max_retries:
            log.error("shipping.carrier_cancel_exhausted", attempts=self.request.retries + 1)
            return _record_failure(repo, order_id, log)
        log.warning("shipping.carrier_cancel_failed", attempt=self.request.retries + 1)
        raise self.retry(exc=exc, countdown=60 * 2**self.request.retries)

    rows = repo.transition(
        order_id, CARRIER_CANCELLED, {"carrier_status": CarrierStatus.CANCELLED}
    )
    log.info("shipping.carrier_order_cancelled", rows=rows)
    if rows:
        from modules.payments.tasks import refund_cancelled_order

        refund_cancelled_order.delay(order_id)
    return {"order_id": order_id, "carrier_status": CarrierStatus.CANCELLED}


def _record_failure(repo: OrderDjangoRepository, order_id: str, log) -> dict:
    rows = repo.transition(
        order_id,
        CARRIER_CANCELLATION_FAILED,
        {"carrier_status": CarrierStatus.CANCELLATION_FAILED},
    )
    log.error("shipping.carrier_cancellation_failed_recorded", rows=rows)
    return {"order_id": order_id, "carrier_status": CarrierStatus.CANCELLATION_FAILED}

"""Asynchronous payment housekeeping."""

import structlog
from celery import shared_task

from modules.payments.refunds import RefundService

logger = structlog.get_logger(__name__)


@shared_task(name="payments.refund_cancelled_order")
def refund_cancelled_order(order_id: str) -> str:
    """Refund a cancelled paid order.

    Not retried automatically: a gateway error leaves ``REFUND_FAILED``
    for an operator, since a timed-out refund may still have gone through.
    """
    outcome = RefundService().refund_cancelled_order(order_id)
    logger.info("refund.task_finished", order_id=order_id, outcome=outcome.value)
    return outcome.value

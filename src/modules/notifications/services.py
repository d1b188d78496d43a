"""Outbound email boundary.

Every method returns ``True`` only when the mail backend accepted the
message.  Transport errors propagate: callers decide whether a failed
notification is fatal (pre-erasure notice: the entity is not marked as
notified) or advisory (erasure completed: logged and ignored).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from django.conf import settings
from django.core.mail import send_mail
from django.template.loader import render_to_string

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.payments.tax import TaxBreakdown

logger = structlog.get_logger(__name__)

ERASURE_REASONS = {
    "abandoned_checkout": "your checkout was not completed",
    "retention_expired": "the statutory retention period for your orders has ended",
}


class EmailNotifier:
    """Renders text templates and hands them to Django's mail backend."""

    def __init__(self, from_email: Optional[str] = None) -> None:
        self._from_email = from_email or settings.DEFAULT_FROM_EMAIL

    def _send(
        self, recipient: str, subject: str, template: str, context: Dict[str, Any]
    ) -> bool:
        body = render_to_string(f"notifications/{template}.txt", context)
        sent = send_mail(
            subject=subject,
            message=body,
            from_email=self._from_email,
            recipient_list=[recipient],
            fail_silently=False,
        )
        logger.info("notification.email_sent", template=template, accepted=bool(sent))
        return sent == 1

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------

    def send_order_confirmation(
        self, order: Order, breakdown: Optional[TaxBreakdown] = None
    ) -> bool:
        return self._send(
            order.guest_email,
            f"Order confirmed: {order.id}",
            "order_confirmation",
            {
                "order": order,
                "items": list(order.items.all()),
                "breakdown": breakdown,
                "store_name": settings.STORE_NAME,
            },
        )

    def send_cancellation_code(
        self, order: Order, code: str, expires_at: datetime
    ) -> bool:
        return self._send(
            order.guest_email,
            "Your order cancellation code",
            "cancellation_code",
            {
                "order_id": order.id,
                "code": code,
                "expires_at": expires_at,
                "store_name": settings.STORE_NAME,
            },
        )

    def send_refund_processed(self, order: Order) -> bool:
        return self._send(
            order.guest_email,
            f"Refund processed for order {order.id}",
            "refund_processed",
            {
                "order_id": order.id,
                "amount": order.refund_amount,
                "currency": order.currency,
                "refund_id": order.refund_id,
                "store_name": settings.STORE_NAME,
            },
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def send_pre_erasure_notice(
        self, email: str, *, reason: str, deletion_date: date, order_count: int
    ) -> bool:
        return self._send(
            email,
            "Your data is scheduled for deletion",
            "pre_erasure_notice",
            {
                "reason": ERASURE_REASONS.get(reason, reason),
                "deletion_date": deletion_date,
                "order_count": order_count,
                "store_name": settings.STORE_NAME,
                "support_email": settings.SUPPORT_EMAIL,
            },
        )

    def send_deletion_completed(self, email: str) -> bool:
        return self._send(
            email,
            "Your data has been deleted",
            "deletion_completed",
            {"store_name": settings.STORE_NAME},
        )

    def send_deletion_cancelled(self, email: str, cancelled_at: datetime) -> bool:
        return self._send(
            email,
            "Your deletion request was cancelled",
            "deletion_cancelled",
            {
                "cancelled_at": cancelled_at,
                "store_name": settings.STORE_NAME,
                "support_email": settings.SUPPORT_EMAIL,
            },
        )

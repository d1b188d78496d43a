"""User erasure requests.

A guest proves ownership with one order id plus its email.  Then:

- orders still in CONFIRMED / PICKED_UP block the request;
- without paid orders, every order of the guest is anonymized now and a
  ``completed`` request is recorded;
- with paid orders, tax law keeps them until ``retention_end_date``: a
  ``deferred_legal`` request is recorded (or the open one reused) and
  the Retention Automaton finishes it later.  Verification-code data
  is cleared immediately.  A later paid order pushes the end date out
  and voids any notice already sent for the old date.

Until the automaton completes it, the guest can withdraw a deferred
request with the same proof of ownership.

``retention_end_date`` is 31 March closing the Indian financial year of
the most recent paid order, plus ``RETENTION_TAX_YEARS`` years.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

import structlog
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from modules.core.audit import record_audit
from modules.core.models import AuditOperation
from modules.notifications.services import EmailNotifier
from modules.orders.constants import ACTIVE_FULFILMENT_STATES, PaymentStatus
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.repositories.interfaces import IOrderRepository
from modules.orders.transitions import CLEAR_OTP
from modules.retention.actions import anonymize_orders
from modules.retention.constants import ERASURE_SOURCE, DeletionStatus, RetentionAction
from modules.retention.exceptions import (
    ErasureBlocked,
    ErasureNotAuthorized,
    NoPendingErasure,
)
from modules.retention.models import DeletionRequest

logger = structlog.get_logger(__name__)


def financial_year_end(day: date) -> date:
    """31 March closing the Indian financial year (April to March) containing ``day``."""
    year = day.year + 1 if day.month >= 4 else day.year
    return date(year, 3, 31)


def financial_year_label(day: date) -> str:
    end = financial_year_end(day)
    return f"FY{end.year - 1}-{str(end.year)[-2:]}"


def retention_end_date(latest_paid: date, years: Optional[int] = None) -> date:
    years = settings.RETENTION_TAX_YEARS if years is None else years
    end = financial_year_end(latest_paid)
    return end.replace(year=end.year + years)


@dataclass(frozen=True)
class ErasureResult:
    status: str
    request_id: Optional[str]
    orders_affected: int
    retention_end_date: Optional[date] = None
    already_pending: bool = False


class ErasureService:
    def __init__(
        self,
        order_repository: Optional[IOrderRepository] = None,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        self._order_repo = order_repository or OrderDjangoRepository()
        self._notifier = notifier or EmailNotifier()

    @transaction.atomic
    def request_erasure(
        self, email: str, order_id: str, ip_address: Optional[str] = None
    ) -> ErasureResult:
        """Raises ``ErasureNotAuthorized`` or ``ErasureBlocked``."""
        email = self._prove_ownership(email, order_id)

        orders = Order.objects.filter(guest_email=email)
        if orders.filter(order_status__in=ACTIVE_FULFILMENT_STATES).exists():
            raise ErasureBlocked(
                "Orders in fulfilment must be delivered or cancelled before erasure."
            )

        paid = orders.filter(payment_status=PaymentStatus.PAID)
        if paid.exists():
            return self._defer(email, orders, paid, ip_address)
        return self._anonymize_now(email, orders, ip_address)

    @transaction.atomic
    def cancel_erasure(
        self,
        email: str,
        order_id: str,
        ip_address: Optional[str] = None,
        reason: str = "",
    ) -> ErasureResult:
        """Withdraw the guest's open ``deferred_legal`` request.

        Only possible until the automaton completes it; the status check
        and the write are one conditional update.

        Raises ``ErasureNotAuthorized`` or ``NoPendingErasure``.
        """
        email = self._prove_ownership(email, order_id)
        log = logger.bind(email=email)

        pending = DeletionRequest.objects.filter(
            guest_email=email, status=DeletionStatus.DEFERRED_LEGAL
        ).first()
        now = timezone.now()
        rows = 0
        if pending is not None:
            rows = DeletionRequest.objects.filter(
                id=pending.id, status=DeletionStatus.DEFERRED_LEGAL
            ).update(
                status=DeletionStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason or "Cancelled by guest",
                updated_at=now,
            )
        if not rows:
            raise NoPendingErasure("No pending deletion request found for this email.")

        record_audit(
            table_name=DeletionRequest._meta.db_table,
            operation=AuditOperation.UPDATE,
            row_count=rows,
            reason=f"Erasure request withdrawn by {email}",
            source=ERASURE_SOURCE,
            metadata={
                "deletion_request_id": str(pending.id),
                "ip_address": ip_address,
            },
        )
        transaction.on_commit(lambda: self._send_cancelled_notice(email, now))
        log.info("retention.erasure_cancelled", request_id=str(pending.id))
        return ErasureResult(
            status=DeletionStatus.CANCELLED,
            request_id=str(pending.id),
            orders_affected=0,
            retention_end_date=pending.retention_end_date,
        )

    def _send_cancelled_notice(self, email: str, cancelled_at) -> None:
        try:
            self._notifier.send_deletion_cancelled(email, cancelled_at)
        except Exception:
            logger.exception("retention.cancel_notice_failed", email=email)

    def _prove_ownership(self, email: str, order_id: str) -> str:
        email = (email or "").strip().lower()
        order = self._order_repo.get_by_id(order_id)
        if order is None or order.guest_email != email:
            raise ErasureNotAuthorized("Order not found.")
        return email

    def _defer(self, email, orders, paid, ip_address) -> ErasureResult:
        log = logger.bind(email=email)
        paid_dates = [
            timezone.localdate(paid_at or created_at)
            for paid_at, created_at in paid.values_list("paid_at", "created_at")
        ]
        end_date = retention_end_date(max(paid_dates))

        order_ids = list(orders.values_list("id", flat=True))
        self._order_repo.transition_many(
            order_ids,
            CLEAR_OTP,
            {"otp_hash": "", "otp_expires_at": None, "otp_attempts": 0, "otp_locked_until": None},
        )

        existing = (
            DeletionRequest.objects.select_for_update()
            .filter(guest_email=email, status=DeletionStatus.DEFERRED_LEGAL)
            .first()
        )
        if existing:
            if existing.retention_end_date is None or existing.retention_end_date < end_date:
                was_notified = existing.deferred_erasure_notified
                existing.retention_end_date = end_date
                existing.paid_orders_count = len(paid_dates)
                # Any notice sent so far announced the previous date.
                existing.deferred_erasure_notified = False
                existing.deferred_erasure_notified_at = None
                existing.save(
                    update_fields=[
                        "retention_end_date",
                        "paid_orders_count",
                        "deferred_erasure_notified",
                        "deferred_erasure_notified_at",
                        "updated_at",
                    ]
                )
                log.info(
                    "retention.erasure_extended",
                    request_id=str(existing.id),
                    until=end_date.isoformat(),
                    notice_reset=was_notified,
                )
            log.info("retention.erasure_already_pending", request_id=str(existing.id))
            return ErasureResult(
                status=DeletionStatus.DEFERRED_LEGAL,
                request_id=str(existing.id),
                orders_affected=0,
                retention_end_date=existing.retention_end_date,
                already_pending=True,
            )

        request = DeletionRequest.objects.create(
            guest_email=email,
            status=DeletionStatus.DEFERRED_LEGAL,
            retention_end_date=end_date,
            has_paid_orders=True,
            paid_orders_count=len(paid_dates),
            earliest_order_fy=financial_year_label(min(paid_dates)),
            ip_address=ip_address,
        )
        record_audit(
            table_name=DeletionRequest._meta.db_table,
            operation=AuditOperation.INSERT,
            row_count=1,
            reason=(
                f"Erasure deferred for {email}: {len(paid_dates)} paid order(s) "
                f"retained until {end_date.isoformat()}"
            ),
            source=ERASURE_SOURCE,
            metadata={"deletion_request_id": str(request.id)},
        )
        log.info("retention.erasure_deferred", request_id=str(request.id), until=end_date.isoformat())
        return ErasureResult(
            status=DeletionStatus.DEFERRED_LEGAL,
            request_id=str(request.id),
            orders_affected=0,
            retention_end_date=end_date,
        )

    def _anonymize_now(self, email, orders, ip_address) -> ErasureResult:
        order_ids = list(orders.values_list("id", flat=True))
        affected = anonymize_orders(order_ids, self._order_repo)
        request = DeletionRequest.objects.create(
            guest_email=email,
            status=DeletionStatus.COMPLETED,
            has_paid_orders=False,
            action_taken=RetentionAction.ANONYMIZE,
            orders_affected=affected,
            completed_at=timezone.now(),
            ip_address=ip_address,
        )
        record_audit(
            table_name=Order._meta.db_table,
            operation=AuditOperation.UPDATE,
            row_count=affected,
            reason=f"Anonymized {affected} unpaid order(s) on erasure request from {email}",
            source=ERASURE_SOURCE,
            metadata={"deletion_request_id": str(request.id)},
        )
        logger.info("retention.erasure_completed", request_id=str(request.id), orders=affected)
        return ErasureResult(
            status=DeletionStatus.COMPLETED,
            request_id=str(request.id),
            orders_affected=affected,
        )

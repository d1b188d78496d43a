"""Retention Automaton: notify, wait out the grace period, then act.

Both retention triggers share one state machine::

    not due --notify--> notified (grace period running) --act--> deleted / completed

A ``GracePeriodPolicy`` supplies the eligibility queries and the action;
``RetentionAutomaton`` runs either phase for one policy.

Every state change is a conditional write that re-checks eligibility,
so overlapping scheduler runs cannot notify twice or act twice.  The
notice claim commits before the email goes out, so no row stays locked
while the mail backend is slow; a failed send releases the claim with a
conditional write keyed on the claim timestamp, and the subject is
retried on the next run.

Failures are isolated per subject and counted in the summary; a run
never raises because one guest's email bounced.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from modules.core.audit import record_audit
from modules.core.models import AuditOperation, AuditQueryType
from modules.notifications.services import EmailNotifier
from modules.orders.constants import OrderStatus, PaymentStatus
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.repositories.interfaces import IOrderRepository
from modules.orders.transitions import MARK_CLEANUP_NOTICE, RELEASE_CLEANUP_NOTICE
from modules.retention.actions import delete_orders, erase_orders_for_email
from modules.retention.constants import (
    AUDIT_SOURCE,
    REASON_ABANDONED_CHECKOUT,
    REASON_RETENTION_EXPIRED,
    DeletionStatus,
    RetentionAction,
)
from modules.retention.models import DeletionRequest

logger = structlog.get_logger(__name__)


class NoticeNotDelivered(Exception):
    """The mail backend did not accept the pre-erasure notice."""


@dataclass(frozen=True)
class Subject:
    """One unit of work: a guest and the rows the phase applies to."""

    email: str
    ids: Tuple[Any, ...]
    order_count: int
    due_on: date
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome:
    units: int
    table_name: str
    operation: str
    row_count: int
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class GracePeriodPolicy(ABC):
    name: str
    reason: str
    acted_event: str

    def __init__(self, grace_period: Optional[timedelta] = None) -> None:
        self.grace_period = grace_period or timedelta(
            hours=settings.RETENTION_GRACE_PERIOD_HOURS
        )

    @abstractmethod
    def notice_candidates(self, now: datetime) -> Iterable[Subject]: ...

    @abstractmethod
    def claim_notice(self, subject: Subject, now: datetime) -> int:
        """Mark the subject notified; returns rows claimed (0 if already taken)."""

    @abstractmethod
    def release_notice(self, subject: Subject, claimed_at: datetime) -> int:
        """Undo a claim made at ``claimed_at`` whose notice was not delivered."""

    @abstractmethod
    def notice_table(self) -> str: ...

    @abstractmethod
    def action_candidates(self, now: datetime) -> Iterable[Subject]: ...

    @abstractmethod
    def act(self, subject: Subject, now: datetime) -> Optional[Outcome]:
        """Apply the action; ``None`` when the subject is no longer eligible."""

    def after_act(self, subject: Subject, outcome: Outcome) -> None:
        return None


# ---------------------------------------------------------------------------
# Trigger A: abandoned checkouts
# ---------------------------------------------------------------------------


class AbandonedCheckoutPolicy(GracePeriodPolicy):
    """Unpaid CHECKED_OUT orders: notice at 5 days, delete at 7 days + grace."""

    name = "abandoned_checkout"
    reason = REASON_ABANDONED_CHECKOUT
    acted_event = "retention.abandoned_deleted"

    def __init__(
        self,
        notify_after: Optional[timedelta] = None,
        delete_after: Optional[timedelta] = None,
        grace_period: Optional[timedelta] = None,
        order_repository: Optional[IOrderRepository] = None,
    ) -> None:
        super().__init__(grace_period)
        self.notify_after = notify_after or timedelta(
            days=settings.RETENTION_ABANDONED_NOTIFY_DAYS
        )
        self.delete_after = delete_after or timedelta(
            days=settings.RETENTION_ABANDONED_DELETE_DAYS
        )
        self._order_repo = order_repository or OrderDjangoRepository()

    @staticmethod
    def _abandoned() -> Q:
        return Q(order_status=OrderStatus.CHECKED_OUT) & ~Q(payment_status=PaymentStatus.PAID)

    def _deletable(self, now: datetime) -> Q:
        return (
            self._abandoned()
            & Q(cleanup_notice_sent=True)
            & Q(cleanup_notice_sent_at__lte=now - self.grace_period)
            & Q(created_at__lte=now - self.delete_after)
        )

    def _group_by_email(self, condition: Q, now: datetime) -> List[Subject]:
        rows = (
            Order.objects.filter(condition)
            .order_by("guest_email", "created_at")
            .values_list("guest_email", "id", "created_at")
        )
        subjects = []
        for email, group in itertools.groupby(rows, key=lambda row: row[0]):
            group = list(group)
            newest = group[-1][2]
            due = max(now + self.grace_period, newest + self.delete_after)
            subjects.append(
                Subject(
                    email=email,
                    ids=tuple(row[1] for row in group),
                    order_count=len(group),
                    due_on=timezone.localdate(due),
                )
            )
        return subjects

    def notice_candidates(self, now: datetime) -> List[Subject]:
        condition = (
            self._abandoned()
            & Q(cleanup_notice_sent=False)
            & Q(created_at__lte=now - self.notify_after)
        )
        return self._group_by_email(condition, now)

    def claim_notice(self, subject: Subject, now: datetime) -> int:
        return self._order_repo.transition_many(
            subject.ids,
            MARK_CLEANUP_NOTICE,
            {"cleanup_notice_sent": True, "cleanup_notice_sent_at": now},
        )

    def release_notice(self, subject: Subject, claimed_at: datetime) -> int:
        return self._order_repo.transition_many(
            subject.ids,
            RELEASE_CLEANUP_NOTICE,
            {"cleanup_notice_sent": False, "cleanup_notice_sent_at": None},
            cleanup_notice_sent_at=[claimed_at],
        )

    def notice_table(self) -> str:
        return Order._meta.db_table

    def action_candidates(self, now: datetime) -> List[Subject]:
        return self._group_by_email(self._deletable(now), now)

    def act(self, subject: Subject, now: datetime) -> Optional[Outcome]:
        deleted = delete_orders(self._deletable(now) & Q(id__in=subject.ids))
        if not deleted:
            return None
        return Outcome(
            units=deleted,
            table_name=Order._meta.db_table,
            operation=AuditOperation.DELETE,
            row_count=deleted,
            reason=(
                f"Auto-deleted {deleted} abandoned checkout(s) after "
                f"{self.delete_after.days}-day cleanup for {subject.email}"
            ),
        )


# ---------------------------------------------------------------------------
# Trigger B: deferred legal retention
# ---------------------------------------------------------------------------


class DeferredLegalPolicy(GracePeriodPolicy):
    """Deferred erasure requests whose statutory retention is ending."""

    name = "deferred_legal"
    reason = REASON_RETENTION_EXPIRED
    acted_event = "retention.deferred_completed"

    def __init__(
        self,
        notify_before: Optional[timedelta] = None,
        grace_period: Optional[timedelta] = None,
        action: Optional[str] = None,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        super().__init__(grace_period)
        self.notify_before = notify_before or timedelta(
            days=settings.RETENTION_DEFERRED_NOTIFY_DAYS
        )
        self.action = action or settings.RETENTION_DEFERRED_ACTION
        self._notifier = notifier or EmailNotifier()

    def notice_candidates(self, now: datetime) -> List[Subject]:
        horizon = timezone.localdate(now) + self.notify_before
        requests = DeletionRequest.objects.filter(
            status=DeletionStatus.DEFERRED_LEGAL,
            deferred_erasure_notified=False,
            retention_end_date__lte=horizon,
        ).order_by("retention_end_date")

        earliest_action = timezone.localdate(now + self.grace_period)
        return [
            Subject(
                email=request.guest_email,
                ids=(request.id,),
                order_count=Order.objects.filter(guest_email=request.guest_email).count(),
                due_on=max(request.retention_end_date, earliest_action),
                detail={"retention_end_date": request.retention_end_date.isoformat()},
            )
            for request in requests
        ]

    def claim_notice(self, subject: Subject, now: datetime) -> int:
        return DeletionRequest.objects.filter(
            id__in=subject.ids,
            status=DeletionStatus.DEFERRED_LEGAL,
            deferred_erasure_notified=False,
        ).update(
            deferred_erasure_notified=True,
            deferred_erasure_notified_at=now,
            updated_at=now,
        )

    def release_notice(self, subject: Subject, claimed_at: datetime) -> int:
        return DeletionRequest.objects.filter(
            id__in=subject.ids,
            status=DeletionStatus.DEFERRED_LEGAL,
            deferred_erasure_notified=True,
            deferred_erasure_notified_at=claimed_at,
        ).update(
            deferred_erasure_notified=False,
            deferred_erasure_notified_at=None,
            updated_at=timezone.now(),
        )

    def notice_table(self) -> str:
        return DeletionRequest._meta.db_table

    def action_candidates(self, now: datetime) -> List[Subject]:
        requests = DeletionRequest.objects.filter(
            status=DeletionStatus.DEFERRED_LEGAL,
            deferred_erasure_notified=True,
            deferred_erasure_notified_at__lte=now - self.grace_period,
            retention_end_date__lte=timezone.localdate(now),
        ).order_by("retention_end_date")
        return [
            Subject(
                email=request.guest_email,
                ids=(request.id,),
                order_count=0,
                due_on=request.retention_end_date,
                detail={"retention_end_date": request.retention_end_date.isoformat()},
            )
            for request in requests
        ]

    def act(self, subject: Subject, now: datetime) -> Optional[Outcome]:
        claimed = DeletionRequest.objects.filter(
            id__in=subject.ids,
            status=DeletionStatus.DEFERRED_LEGAL,
            deferred_erasure_notified=True,
            deferred_erasure_notified_at__lte=now - self.grace_period,
            retention_end_date__lte=timezone.localdate(now),
        ).update(status=DeletionStatus.COMPLETED, completed_at=now, updated_at=now)
        if not claimed:
            return None

        affected = erase_orders_for_email(subject.email, self.action)
        DeletionRequest.objects.filter(id__in=subject.ids).update(
            orders_affected=affected, action_taken=self.action
        )

        verb = "Auto-deleted" if self.action == RetentionAction.DELETE else "Anonymized"
        return Outcome(
            units=claimed,
            table_name=Order._meta.db_table,
            operation=(
                AuditOperation.DELETE
                if self.action == RetentionAction.DELETE
                else AuditOperation.UPDATE
            ),
            row_count=affected,
            reason=(
                f"{verb} {affected} order(s) after tax retention expiry for "
                f"{subject.email} (retention_end_date: {subject.detail['retention_end_date']})"
            ),
            metadata={"deletion_request_ids": [str(i) for i in subject.ids]},
        )

    def after_act(self, subject: Subject, outcome: Outcome) -> None:
        self._notifier.send_deletion_completed(subject.email)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class RetentionAutomaton:
    def __init__(
        self, policy: GracePeriodPolicy, notifier: Optional[EmailNotifier] = None
    ) -> None:
        self.policy = policy
        self._notifier = notifier or EmailNotifier()

    def notify(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or timezone.now()
        log = logger.bind(policy=self.policy.name)
        summary = {"notified": 0, "errors": 0}

        for subject in self.policy.notice_candidates(now):
            try:
                claimed = self._notify_subject(subject, now, log)
            except Exception:
                log.exception("retention.notice_failed", email=subject.email)
                summary["errors"] += 1
                continue

            if claimed:
                summary["notified"] += claimed
                log.info("retention.notice_sent", email=subject.email, rows=claimed)

        log.info("retention.notify_finished", **summary)
        return summary

    def _notify_subject(self, subject: Subject, now: datetime, log: Any) -> int:
        claimed = self.policy.claim_notice(subject, now)
        if not claimed:
            return 0

        try:
            sent = self._notifier.send_pre_erasure_notice(
                subject.email,
                reason=self.policy.reason,
                deletion_date=subject.due_on,
                order_count=subject.order_count,
            )
            if not sent:
                raise NoticeNotDelivered(subject.email)
        except Exception:
            released = self.policy.release_notice(subject, now)
            log.warning("retention.notice_released", email=subject.email, rows=released)
            raise

        record_audit(
            table_name=self.policy.notice_table(),
            operation=AuditOperation.UPDATE,
            query_type=AuditQueryType.BULK if claimed > 1 else AuditQueryType.SINGLE,
            row_count=claimed,
            reason=(
                f"Sent {int(self.policy.grace_period.total_seconds() // 3600)}hr "
                f"{self.policy.reason.replace('_', ' ')} notice for "
                f"{subject.order_count} order(s) to {subject.email}"
            ),
            source=AUDIT_SOURCE,
            metadata={"deletion_date": subject.due_on.isoformat(), **subject.detail},
        )
        return claimed

    def act(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or timezone.now()
        log = logger.bind(policy=self.policy.name)
        summary = {"deleted": 0, "errors": 0}

        for subject in self.policy.action_candidates(now):
            try:
                with transaction.atomic():
                    outcome = self.policy.act(subject, now)
                    if outcome is None:
                        continue
                    record_audit(
                        table_name=outcome.table_name,
                        operation=outcome.operation,
                        row_count=outcome.row_count,
                        reason=outcome.reason,
                        source=AUDIT_SOURCE,
                        metadata=outcome.metadata,
                    )
            except Exception:
                log.exception("retention.action_failed", email=subject.email)
                summary["errors"] += 1
                continue

            summary["deleted"] += outcome.units
            log.info(
                self.policy.acted_event,
                email=subject.email,
                rows=outcome.row_count,
            )

            try:
                self.policy.after_act(subject, outcome)
            except Exception:
                # Erasure already committed; the completion email is advisory.
                log.exception("retention.completion_email_failed", email=subject.email)

        log.info("retention.act_finished", **summary)
        return summary


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


def notify_abandoned_checkouts(now: Optional[datetime] = None) -> Dict[str, int]:
    return RetentionAutomaton(AbandonedCheckoutPolicy()).notify(now)


def delete_abandoned_checkouts(now: Optional[datetime] = None) -> Dict[str, int]:
    return RetentionAutomaton(AbandonedCheckoutPolicy()).act(now)


def notify_deferred_expiry(now: Optional[datetime] = None) -> Dict[str, int]:
    return RetentionAutomaton(DeferredLegalPolicy()).notify(now)


def execute_deferred_deletions(now: Optional[datetime] = None) -> Dict[str, int]:
    return RetentionAutomaton(DeferredLegalPolicy()).act(now)

"""Deletion Request ledger.

One row per erasure request.  ``deferred_legal`` rows wait for
``retention_end_date``; the automaton sends a notice once
(``deferred_erasure_notified``) and completes the row after the grace
period.  Requests that could be honoured immediately are written
directly as ``completed``.  A guest may withdraw a ``deferred_legal``
request until the automaton completes it (``cancelled``).
"""

from __future__ import annotations

from django.db import models

from modules.core.models import BaseModel
from modules.retention.constants import DeletionStatus, RetentionAction


class DeletionRequest(BaseModel):
    guest_email: models.EmailField = models.EmailField(db_index=True)
    status: models.CharField = models.CharField(
        max_length=20,
        choices=DeletionStatus.choices,
        default=DeletionStatus.DEFERRED_LEGAL,
        db_index=True,
    )
    retention_end_date: models.DateField = models.DateField(null=True, blank=True)
    deferred_erasure_notified: models.BooleanField = models.BooleanField(default=False)
    deferred_erasure_notified_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    has_paid_orders: models.BooleanField = models.BooleanField(default=False)
    paid_orders_count: models.PositiveIntegerField = models.PositiveIntegerField(default=0)
    earliest_order_fy: models.CharField = models.CharField(max_length=12, blank=True)
    action_taken: models.CharField = models.CharField(
        max_length=10, choices=RetentionAction.choices, blank=True
    )
    orders_affected: models.PositiveIntegerField = models.PositiveIntegerField(default=0)
    completed_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    cancelled_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    cancellation_reason: models.CharField = models.CharField(max_length=255, blank=True)
    ip_address: models.GenericIPAddressField = models.GenericIPAddressField(
        null=True, blank=True
    )

    class Meta:
        db_table = "deletion_requests"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["status", "retention_end_date"], name="deletion_due_idx"
            ),
        ]

    def __str__(self) -> str:
        return f"DeletionRequest {self.id} [{self.status}] until {self.retention_end_date}"

"""Base abstract model and the compliance audit trail.

Provides:
- ``BaseModel``: UUIDv7 primary key + created_at / updated_at timestamps.
- ``AuditLogEntry``: append-only record of every retention-driven deletion,
  anonymization and pre-erasure notice.

Audit rows are a legal record, not diagnostics: they are written in the same
transaction as the change they describe and can never be edited or removed
through the ORM.
"""

from __future__ import annotations

import uuid6
from django.db import models

from modules.core.exceptions import ImmutableAuditRecord

# ---------------------------------------------------------------------------
# BaseModel
# ---------------------------------------------------------------------------


class BaseModel(models.Model):
    """Abstract base with UUIDv7 PK and timestamp bookkeeping."""

    id = models.UUIDField(
        primary_key=True,
        default=uuid6.uuid7,
        editable=False,
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True

    def save(self, *args, **kwargs) -> None:
        """Ensure ``updated_at`` is refreshed even when ``update_fields`` is passed."""
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "updated_at" not in update_fields:
            kwargs["update_fields"] = list(update_fields) + ["updated_at"]
        super().save(*args, **kwargs)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditOperation(models.TextChoices):
    SELECT = "SELECT", "Select"
    INSERT = "INSERT", "Insert"
    UPDATE = "UPDATE", "Update"
    DELETE = "DELETE", "Delete"


class AuditQueryType(models.TextChoices):
    SINGLE = "single", "Single"
    BULK = "bulk", "Bulk"


class AuditLogEntry(BaseModel):
    """Append-only audit record.

    ``source`` names the job or endpoint that produced the change
    (e.g. ``auto-cleanup``), ``actor`` is ``system`` for scheduled jobs
    or the admin username for manual actions.
    """

    table_name = models.CharField(max_length=64)
    operation = models.CharField(max_length=10, choices=AuditOperation.choices)
    query_type = models.CharField(
        max_length=10,
        choices=AuditQueryType.choices,
        default=AuditQueryType.SINGLE,
    )
    row_count = models.PositiveIntegerField(default=0)
    reason = models.TextField()
    source = models.CharField(max_length=100)
    actor = models.CharField(max_length=150, default="system")
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "audit_log"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["table_name", "operation"],
                name="audit_table_operation_idx",
            ),
        ]

    def save(self, *args, **kwargs) -> None:
        if not self._state.adding:
            raise ImmutableAuditRecord(f"Audit entry {self.id} cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, using=None, keep_parents=False):
        raise ImmutableAuditRecord(f"Audit entry {self.id} cannot be deleted.")

    def __str__(self) -> str:
        return f"{self.operation} {self.table_name} x{self.row_count} ({self.source})"

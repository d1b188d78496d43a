"""Unit tests for BaseModel and the append-only audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime
from datetime import timezone as dt_timezone

import pytest
from freezegun import freeze_time

from modules.core.audit import record_audit
from modules.core.exceptions import ImmutableAuditRecord
from modules.core.models import AuditLogEntry, AuditOperation, AuditQueryType

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# BaseModel (exercised through AuditLogEntry)
# ---------------------------------------------------------------------------


class TestBaseModel:
    def test_id_is_uuid_version_7(self):
        entry = record_audit(
            table_name="orders",
            operation=AuditOperation.DELETE,
            row_count=1,
            reason="test",
            source="unit",
        )
        assert isinstance(entry.id, uuid.UUID)
        assert entry.id.version == 7

    def test_created_at_uses_current_time(self):
        with freeze_time("2025-04-01 10:00:00"):
            entry = record_audit(
                table_name="orders",
                operation=AuditOperation.DELETE,
                row_count=1,
                reason="test",
                source="unit",
            )
        assert entry.created_at == datetime(2025, 4, 1, 10, 0, tzinfo=dt_timezone.utc)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TestAuditTrail:
    def test_record_audit_persists_entry(self):
        entry = record_audit(
            table_name="orders",
            operation=AuditOperation.DELETE,
            row_count=3,
            reason="Auto-deleted 3 abandoned checkout(s)",
            source="retention-automaton",
            metadata={"email": "guest@example.com"},
        )

        stored = AuditLogEntry.objects.get(id=entry.id)
        assert stored.row_count == 3
        assert stored.query_type == AuditQueryType.BULK
        assert stored.actor == "system"
        assert stored.metadata == {"email": "guest@example.com"}

    def test_unknown_operation_rejected(self):
        with pytest.raises(ValueError):
            record_audit(
                table_name="orders", operation="TRUNCATE", row_count=0, reason="x", source="unit"
            )

    def test_entries_cannot_be_modified(self):
        entry = record_audit(
            table_name="orders", operation=AuditOperation.UPDATE, row_count=1, reason="x", source="unit"
        )
        entry.reason = "rewritten"
        with pytest.raises(ImmutableAuditRecord):
            entry.save()

    def test_entries_cannot_be_deleted(self):
        entry = record_audit(
            table_name="orders", operation=AuditOperation.UPDATE, row_count=1, reason="x", source="unit"
        )
        with pytest.raises(ImmutableAuditRecord):
            entry.delete()
        assert AuditLogEntry.objects.filter(id=entry.id).exists()

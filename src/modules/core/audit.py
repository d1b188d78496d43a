"""Audit trail writer.

Callers invoke ``record_audit`` inside the same ``transaction.atomic()``
block as the change being recorded, so a rolled-back deletion never
leaves an audit row behind and a committed one always does.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from modules.core.models import AuditLogEntry, AuditOperation, AuditQueryType

logger = structlog.get_logger(__name__)


def record_audit(
    *,
    table_name: str,
    operation: str,
    row_count: int,
    reason: str,
    source: str,
    actor: str = "system",
    query_type: str = AuditQueryType.BULK,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLogEntry:
    """Append a single audit entry."""
    if operation not in AuditOperation.values:
        raise ValueError(f"Unknown audit operation {operation!r}.")

    entry = AuditLogEntry.objects.create(
        table_name=table_name,
        operation=operation,
        query_type=query_type,
        row_count=row_count,
        reason=reason,
        source=source,
        actor=actor,
        metadata=metadata or {},
    )
    logger.info(
        "audit.recorded",
        audit_id=str(entry.id),
        table=table_name,
        operation=operation,
        row_count=row_count,
        source=source,
    )
    return entry

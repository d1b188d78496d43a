"""Cross-cutting exceptions shared by every domain module."""

from __future__ import annotations


class ImmutableAuditRecord(Exception):
    """An audit log entry was about to be updated or deleted."""

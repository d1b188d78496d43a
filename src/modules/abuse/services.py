"""Abuse Escalation Engine.

Maps a source IP to escalating block windows:

    offense 1 -> 15 min, 2 -> 1 h, 3 -> 6 h, 4 -> 24 h, 5+ -> 7 days

Only offenses inside the cooling window (30 days by default) count.
Signature-verification failures and critical incidents block
permanently on the first occurrence.  The allowlist is consulted
before anything else, so an allowlisted IP is never reported as
blocked even if a stale block row exists for it.

Block status is cached (Redis in production) and invalidated on every
write for this IP.
"""

from __future__ import annotations

import ipaddress
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

import structlog
from django.conf import settings
from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.http import HttpRequest
from django.utils import timezone

from modules.abuse.constants import (
    ALLOWLIST_CACHE_KEY,
    BLOCK_CACHE_PREFIX,
    BLOCK_DURATIONS_MINUTES,
    PERMANENT_INCIDENTS,
    TEMPORARY_INCIDENTS,
    BlockType,
    IncidentType,
    Severity,
)
from modules.abuse.exceptions import (
    BlockNotFound,
    InvalidAllowlistEntry,
    InvalidIpAddress,
)
from modules.abuse.models import AllowlistEntry, BlockRecord, OffenseRecord
from modules.core.network import get_client_ip, is_valid_ip

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Pure policy
# ---------------------------------------------------------------------------


def block_duration(offense_count: int) -> timedelta:
    """Block window for the N-th offense inside the cooling window."""
    if offense_count < 1:
        raise ValueError("offense_count must be at least 1.")
    index = min(offense_count, len(BLOCK_DURATIONS_MINUTES)) - 1
    return timedelta(minutes=BLOCK_DURATIONS_MINUTES[index])


def should_block(incident_type: str, severity: str = Severity.MEDIUM) -> bool:
    return (
        incident_type in TEMPORARY_INCIDENTS
        or incident_type in PERMANENT_INCIDENTS
        or severity == Severity.CRITICAL
    )


def block_type_for(incident_type: str, severity: str = Severity.MEDIUM) -> str:
    if incident_type in PERMANENT_INCIDENTS or severity == Severity.CRITICAL:
        return BlockType.PERMANENT
    return BlockType.TEMPORARY


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    block_type: Optional[str] = None
    blocked_until: Optional[datetime] = None
    offense_count: int = 0

    @classmethod
    def clear(cls) -> BlockStatus:
        return cls(blocked=False)

    @classmethod
    def from_record(cls, record: BlockRecord) -> BlockStatus:
        return cls(
            blocked=True,
            block_type=record.block_type,
            blocked_until=record.blocked_until,
            offense_count=record.offense_count,
        )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AbuseEscalationService:
    """Records incidents and answers "is this IP blocked?"."""

    def __init__(
        self,
        cooling_period: Optional[timedelta] = None,
        cache_seconds: Optional[int] = None,
    ) -> None:
        self._cooling_period = cooling_period or timedelta(
            days=settings.ABUSE_COOLING_PERIOD_DAYS
        )
        self._cache_seconds = (
            cache_seconds
            if cache_seconds is not None
            else settings.ABUSE_BLOCK_CACHE_SECONDS
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_allowlisted(self, ip: str) -> bool:
        if not is_valid_ip(ip):
            return False
        return any(entry.matches(ip) for entry in self._allowlist())

    def check(self, ip: str) -> BlockStatus:
        """Return the effective block status; allowlist wins."""
        if not is_valid_ip(ip) or self.is_allowlisted(ip):
            return BlockStatus.clear()

        cache_key = f"{BLOCK_CACHE_PREFIX}{ip}"
        cached = cache.get(cache_key)
        now = timezone.now()
        if cached is not None:
            status = BlockStatus(**cached)
            if not status.blocked or status.blocked_until is None or status.blocked_until > now:
                return status

        record = BlockRecord.objects.filter(ip_address=ip, is_active=True).first()
        status = (
            BlockStatus.from_record(record)
            if record and record.is_in_effect(now)
            else BlockStatus.clear()
        )
        cache.set(cache_key, asdict(status), self._cache_seconds)
        return status

    def offense_count(self, ip: str, now: Optional[datetime] = None) -> int:
        now = now or timezone.now()
        return OffenseRecord.objects.filter(
            ip_address=ip, created_at__gt=now - self._cooling_period
        ).count()

    def active_blocks(self) -> List[BlockRecord]:
        return list(
            BlockRecord.objects.filter(is_active=True).order_by("-last_offense_at")
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def record_incident(
        self,
        ip: str,
        incident_type: str,
        severity: str = Severity.MEDIUM,
        details: Optional[dict[str, Any]] = None,
    ) -> BlockStatus:
        """Record an offense and escalate the block for ``ip`` if warranted."""
        log = logger.bind(ip=ip, incident_type=incident_type, severity=severity)
        if not is_valid_ip(ip):
            log.warning("abuse.incident_without_ip")
            return BlockStatus.clear()
        if self.is_allowlisted(ip):
            log.info("abuse.incident_allowlisted")
            return BlockStatus.clear()

        now = timezone.now()
        with transaction.atomic():
            OffenseRecord.objects.create(
                ip_address=ip,
                incident_type=incident_type,
                severity=severity,
                details=details or {},
            )
            if not should_block(incident_type, severity):
                log.info("abuse.incident_recorded")
                return self.check(ip)

            count = self.offense_count(ip, now)
            block_type = block_type_for(incident_type, severity)
            blocked_until = (
                None if block_type == BlockType.PERMANENT else now + block_duration(count)
            )
            record = self._upsert_block(
                ip,
                offense_count=count,
                block_type=block_type,
                blocked_until=blocked_until,
                incident_type=incident_type,
                blocked_by="system",
                now=now,
            )

        self._invalidate(ip)
        log.warning(
            "abuse.ip_blocked",
            offense_count=count,
            block_type=record.block_type,
            blocked_until=record.blocked_until.isoformat() if record.blocked_until else None,
        )
        return BlockStatus.from_record(record)

    def manual_block(
        self,
        ip: str,
        actor: str,
        duration_minutes: Optional[int] = None,
        notes: str = "",
    ) -> BlockRecord:
        """Admin block; permanent when ``duration_minutes`` is omitted."""
        if not is_valid_ip(ip):
            raise InvalidIpAddress(f"{ip!r} is not a valid IP address.")

        now = timezone.now()
        with transaction.atomic():
            record = self._upsert_block(
                ip,
                offense_count=self.offense_count(ip, now),
                block_type=(
                    BlockType.TEMPORARY if duration_minutes else BlockType.PERMANENT
                ),
                blocked_until=(
                    now + timedelta(minutes=duration_minutes) if duration_minutes else None
                ),
                incident_type=IncidentType.ADMIN_MANUAL,
                blocked_by=actor,
                now=now,
                notes=notes,
                replace=True,
            )
        self._invalidate(ip)
        logger.warning("abuse.ip_blocked_manually", ip=ip, actor=actor)
        return record

    def unblock(self, ip: str, actor: str) -> BlockRecord:
        rows = BlockRecord.objects.filter(ip_address=ip, is_active=True).update(
            is_active=False,
            unblocked_at=timezone.now(),
            unblocked_by=actor,
            updated_at=timezone.now(),
        )
        if not rows:
            raise BlockNotFound(f"No active block for {ip}.")
        self._invalidate(ip)
        logger.info("abuse.ip_unblocked", ip=ip, actor=actor)
        return BlockRecord.objects.get(ip_address=ip)

    def expire_blocks(self, now: Optional[datetime] = None) -> int:
        """Deactivate temporary blocks whose window has passed."""
        now = now or timezone.now()
        expired = BlockRecord.objects.filter(
            is_active=True,
            block_type=BlockType.TEMPORARY,
            blocked_until__lte=now,
        )
        ips = list(expired.values_list("ip_address", flat=True))
        rows = expired.update(is_active=False, updated_at=now)
        for ip in ips:
            self._invalidate(ip)
        logger.info("abuse.blocks_expired", count=rows)
        return rows

    def add_allowlist_entry(
        self,
        *,
        label: str,
        category: str,
        actor: str,
        ip_address: Optional[str] = None,
        cidr_range: Optional[str] = None,
    ) -> AllowlistEntry:
        if bool(ip_address) == bool(cidr_range):
            raise InvalidAllowlistEntry("Provide exactly one of ip_address or cidr_range.")
        if ip_address and not is_valid_ip(ip_address):
            raise InvalidAllowlistEntry(f"{ip_address!r} is not a valid IP address.")
        if cidr_range:
            try:
                cidr_range = str(ipaddress.ip_network(cidr_range, strict=False))
            except ValueError as exc:
                raise InvalidAllowlistEntry(str(exc)) from exc

        entry = AllowlistEntry.objects.create(
            ip_address=ip_address or None,
            cidr_range=cidr_range or "",
            label=label,
            category=category,
            added_by=actor,
        )
        cache.delete(ALLOWLIST_CACHE_KEY)
        logger.info("abuse.allowlist_added", entry_id=str(entry.id), actor=actor)
        return entry

    def remove_allowlist_entry(self, entry_id: str, actor: str) -> bool:
        try:
            rows = AllowlistEntry.objects.filter(id=entry_id, is_active=True).update(
                is_active=False, updated_at=timezone.now()
            )
        except (ValueError, ValidationError):
            return False
        cache.delete(ALLOWLIST_CACHE_KEY)
        logger.info("abuse.allowlist_removed", entry_id=entry_id, actor=actor, rows=rows)
        return bool(rows)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _allowlist(self) -> List[AllowlistEntry]:
        entries = cache.get(ALLOWLIST_CACHE_KEY)
        if entries is None:
            entries = list(AllowlistEntry.objects.filter(is_active=True))
            cache.set(ALLOWLIST_CACHE_KEY, entries, self._cache_seconds)
        return entries

    def _upsert_block(
        self,
        ip: str,
        *,
        offense_count: int,
        block_type: str,
        blocked_until: Optional[datetime],
        incident_type: str,
        blocked_by: str,
        now: datetime,
        notes: str = "",
        replace: bool = False,
    ) -> BlockRecord:
        record = BlockRecord.objects.select_for_update().filter(ip_address=ip).first()
        if record is None:
            return BlockRecord.objects.create(
                ip_address=ip,
                offense_count=offense_count,
                block_type=block_type,
                blocked_until=blocked_until,
                incident_type=incident_type,
                blocked_by=blocked_by,
                first_offense_at=now,
                last_offense_at=now,
                notes=notes,
            )

        was_effective = record.is_in_effect(now)
        if not replace and was_effective:
            # Extending an active block never shortens it or downgrades permanence.
            if record.is_permanent or block_type == BlockType.PERMANENT:
                block_type, blocked_until = BlockType.PERMANENT, None
            elif record.blocked_until and blocked_until:
                blocked_until = max(record.blocked_until, blocked_until)
        if not was_effective:
            record.first_offense_at = now

        record.offense_count = offense_count
        record.block_type = block_type
        record.blocked_until = blocked_until
        record.incident_type = incident_type
        record.blocked_by = blocked_by
        record.is_active = True
        record.last_offense_at = now
        record.unblocked_at = None
        record.unblocked_by = ""
        if notes:
            record.notes = notes
        record.save()
        return record

    @staticmethod
    def _invalidate(ip: str) -> None:
        cache.delete(f"{BLOCK_CACHE_PREFIX}{ip}")


def report_incident(
    request: HttpRequest,
    incident_type: str,
    severity: str = Severity.MEDIUM,
    **details: Any,
) -> BlockStatus:
    """Record an incident for the request's client IP.

    A failure to persist the incident is logged at error level and does
    not change the response already decided by the caller.
    """
    ip = get_client_ip(request.META)
    try:
        return AbuseEscalationService().record_incident(
            ip, incident_type, severity=severity, details=details
        )
    except DatabaseError:
        logger.exception("abuse.incident_not_recorded", ip=ip, incident_type=incident_type)
        return BlockStatus.clear()

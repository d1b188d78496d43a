"""Block records, offense history and the allowlist.

- ``BlockRecord``: one row per source IP.  ``blocked_until`` is NULL for
  permanent blocks; temporary blocks lapse once it passes (the expiry
  sweep flips ``is_active`` afterwards for bookkeeping).
- ``OffenseRecord``: every reported incident, used to count offenses
  inside the cooling window.
- ``AllowlistEntry``: exact IP or CIDR range that is never blocked.
"""

from __future__ import annotations

import ipaddress

from django.db import models
from django.utils import timezone

from modules.abuse.constants import (
    AllowlistCategory,
    BlockType,
    IncidentType,
    Severity,
)
from modules.core.models import BaseModel


class BlockRecord(BaseModel):
    ip_address = models.GenericIPAddressField(unique=True)
    offense_count = models.PositiveIntegerField(default=0)
    block_type = models.CharField(
        max_length=10,
        choices=BlockType.choices,
        default=BlockType.TEMPORARY,
    )
    blocked_until = models.DateTimeField(null=True, blank=True)
    incident_type = models.CharField(max_length=40, choices=IncidentType.choices)
    is_active = models.BooleanField(default=True)
    first_offense_at = models.DateTimeField(default=timezone.now)
    last_offense_at = models.DateTimeField(default=timezone.now)
    blocked_by = models.CharField(max_length=150, default="system")
    unblocked_at = models.DateTimeField(null=True, blank=True)
    unblocked_by = models.CharField(max_length=150, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        db_table = "block_records"
        indexes = [
            models.Index(fields=["is_active", "blocked_until"], name="block_active_idx"),
        ]

    @property
    def is_permanent(self) -> bool:
        return self.block_type == BlockType.PERMANENT

    def is_in_effect(self, now=None) -> bool:
        if not self.is_active:
            return False
        if self.is_permanent:
            return True
        now = now or timezone.now()
        return self.blocked_until is not None and self.blocked_until > now

    def __str__(self) -> str:
        until = "permanent" if self.is_permanent else self.blocked_until
        return f"{self.ip_address} [{self.block_type}] until {until}"


class OffenseRecord(BaseModel):
    ip_address = models.GenericIPAddressField(db_index=True)
    incident_type = models.CharField(max_length=40, choices=IncidentType.choices)
    severity = models.CharField(
        max_length=10, choices=Severity.choices, default=Severity.MEDIUM
    )
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "ip_offense_history"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["ip_address", "created_at"], name="offense_ip_time_idx"),
        ]


class AllowlistEntry(BaseModel):
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    cidr_range = models.CharField(max_length=64, blank=True)
    label = models.CharField(max_length=100)
    category = models.CharField(max_length=20, choices=AllowlistCategory.choices)
    is_active = models.BooleanField(default=True)
    added_by = models.CharField(max_length=150, default="system")

    class Meta:
        db_table = "ip_allowlist"
        ordering = ["label"]

    def matches(self, ip: str) -> bool:
        if self.ip_address:
            return ipaddress.ip_address(ip) == ipaddress.ip_address(self.ip_address)
        if self.cidr_range:
            address = ipaddress.ip_address(ip)
            network = ipaddress.ip_network(self.cidr_range, strict=False)
            return address.version == network.version and address in network
        return False

    def __str__(self) -> str:
        return f"{self.label} ({self.ip_address or self.cidr_range})"

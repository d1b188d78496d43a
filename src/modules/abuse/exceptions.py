"""Abuse escalation exceptions."""

from __future__ import annotations


class InvalidIpAddress(Exception):
    """The value is not a valid IPv4/IPv6 address."""


class InvalidAllowlistEntry(Exception):
    """An allowlist entry needs exactly one valid IP address or CIDR range."""


class BlockNotFound(Exception):
    """There is no active block for this IP address."""

"""Retention domain exceptions."""

from __future__ import annotations


class ErasureBlocked(Exception):
    """The guest still has orders moving through fulfilment."""


class ErasureNotAuthorized(Exception):
    """The supplied order reference does not belong to the email."""


class NoPendingErasure(Exception):
    """The guest has no deferred erasure request left to withdraw."""

"""Order domain exceptions.

Raised by the Service Layer when business rules are violated.
The API layer (Views) catches these and translates them into
appropriate HTTP responses.
"""

from __future__ import annotations


class OrderNotFound(Exception):
    """The order does not exist, or the supplied email does not own it.

    Both cases share one exception so callers cannot learn which
    emails have orders.
    """


class InvalidOrderStatus(Exception):
    """The order's current state does not allow the requested transition."""


class ImmutableFieldUpdate(Exception):
    """A transition tried to write a field outside its allow-list."""


class OtpNotIssued(Exception):
    """No cancellation code has been issued for this order."""


class OtpExpired(Exception):
    """The cancellation code has expired."""


class OtpInvalid(Exception):
    """The cancellation code does not match."""

    def __init__(self, message: str, attempts_remaining: int) -> None:
        super().__init__(message)
        self.attempts_remaining = attempts_remaining


class OtpLockedOut(Exception):
    """Too many wrong codes; the order is locked until ``locked_until``."""

    def __init__(self, message: str, locked_until) -> None:
        super().__init__(message)
        self.locked_until = locked_until

"""Order domain constants.

Defines status choices and the forward-only commerce lifecycle used by
the order state machine.  ``payment_status`` has its own one-way
lifecycle (``initiated`` -> ``paid`` | ``failed``) enforced by the
conditional transitions in ``transitions.py``.  Refunds of cancelled
orders are tracked in ``refund_status`` and never touch it.
"""

from django.db import models


class OrderStatus(models.TextChoices):
    CHECKED_OUT = "CHECKED_OUT", "Checked out"
    CONFIRMED = "CONFIRMED", "Confirmed"
    PICKED_UP = "PICKED_UP", "Picked up"
    DELIVERED = "DELIVERED", "Delivered"
    CANCELLED = "CANCELLED", "Cancelled"
    RETURN_REQUESTED = "RETURN_REQUESTED", "Return requested"


class PaymentStatus(models.TextChoices):
    INITIATED = "initiated", "Initiated"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"


class CarrierStatus(models.TextChoices):
    """Carrier-facing sub-state; mirrors the carrier lifecycle."""

    NOT_SHIPPED = "NOT_SHIPPED", "Not shipped"
    AWB_PENDING = "AWB_PENDING", "AWB pending"
    AWB_ASSIGNED = "AWB_ASSIGNED", "AWB assigned"
    PICKUP_SCHEDULED = "PICKUP_SCHEDULED", "Pickup scheduled"
    MANIFESTED = "MANIFESTED", "Manifested"
    CANCELLED = "CANCELLED", "Cancelled"
    CANCELLATION_FAILED = "CANCELLATION_FAILED", "Cancellation failed"


class RefundStatus(models.TextChoices):
    NONE = "", "None"
    INITIATED = "REFUND_INITIATED", "Refund initiated"
    COMPLETED = "REFUND_COMPLETED", "Refund completed"
    FAILED = "REFUND_FAILED", "Refund failed"


class CancellationStatus(models.TextChoices):
    NONE = "", "None"
    CANCELLED = "cancelled", "Cancelled"
    RETURN_REQUESTED = "return_requested", "Return requested"


VALID_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.CHECKED_OUT: {OrderStatus.CONFIRMED},
    OrderStatus.CONFIRMED: {OrderStatus.PICKED_UP, OrderStatus.CANCELLED},
    OrderStatus.PICKED_UP: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: {OrderStatus.RETURN_REQUESTED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURN_REQUESTED: set(),
}

# Orders in these states are still moving through fulfilment and block erasure.
ACTIVE_FULFILMENT_STATES: set[str] = {OrderStatus.CONFIRMED, OrderStatus.PICKED_UP}

CANCELLABLE_STATES: set[str] = {OrderStatus.CONFIRMED, OrderStatus.PICKED_UP}
RETURNABLE_STATES: set[str] = {OrderStatus.DELIVERED}

DEFAULT_CURRENCY = "INR"
OTP_LENGTH = 6

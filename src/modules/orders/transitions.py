"""Conditional transitions for the Order aggregate.

Each ``OrderTransition`` declares:

- ``expected``: the persisted state the row must currently be in
  (field -> allowed values; ``None`` in the set matches SQL NULL);
- ``mutable_fields``: the only columns the transition may write.

The repository turns a transition into one ``UPDATE ... WHERE <expected>``
statement.  The number of affected rows is the outcome: ``1`` means this
caller won, ``0`` means the row was not in the expected state (already
moved by a concurrent caller, or does not exist).  This is the only
concurrency primitive used against orders; no row locks are taken.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from django.db.models import Q

from modules.orders.constants import (
    CANCELLABLE_STATES,
    RETURNABLE_STATES,
    CarrierStatus,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
)
from modules.orders.exceptions import ImmutableFieldUpdate

OTP_FIELDS = frozenset({"otp_hash", "otp_expires_at", "otp_attempts", "otp_locked_until"})


@dataclass(frozen=True)
class OrderTransition:
    name: str
    expected: Mapping[str, frozenset[Any]]
    mutable_fields: frozenset[str]
    records_history: bool = field(default=False)

    def guard(self, **overrides: Iterable[Any]) -> Q:
        """Build the WHERE clause; ``overrides`` narrows allowed values."""
        expected = dict(self.expected)
        for name, values in overrides.items():
            expected[name] = frozenset(values)

        condition = Q()
        for name, values in expected.items():
            concrete = [v for v in values if v is not None]
            clause = Q(**{f"{name}__in": concrete}) if concrete else Q(pk__in=[])
            if None in values:
                clause = (
                    clause | Q(**{f"{name}__isnull": True})
                    if concrete
                    else Q(**{f"{name}__isnull": True})
                )
            condition &= clause
        return condition

    def validate(self, changes: Mapping[str, Any]) -> None:
        illegal = set(changes) - self.mutable_fields
        if illegal:
            raise ImmutableFieldUpdate(
                f"Transition {self.name} cannot write {sorted(illegal)}."
            )


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

CONFIRM_PAYMENT = OrderTransition(
    name="confirm_payment",
    expected={"payment_status": frozenset({PaymentStatus.INITIATED})},
    mutable_fields=frozenset(
        {"payment_status", "order_status", "carrier_status", "payment_id", "paid_at"}
    ),
    records_history=True,
)

FAIL_PAYMENT = OrderTransition(
    name="fail_payment",
    expected={"payment_status": frozenset({PaymentStatus.INITIATED})},
    mutable_fields=frozenset({"payment_status"}),
)

ATTACH_GATEWAY_ORDER = OrderTransition(
    name="attach_gateway_order",
    expected={
        "payment_status": frozenset({PaymentStatus.INITIATED}),
        "gateway_order_id": frozenset({""}),
    },
    mutable_fields=frozenset({"gateway_order_id"}),
)

ATTACH_TAX_BREAKDOWN = OrderTransition(
    name="attach_tax_breakdown",
    expected={
        "payment_status": frozenset({PaymentStatus.PAID}),
        "taxable_amount": frozenset({None}),
    },
    mutable_fields=frozenset(
        {"taxable_amount", "cgst_amount", "sgst_amount", "igst_amount"}
    ),
)

# ---------------------------------------------------------------------------
# Commerce lifecycle
# ---------------------------------------------------------------------------

ADVANCE_STATUS = OrderTransition(
    name="advance_status",
    expected={
        "order_status": frozenset(
            {OrderStatus.CONFIRMED, OrderStatus.PICKED_UP}
        ),
        "payment_status": frozenset({PaymentStatus.PAID}),
    },
    mutable_fields=frozenset({"order_status"}),
    records_history=True,
)

ISSUE_OTP = OrderTransition(
    name="issue_otp",
    expected={
        "order_status": frozenset(CANCELLABLE_STATES | RETURNABLE_STATES),
    },
    mutable_fields=OTP_FIELDS,
)

RECORD_OTP_FAILURE = OrderTransition(
    name="record_otp_failure",
    expected={
        "order_status": frozenset(CANCELLABLE_STATES | RETURNABLE_STATES),
    },
    mutable_fields=frozenset({"otp_attempts", "otp_locked_until", "otp_hash"}),
)

CANCEL = OrderTransition(
    name="cancel",
    expected={"order_status": frozenset(CANCELLABLE_STATES)},
    mutable_fields=OTP_FIELDS
    | {"order_status", "cancellation_status", "cancellation_reason"},
    records_history=True,
)

REQUEST_RETURN = OrderTransition(
    name="request_return",
    expected={"order_status": frozenset(RETURNABLE_STATES)},
    mutable_fields=OTP_FIELDS
    | {"order_status", "cancellation_status", "cancellation_reason"},
    records_history=True,
)

# ---------------------------------------------------------------------------
# Carrier linkage
# ---------------------------------------------------------------------------

_SHIPPABLE = {
    "order_status": frozenset({OrderStatus.CONFIRMED}),
    "payment_status": frozenset({PaymentStatus.PAID}),
}

RECORD_PACKAGE_METRICS = OrderTransition(
    name="record_package_metrics",
    expected={**_SHIPPABLE, "awb_code": frozenset({None})},
    mutable_fields=frozenset(
        {"package_length", "package_breadth", "package_height", "package_weight"}
    ),
)

RECORD_SHIPMENT = OrderTransition(
    name="record_shipment",
    expected={**_SHIPPABLE, "carrier_shipment_id": frozenset({None})},
    mutable_fields=frozenset({"carrier_shipment_id", "carrier_order_id", "carrier_status"}),
)

ASSIGN_AWB = OrderTransition(
    name="assign_awb",
    expected={**_SHIPPABLE, "awb_code": frozenset({None})},
    mutable_fields=frozenset(
        {"awb_code", "carrier_status", "carrier_shipment_id", "carrier_order_id"}
    ),
)

ATTACH_LABEL = OrderTransition(
    name="attach_label",
    expected={**_SHIPPABLE, "label_url": frozenset({None})},
    mutable_fields=frozenset({"label_url"}),
)

SCHEDULE_PICKUP = OrderTransition(
    name="schedule_pickup",
    expected={**_SHIPPABLE, "pickup_scheduled_at": frozenset({None})},
    mutable_fields=frozenset({"pickup_scheduled_at", "carrier_status"}),
)

ATTACH_MANIFEST = OrderTransition(
    name="attach_manifest",
    expected={**_SHIPPABLE, "manifest_generated": frozenset({False})},
    mutable_fields=frozenset({"manifest_url", "manifest_generated", "carrier_status"}),
)

RECORD_TRACKING = OrderTransition(
    name="record_tracking",
    expected={},
    mutable_fields=frozenset({"carrier_tracking_status", "carrier_tracking_updated_at"}),
)

# ---------------------------------------------------------------------------
# Cancellation follow-up
# ---------------------------------------------------------------------------

_BOOKING_OPEN = frozenset(
    {""} | {s for s in CarrierStatus.values if s != CarrierStatus.CANCELLED}
)

CARRIER_CANCELLED = OrderTransition(
    name="carrier_cancelled",
    expected={
        "order_status": frozenset({OrderStatus.CANCELLED}),
        "carrier_status": _BOOKING_OPEN,
    },
    mutable_fields=frozenset({"carrier_status"}),
)

CARRIER_CANCELLATION_FAILED = OrderTransition(
    name="carrier_cancellation_failed",
    expected={
        "order_status": frozenset({OrderStatus.CANCELLED}),
        "carrier_status": _BOOKING_OPEN - {CarrierStatus.CANCELLATION_FAILED},
    },
    mutable_fields=frozenset({"carrier_status"}),
)

# The refund lock: money goes back only once no live carrier booking remains.
LOCK_REFUND = OrderTransition(
    name="lock_refund",
    expected={
        "order_status": frozenset({OrderStatus.CANCELLED}),
        "payment_status": frozenset({PaymentStatus.PAID}),
        "carrier_status": frozenset(
            {"", CarrierStatus.NOT_SHIPPED, CarrierStatus.CANCELLED}
        ),
        "refund_status": frozenset({RefundStatus.NONE, RefundStatus.FAILED}),
    },
    mutable_fields=frozenset(
        {"refund_status", "refund_amount", "refund_initiated_at", "refund_error_reason"}
    ),
)

SETTLE_REFUND = OrderTransition(
    name="settle_refund",
    expected={"refund_status": frozenset({RefundStatus.INITIATED})},
    mutable_fields=frozenset(
        {
            "refund_status",
            "refund_id",
            "refund_amount",
            "refund_completed_at",
            "refund_error_reason",
        }
    ),
)

# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------

MARK_CLEANUP_NOTICE = OrderTransition(
    name="mark_cleanup_notice",
    expected={
        "order_status": frozenset({OrderStatus.CHECKED_OUT}),
        "payment_status": frozenset({PaymentStatus.INITIATED, PaymentStatus.FAILED}),
        "cleanup_notice_sent": frozenset({False}),
    },
    mutable_fields=frozenset({"cleanup_notice_sent", "cleanup_notice_sent_at"}),
)

RELEASE_CLEANUP_NOTICE = OrderTransition(
    name="release_cleanup_notice",
    expected={"cleanup_notice_sent": frozenset({True})},
    mutable_fields=frozenset({"cleanup_notice_sent", "cleanup_notice_sent_at"}),
)

ANONYMIZE = OrderTransition(
    name="anonymize",
    expected={},
    mutable_fields=OTP_FIELDS
    | {
        "guest_email",
        "guest_phone",
        "shipping_first_name",
        "shipping_last_name",
        "shipping_address_line1",
        "shipping_address_line2",
        "billing_first_name",
        "billing_last_name",
        "billing_address_line1",
        "billing_address_line2",
    },
)

CLEAR_OTP = OrderTransition(
    name="clear_otp",
    expected={},
    mutable_fields=OTP_FIELDS,
)

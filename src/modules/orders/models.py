"""Order, OrderItem, and OrderStatusHistory models.

Business rules implemented:
- ``order_status`` only moves forward along the commerce lifecycle, with
  explicit CANCELLED / RETURN_REQUESTED branches (see ``constants.py``).
- ``payment_status`` is one-way: ``initiated`` -> ``paid`` | ``failed``.
- Every ``order_status`` change generates a history record.
- Shipping and billing details are **snapshots** taken at checkout, never
  live references to a customer profile.
- Carrier linkage fields stay NULL until the carrier assigns them.
- A refund never reverses ``payment_status``; it has its own
  ``refund_status`` (see ``modules.payments.refunds``).
- Orders are hard-deleted only by the retention jobs; items and history
  cascade with the parent.

Writes never go through ``Order.save()`` after creation: every mutation is
a conditional transition issued by the repository (see ``transitions.py``).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models

from modules.core.models import BaseModel
from modules.orders.constants import (
    DEFAULT_CURRENCY,
    CancellationStatus,
    CarrierStatus,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
)

logger = structlog.get_logger(__name__)

MONEY = {"max_digits": 12, "decimal_places": 2}
DIMENSION = {"max_digits": 8, "decimal_places": 2, "null": True, "blank": True}


class Order(BaseModel):
    """Order aggregate root.

    The UUIDv7 ``id`` is the only identifier exposed to guests and the
    payment gateway (it travels in the gateway order ``notes``).
    """

    # Commerce state
    order_status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.CHECKED_OUT,
    )
    payment_status: models.CharField = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.INITIATED,
    )
    carrier_status: models.CharField = models.CharField(
        max_length=32,
        blank=True,
        default="",
        help_text=f"Carrier-facing sub-state, e.g. {CarrierStatus.AWB_PENDING}.",
    )

    # Guest contact
    guest_email: models.EmailField = models.EmailField(db_index=True)
    guest_phone: models.CharField = models.CharField(max_length=20, blank=True)

    # Shipping snapshot
    shipping_first_name: models.CharField = models.CharField(max_length=100)
    shipping_last_name: models.CharField = models.CharField(
        max_length=100, blank=True
    )
    shipping_address_line1: models.CharField = models.CharField(max_length=255)
    shipping_address_line2: models.CharField = models.CharField(
        max_length=255, blank=True
    )
    shipping_city: models.CharField = models.CharField(max_length=100)
    shipping_state: models.CharField = models.CharField(max_length=100)
    shipping_state_code: models.CharField = models.CharField(
        max_length=2, blank=True
    )
    shipping_pincode: models.CharField = models.CharField(max_length=10)
    shipping_country: models.CharField = models.CharField(
        max_length=60, default="India"
    )

    # Billing snapshot
    billing_first_name: models.CharField = models.CharField(max_length=100)
    billing_last_name: models.CharField = models.CharField(max_length=100, blank=True)
    billing_address_line1: models.CharField = models.CharField(max_length=255)
    billing_address_line2: models.CharField = models.CharField(
        max_length=255, blank=True
    )
    billing_city: models.CharField = models.CharField(max_length=100)
    billing_state: models.CharField = models.CharField(max_length=100)
    billing_pincode: models.CharField = models.CharField(max_length=10)
    billing_country: models.CharField = models.CharField(
        max_length=60, default="India"
    )

    # Amounts
    total_amount: models.DecimalField = models.DecimalField(
        **MONEY, default=Decimal("0.00")
    )
    shipping_cost: models.DecimalField = models.DecimalField(
        **MONEY, default=Decimal("0.00")
    )
    currency: models.CharField = models.CharField(
        max_length=3, default=DEFAULT_CURRENCY
    )
    taxable_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )
    cgst_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )
    sgst_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )
    igst_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )

    # Package metrics (operator-supplied or derived at assignment time)
    package_length: models.DecimalField = models.DecimalField(**DIMENSION)
    package_breadth: models.DecimalField = models.DecimalField(**DIMENSION)
    package_height: models.DecimalField = models.DecimalField(**DIMENSION)
    package_weight: models.DecimalField = models.DecimalField(
        max_digits=8, decimal_places=3, null=True, blank=True
    )

    # Payment linkage
    gateway_order_id: models.CharField = models.CharField(
        max_length=64, blank=True, db_index=True
    )
    payment_id: models.CharField = models.CharField(max_length=64, blank=True)
    paid_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)

    # Carrier linkage
    carrier_shipment_id: models.CharField = models.CharField(
        max_length=64, null=True, blank=True
    )
    carrier_order_id: models.CharField = models.CharField(
        max_length=64, null=True, blank=True
    )
    awb_code: models.CharField = models.CharField(max_length=64, null=True, blank=True)
    label_url: models.URLField = models.URLField(max_length=500, null=True, blank=True)
    manifest_url: models.URLField = models.URLField(
        max_length=500, null=True, blank=True
    )
    manifest_generated: models.BooleanField = models.BooleanField(default=False)
    pickup_scheduled_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    # Last tracking label pushed by the carrier, verbatim.
    carrier_tracking_status: models.CharField = models.CharField(
        max_length=64, blank=True, default=""
    )
    carrier_tracking_updated_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )

    # Cancellation / return
    otp_hash: models.CharField = models.CharField(max_length=64, blank=True)
    otp_expires_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    otp_attempts: models.PositiveSmallIntegerField = (
        models.PositiveSmallIntegerField(default=0)
    )
    otp_locked_until: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    cancellation_status: models.CharField = models.CharField(
        max_length=20,
        choices=CancellationStatus.choices,
        blank=True,
        default=CancellationStatus.NONE,
    )
    cancellation_reason: models.TextField = models.TextField(blank=True, default="")

    # Refund (cancelled paid orders); payment_status stays ``paid``.
    refund_status: models.CharField = models.CharField(
        max_length=20,
        choices=RefundStatus.choices,
        blank=True,
        default=RefundStatus.NONE,
    )
    refund_id: models.CharField = models.CharField(max_length=64, null=True, blank=True)
    refund_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )
    refund_initiated_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    refund_completed_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    refund_error_reason: models.CharField = models.CharField(
        max_length=255, blank=True, default=""
    )

    # Compliance
    cleanup_notice_sent: models.BooleanField = models.BooleanField(default=False)
    cleanup_notice_sent_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["order_status", "payment_status"],
                name="orders_status_idx",
            ),
            models.Index(
                fields=["cleanup_notice_sent", "created_at"],
                name="orders_cleanup_idx",
            ),
        ]

    @property
    def is_intrastate(self) -> bool:
        return self.shipping_state_code == settings.COMPANY_STATE_CODE

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def __str__(self) -> str:
        return f"{self.id} ({self.order_status}/{self.payment_status})"


class OrderItem(BaseModel):
    """Line item snapshot.

    Product name, SKU, HSN code, price, weight and dimensions are copied
    at checkout.  ``unit_price`` is GST-inclusive.  ``subtotal`` is always
    ``quantity * unit_price``, recalculated on every save.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="items",
    )
    product_name: models.CharField = models.CharField(max_length=255)
    sku: models.CharField = models.CharField(max_length=64)
    hsn: models.CharField = models.CharField(max_length=16, blank=True)
    unit_price: models.DecimalField = models.DecimalField(**MONEY)
    quantity: models.PositiveIntegerField = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
    )
    subtotal: models.DecimalField = models.DecimalField(**MONEY, editable=False)
    weight: models.DecimalField = models.DecimalField(
        max_digits=8, decimal_places=3, null=True, blank=True
    )
    length: models.DecimalField = models.DecimalField(**DIMENSION)
    breadth: models.DecimalField = models.DecimalField(**DIMENSION)
    height: models.DecimalField = models.DecimalField(**DIMENSION)
    gst_rate: models.DecimalField = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True
    )
    taxable_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )
    gst_amount: models.DecimalField = models.DecimalField(
        **MONEY, null=True, blank=True
    )

    class Meta:
        db_table = "order_items"
        ordering = ["created_at"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity__gte=1),
                name="order_items_quantity_positive",
            ),
        ]

    def clean(self) -> None:
        super().clean()
        if self.quantity is not None and self.quantity < 1:
            raise ValidationError({"quantity": "Quantity must be at least 1."})

    def save(self, *args: Any, **kwargs: Any) -> None:
        self.subtotal = self.quantity * self.unit_price
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.sku} x{self.quantity} ({self.subtotal})"


class OrderStatusHistory(BaseModel):
    """Append-only trail of ``order_status`` transitions.

    ``actor`` is ``system`` for automated transitions (payment webhook,
    retention jobs) or the admin username for manual ones.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="status_history",
    )
    old_status: models.CharField = models.CharField(  # noqa: DJ01
        max_length=20,
        choices=OrderStatus.choices,
        null=True,
        blank=True,
    )
    new_status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
    )
    actor: models.CharField = models.CharField(max_length=150, default="system")
    notes: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_status_history"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["order", "-created_at"],
                name="osh_order_created_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} : {self.old_status} -> {self.new_status}"

"""Order DRF serializers for API input/output.

The serializer operates at the Interface layer (API Views).
Business logic lives in the Service Layer, which receives
Pydantic DTOs from ``dtos.py``.
"""

from __future__ import annotations

from rest_framework import serializers

from modules.orders.constants import OrderStatus
from modules.orders.models import Order, OrderItem, OrderStatusHistory

# ---------------------------------------------------------------------------
# Input Serializers
# ---------------------------------------------------------------------------


class AddressSerializer(serializers.Serializer):
    first_name = serializers.CharField(max_length=100)
    last_name = serializers.CharField(max_length=100, required=False, default="")
    address_line1 = serializers.CharField(max_length=255)
    address_line2 = serializers.CharField(
        max_length=255, required=False, default="", allow_blank=True
    )
    city = serializers.CharField(max_length=100)
    state = serializers.CharField(max_length=100)
    state_code = serializers.CharField(
        max_length=2, required=False, default="", allow_blank=True
    )
    pincode = serializers.RegexField(r"^\d{6}$")
    country = serializers.CharField(max_length=60, required=False, default="India")


class CheckoutItemSerializer(serializers.Serializer):
    """Validates a single line of a checkout request."""

    product_name = serializers.CharField(max_length=255)
    sku = serializers.CharField(max_length=64)
    hsn = serializers.CharField(max_length=16, required=False, default="")
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    quantity = serializers.IntegerField(min_value=1)
    weight = serializers.DecimalField(
        max_digits=8, decimal_places=3, required=False, allow_null=True, default=None
    )
    length = serializers.DecimalField(
        max_digits=8, decimal_places=2, required=False, allow_null=True, default=None
    )
    breadth = serializers.DecimalField(
        max_digits=8, decimal_places=2, required=False, allow_null=True, default=None
    )
    height = serializers.DecimalField(
        max_digits=8, decimal_places=2, required=False, allow_null=True, default=None
    )
    gst_rate = serializers.DecimalField(
        max_digits=5, decimal_places=2, required=False, allow_null=True, default=None
    )


class CheckoutSerializer(serializers.Serializer):
    """Validates the guest checkout payload."""

    guest_email = serializers.EmailField()
    guest_phone = serializers.CharField(
        max_length=20, required=False, default="", allow_blank=True
    )
    shipping = AddressSerializer()
    billing = AddressSerializer(required=False, allow_null=True, default=None)
    items = CheckoutItemSerializer(many=True, allow_empty=False)
    shipping_cost = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=0, required=False, default="0.00"
    )


class AdvanceStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=[OrderStatus.PICKED_UP, OrderStatus.DELIVERED]
    )
    notes = serializers.CharField(required=False, default="", allow_blank=True)


class GuestEmailSerializer(serializers.Serializer):
    email = serializers.EmailField()


class CancelOrderSerializer(GuestEmailSerializer):
    code = serializers.RegexField(r"^\d{6}$")
    reason = serializers.CharField(
        max_length=500, required=False, default="", allow_blank=True
    )


# ---------------------------------------------------------------------------
# Output Serializers (Read)
# ---------------------------------------------------------------------------


class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = [
            "id",
            "product_name",
            "sku",
            "hsn",
            "quantity",
            "unit_price",
            "subtotal",
            "gst_rate",
            "taxable_amount",
            "gst_amount",
        ]
        read_only_fields = fields


class StatusHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusHistory
        fields = ["id", "old_status", "new_status", "notes", "created_at"]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Guest-facing order view.  Never exposes verification-code state."""

    items = OrderItemSerializer(many=True, read_only=True)
    status_history = StatusHistorySerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_status",
            "payment_status",
            "carrier_status",
            "guest_email",
            "total_amount",
            "shipping_cost",
            "currency",
            "taxable_amount",
            "cgst_amount",
            "sgst_amount",
            "igst_amount",
            "awb_code",
            "carrier_tracking_status",
            "cancellation_status",
            "refund_status",
            "refund_amount",
            "paid_at",
            "created_at",
            "updated_at",
            "items",
            "status_history",
        ]
        read_only_fields = fields

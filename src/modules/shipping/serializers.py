"""Shipping DRF serializers."""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

DIMENSION_KWARGS = {"max_digits": 8, "decimal_places": 2, "min_value": Decimal("0.01")}
STATUS_LABEL_FIELD = "sr-status-label"


class AssignShipmentSerializer(serializers.Serializer):
    """Optional operator-supplied package; all four values or none."""

    length = serializers.DecimalField(required=False, **DIMENSION_KWARGS)
    breadth = serializers.DecimalField(required=False, **DIMENSION_KWARGS)
    height = serializers.DecimalField(required=False, **DIMENSION_KWARGS)
    weight = serializers.DecimalField(
        max_digits=8, decimal_places=3, min_value=Decimal("0.001"), required=False
    )

    def validate(self, attrs):
        supplied = [name for name in ("length", "breadth", "height", "weight") if name in attrs]
        if supplied and len(supplied) != 4:
            raise serializers.ValidationError(
                "Provide length, breadth, height and weight together, or none of them."
            )
        return attrs


class EstimateRatesSerializer(serializers.Serializer):
    delivery_pincode = serializers.RegexField(r"^\d{6}$")
    weight = serializers.DecimalField(max_digits=8, decimal_places=3, min_value=Decimal("0.001"))


class CourierRateSerializer(serializers.Serializer):
    courier_name = serializers.CharField()
    rate = serializers.DecimalField(max_digits=12, decimal_places=2)
    etd = serializers.CharField(allow_blank=True)
    estimated_delivery_days = serializers.IntegerField(allow_null=True)


class TrackingWebhookSerializer(serializers.Serializer):
    """Carrier push payload: ``awb`` and ``sr-status-label``."""

    awb = serializers.CharField(max_length=64)

    def get_fields(self):
        fields = super().get_fields()
        # Not a valid Python identifier, so it cannot be declared as an attribute.
        fields[STATUS_LABEL_FIELD] = serializers.CharField(max_length=128)
        return fields

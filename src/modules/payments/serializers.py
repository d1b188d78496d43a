"""Payment DRF serializers."""

from __future__ import annotations

from rest_framework import serializers


class PaymentProofSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    gateway_order_id = serializers.CharField(max_length=64)
    payment_id = serializers.CharField(max_length=64)
    signature = serializers.CharField(max_length=128)


class InitiatePaymentSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    email = serializers.EmailField()

"""Retention DRF serializers."""

from __future__ import annotations

from rest_framework import serializers

from modules.retention.constants import CANCEL_CONFIRM_PHRASE


class ErasureRequestSerializer(serializers.Serializer):
    email = serializers.EmailField()
    order_id = serializers.UUIDField()


class ErasureCancelSerializer(ErasureRequestSerializer):
    confirm_phrase = serializers.CharField()
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate_confirm_phrase(self, value: str) -> str:
        if value != CANCEL_CONFIRM_PHRASE:
            raise serializers.ValidationError(
                f"Type '{CANCEL_CONFIRM_PHRASE}' to confirm."
            )
        return value


class ErasureResultSerializer(serializers.Serializer):
    status = serializers.CharField()
    request_id = serializers.CharField(allow_null=True)
    orders_affected = serializers.IntegerField()
    retention_end_date = serializers.DateField(allow_null=True)
    already_pending = serializers.BooleanField()

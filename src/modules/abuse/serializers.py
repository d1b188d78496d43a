"""Abuse admin serializers."""

from __future__ import annotations

from rest_framework import serializers

from modules.abuse.constants import AllowlistCategory
from modules.abuse.models import AllowlistEntry, BlockRecord


class BlockRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = BlockRecord
        fields = [
            "ip_address",
            "offense_count",
            "block_type",
            "blocked_until",
            "incident_type",
            "is_active",
            "first_offense_at",
            "last_offense_at",
            "blocked_by",
            "unblocked_at",
            "unblocked_by",
            "notes",
        ]
        read_only_fields = fields


class ManualBlockSerializer(serializers.Serializer):
    ip_address = serializers.IPAddressField()
    duration_minutes = serializers.IntegerField(
        min_value=1, required=False, allow_null=True, default=None
    )
    notes = serializers.CharField(required=False, default="", allow_blank=True)


class AllowlistEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = AllowlistEntry
        fields = [
            "id",
            "ip_address",
            "cidr_range",
            "label",
            "category",
            "is_active",
            "added_by",
            "created_at",
        ]
        read_only_fields = fields


class CreateAllowlistEntrySerializer(serializers.Serializer):
    ip_address = serializers.IPAddressField(required=False, allow_null=True, default=None)
    cidr_range = serializers.CharField(
        max_length=64, required=False, allow_blank=True, default=""
    )
    label = serializers.CharField(max_length=100)
    category = serializers.ChoiceField(choices=AllowlistCategory.choices)

"""Abuse admin API views.

Admin-only.  Domain exceptions are translated into HTTP status codes.
"""

from __future__ import annotations

from rest_framework import status
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.viewsets import GenericViewSet

from modules.abuse.exceptions import (
    BlockNotFound,
    InvalidAllowlistEntry,
    InvalidIpAddress,
)
from modules.abuse.models import AllowlistEntry, BlockRecord
from modules.abuse.serializers import (
    AllowlistEntrySerializer,
    BlockRecordSerializer,
    CreateAllowlistEntrySerializer,
    ManualBlockSerializer,
)
from modules.abuse.services import AbuseEscalationService


class BlockViewSet(GenericViewSet):
    """List, create and lift IP blocks."""

    queryset = BlockRecord.objects.none()
    permission_classes = [IsAdminUser]
    lookup_field = "ip"
    lookup_value_regex = r"[0-9a-fA-F:.]+"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = AbuseEscalationService()

    def list(self, request: Request) -> Response:
        """GET /api/v1/abuse/blocks/"""
        blocks = self._service.active_blocks()
        return Response(BlockRecordSerializer(blocks, many=True).data)

    def create(self, request: Request) -> Response:
        """POST /api/v1/abuse/blocks/"""
        serializer = ManualBlockSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            record = self._service.manual_block(
                data["ip_address"],
                actor=request.user.get_username(),
                duration_minutes=data["duration_minutes"],
                notes=data["notes"],
            )
        except InvalidIpAddress as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(
            BlockRecordSerializer(record).data, status=status.HTTP_201_CREATED
        )

    @action(detail=True, methods=["post"])
    def unblock(self, request: Request, ip: str | None = None) -> Response:
        """POST /api/v1/abuse/blocks/{ip}/unblock/"""
        try:
            record = self._service.unblock(ip or "", actor=request.user.get_username())
        except BlockNotFound as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
        return Response(BlockRecordSerializer(record).data)


class AllowlistViewSet(GenericViewSet):
    """Manage addresses that are never blocked."""

    queryset = AllowlistEntry.objects.none()
    permission_classes = [IsAdminUser]

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = AbuseEscalationService()

    def list(self, request: Request) -> Response:
        """GET /api/v1/abuse/allowlist/"""
        entries = AllowlistEntry.objects.filter(is_active=True)
        return Response(AllowlistEntrySerializer(entries, many=True).data)

    def create(self, request: Request) -> Response:
        """POST /api/v1/abuse/allowlist/"""
        serializer = CreateAllowlistEntrySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            entry = self._service.add_allowlist_entry(
                label=data["label"],
                category=data["category"],
                actor=request.user.get_username(),
                ip_address=data["ip_address"],
                cidr_range=data["cidr_range"],
            )
        except InvalidAllowlistEntry as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(
            AllowlistEntrySerializer(entry).data, status=status.HTTP_201_CREATED
        )

    def destroy(self, request: Request, pk: str | None = None) -> Response:
        """DELETE /api/v1/abuse/allowlist/{pk}/"""
        removed = self._service.remove_allowlist_entry(
            pk or "", actor=request.user.get_username()
        )
        if not removed:
            return Response(
                {"detail": "Allowlist entry not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(status=status.HTTP_204_NO_CONTENT)

"""Privacy API views."""

from __future__ import annotations

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from modules.core.network import get_client_ip
from modules.retention.exceptions import (
    ErasureBlocked,
    ErasureNotAuthorized,
    NoPendingErasure,
)
from modules.retention.serializers import (
    ErasureCancelSerializer,
    ErasureRequestSerializer,
    ErasureResultSerializer,
)
from modules.retention.services import ErasureService


class ErasureRequestView(APIView):
    """POST /api/v1/privacy/erasure/"""

    permission_classes = [AllowAny]
    throttle_scope = "privacy"

    def post(self, request: Request) -> Response:
        serializer = ErasureRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = ErasureService().request_erasure(
                serializer.validated_data["email"],
                str(serializer.validated_data["order_id"]),
                ip_address=get_client_ip(request.META),
            )
        except ErasureNotAuthorized:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)
        except ErasureBlocked as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        code = status.HTTP_200_OK if result.already_pending else status.HTTP_201_CREATED
        return Response(ErasureResultSerializer(result).data, status=code)


class ErasureCancelView(APIView):
    """POST /api/v1/privacy/erasure/cancel/"""

    permission_classes = [AllowAny]
    throttle_scope = "privacy"

    def post(self, request: Request) -> Response:
        serializer = ErasureCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = ErasureService().cancel_erasure(
                serializer.validated_data["email"],
                str(serializer.validated_data["order_id"]),
                ip_address=get_client_ip(request.META),
                reason=serializer.validated_data.get("reason", ""),
            )
        except ErasureNotAuthorized:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)
        except NoPendingErasure as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)

        return Response(ErasureResultSerializer(result).data)

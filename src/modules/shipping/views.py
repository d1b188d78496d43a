"""Shipping API views.

Assignment, ship and the cancellation retry are admin-only.  Assignment
and ship block on carrier calls (including AWB backoff), which is
acceptable for an operator action.  The carrier webhook is authenticated
by its shared token only.
"""

from __future__ import annotations

import hmac

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, BasePermission, IsAdminUser
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import BaseThrottle
from rest_framework.views import APIView
from rest_framework.viewsets import GenericViewSet

from modules.abuse.constants import IncidentType, Severity
from modules.abuse.services import report_incident
from modules.orders.constants import CarrierStatus, OrderStatus
from modules.orders.exceptions import OrderNotFound
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.shipping.carrier import CarrierClient
from modules.shipping.exceptions import (
    CarrierError,
    LabelGenerationFailed,
    ManifestGenerationFailed,
    ShipmentNotReady,
)
from modules.shipping.package import PackageMetrics
from modules.shipping.serializers import (
    AssignShipmentSerializer,
    CourierRateSerializer,
    EstimateRatesSerializer,
    STATUS_LABEL_FIELD,
    TrackingWebhookSerializer,
)
from modules.shipping.services import ShipmentService
from modules.shipping.tasks import cancel_carrier_order
from modules.shipping.tracking import TrackingService

NOT_FOUND = {"detail": "Order not found."}


class ShipmentViewSet(GenericViewSet):
    lookup_url_kwarg = "order_id"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = ShipmentService(
            order_repository=OrderDjangoRepository(),
            carrier=CarrierClient(),
        )

    def get_permissions(self) -> list[BasePermission]:
        if self.action == "estimate":
            return [AllowAny()]
        return [IsAdminUser()]

    def get_throttles(self) -> list[BaseThrottle]:
        self.throttle_scope = "shipping_estimate" if self.action == "estimate" else None
        return super().get_throttles()

    @action(detail=True, methods=["post"])
    def assign(self, request: Request, order_id: str | None = None) -> Response:
        """POST /api/v1/shipments/{order_id}/assign/"""
        serializer = AssignShipmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        explicit = PackageMetrics(**data) if data else None

        try:
            result = self._service.assign_shipment(order_id or "", explicit)
        except OrderNotFound:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        except ShipmentNotReady as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        except CarrierError as exc:
            return Response(
                {"detail": f"Failed to create shipping order: {exc}"},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        return Response(result)

    @action(detail=True, methods=["post"])
    def ship(self, request: Request, order_id: str | None = None) -> Response:
        """POST /api/v1/shipments/{order_id}/ship/"""
        try:
            result = self._service.ship(order_id or "")
        except OrderNotFound:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        except ShipmentNotReady as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        except (LabelGenerationFailed, ManifestGenerationFailed) as exc:
            return Response(
                {"detail": str(exc), "stage": type(exc).__name__},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        return Response(result)

    @action(detail=True, methods=["post"], url_path="retry-cancellation")
    def retry_cancellation(self, request: Request, order_id: str | None = None) -> Response:
        """POST /api/v1/shipments/{order_id}/retry-cancellation/"""
        order = OrderDjangoRepository().get_by_id(order_id or "")
        if order is None:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        if (
            order.order_status != OrderStatus.CANCELLED
            or order.carrier_status != CarrierStatus.CANCELLATION_FAILED
        ):
            return Response(
                {"detail": "Only a failed carrier cancellation can be retried."},
                status=status.HTTP_409_CONFLICT,
            )

        cancel_carrier_order.delay(str(order.id))
        return Response(
            {"order_id": str(order.id), "queued": True}, status=status.HTTP_202_ACCEPTED
        )

    @action(detail=False, methods=["post"])
    def estimate(self, request: Request) -> Response:
        """POST /api/v1/shipments/estimate/"""
        serializer = EstimateRatesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            rates = self._service.estimate_rates(
                serializer.validated_data["delivery_pincode"],
                serializer.validated_data["weight"],
            )
        except CarrierError:
            return Response(
                {"detail": "Shipping estimate is unavailable right now."},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        return Response({"couriers": CourierRateSerializer(rates, many=True).data})


@method_decorator(csrf_exempt, name="dispatch")
class CarrierWebhookView(APIView):
    """POST /api/v1/shipments/webhook/

    Tracking pushes from the carrier.  Anything that passes the token
    check is answered with 200 so the carrier does not redeliver
    payloads we cannot use.
    """

    authentication_classes: list = []
    permission_classes = [AllowAny]

    def post(self, request: Request) -> Response:
        expected = settings.CARRIER_WEBHOOK_TOKEN
        supplied = request.headers.get(settings.CARRIER_WEBHOOK_TOKEN_HEADER, "")
        if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
            report_incident(
                request,
                IncidentType.UNAUTHORIZED_ACCESS,
                severity=Severity.HIGH,
                endpoint="carrier_webhook",
            )
            return Response({"detail": "Unauthorized."}, status=status.HTTP_401_UNAUTHORIZED)

        serializer = TrackingWebhookSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"received": True, "handled": False, "detail": "Invalid payload."})

        result = TrackingService().apply(
            serializer.validated_data["awb"],
            serializer.validated_data[STATUS_LABEL_FIELD],
        )
        return Response(
            {
                "received": True,
                "handled": result.handled,
                "order_status": result.order_status,
            }
        )

"""Order API views.

Exposes the ``OrderService`` via HTTP using DRF ViewSets.
Domain exceptions are caught and translated into appropriate
HTTP status codes; the view never swallows generic exceptions.
"""

from __future__ import annotations

from uuid import UUID

from pydantic import ValidationError as DTOValidationError
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, BasePermission, IsAdminUser
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import BaseThrottle
from rest_framework.viewsets import GenericViewSet

from modules.abuse.constants import IncidentType
from modules.abuse.services import report_incident
from modules.notifications.services import EmailNotifier
from modules.orders.dtos import CheckoutDTO
from modules.orders.exceptions import (
    InvalidOrderStatus,
    OrderNotFound,
    OtpExpired,
    OtpInvalid,
    OtpLockedOut,
    OtpNotIssued,
)
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.serializers import (
    AdvanceStatusSerializer,
    CancelOrderSerializer,
    CheckoutSerializer,
    GuestEmailSerializer,
    OrderSerializer,
)
from modules.orders.services import OrderService

NOT_FOUND = {"detail": "Order not found."}


class OrderViewSet(GenericViewSet):
    """ViewSet for guest checkout and order lifecycle operations.

    Uses ``OrderService`` with an injected repository (DIP).
    Guest endpoints authenticate by order id + email; advancing the
    fulfilment status is admin-only.
    """

    queryset = Order.objects.none()

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = OrderService(
            order_repository=OrderDjangoRepository(),
            notifier=EmailNotifier(),
        )

    def get_permissions(self) -> list[BasePermission]:
        if self.action == "advance":
            return [IsAdminUser()]
        return [AllowAny()]

    def get_throttles(self) -> list[BaseThrottle]:
        """Throttle scopes per action."""
        throttle_scope: str | None
        if self.action == "create":
            throttle_scope = "checkout"
        elif self.action in {"cancellation_code", "cancel"}:
            throttle_scope = "order_otp"
        else:
            throttle_scope = None
        self.throttle_scope = throttle_scope
        return super().get_throttles()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create(self, request: Request) -> Response:
        """POST /api/v1/orders/ (guest checkout)."""
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            dto = CheckoutDTO.model_validate(serializer.validated_data)
        except DTOValidationError as exc:
            return Response(
                {"detail": exc.errors(include_url=False, include_context=False)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        order = self._service.create_checkout(dto)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    def retrieve(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/orders/{pk}/?email=<guest email>"""
        email = request.query_params.get("email", "")
        try:
            order = self._service.get_guest_order(pk or "", email)
        except OrderNotFound:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderSerializer(order).data)

    # ------------------------------------------------------------------
    # Fulfilment (admin)
    # ------------------------------------------------------------------

    @action(detail=True, methods=["post"])
    def advance(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/advance/"""
        serializer = AdvanceStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = self._service.advance_status(
                order_id=UUID(pk or ""),
                new_status=serializer.validated_data["status"],
                actor=request.user.get_username(),
                notes=serializer.validated_data["notes"],
            )
        except ValueError:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        except OrderNotFound:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        except InvalidOrderStatus as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        return Response(OrderSerializer(order).data)

    # ------------------------------------------------------------------
    # Cancellation / return (guest, code-verified)
    # ------------------------------------------------------------------

    @action(detail=True, methods=["post"], url_path="cancellation-code")
    def cancellation_code(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/cancellation-code/"""
        serializer = GuestEmailSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            expires_at = self._service.issue_cancellation_code(
                pk or "", serializer.validated_data["email"]
            )
        except OrderNotFound:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        except OtpLockedOut as exc:
            return Response(
                {"detail": str(exc), "locked_until": exc.locked_until},
                status=status.HTTP_429_TOO_MANY_REQUESTS,
            )
        except InvalidOrderStatus as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        return Response({"sent": True, "expires_at": expires_at})

    @action(detail=True, methods=["post"])
    def cancel(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/cancel/

        Cancels CONFIRMED / PICKED_UP orders, or files a return request
        for DELIVERED ones.
        """
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            order = self._service.cancel_with_code(
                pk or "", data["email"], data["code"], data["reason"]
            )
        except OrderNotFound:
            return Response(NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        except OtpLockedOut as exc:
            report_incident(
                request, IncidentType.OTP_BRUTE_FORCE, order_id=str(pk)
            )
            return Response(
                {"detail": str(exc), "locked_until": exc.locked_until},
                status=status.HTTP_429_TOO_MANY_REQUESTS,
            )
        except OtpInvalid as exc:
            return Response(
                {"detail": str(exc), "attempts_remaining": exc.attempts_remaining},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except (OtpNotIssued, OtpExpired, InvalidOrderStatus) as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        return Response(OrderSerializer(order).data)

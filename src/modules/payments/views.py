"""Payment API views.

Signature failures on either trigger are answered with 400 and reported
to the abuse engine, which blocks the source permanently.  A captured
payment is never answered with an error because of our own bookkeeping:
``reconciliation_required`` is still a 200.
"""

from __future__ import annotations

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from pydantic import ValidationError as DTOValidationError
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.viewsets import GenericViewSet

from modules.abuse.constants import IncidentType, Severity
from modules.abuse.services import report_incident
from modules.orders.constants import RefundStatus
from modules.orders.exceptions import InvalidOrderStatus, OrderNotFound
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.payments.dtos import PaymentProofDTO
from modules.payments.exceptions import (
    GatewayError,
    InvalidPaymentSignature,
    InvalidWebhookSignature,
    MalformedWebhook,
    PaymentAmountMismatch,
    PaymentNotCaptured,
    PaymentProofMismatch,
)
from modules.payments.gateway import PaymentGatewayClient
from modules.payments.refunds import RefundService
from modules.payments.serializers import InitiatePaymentSerializer, PaymentProofSerializer
from modules.payments.services import ConfirmationOutcome, PaymentConfirmationService
from modules.payments.verifier import PaymentVerifier


def build_confirmation_service() -> PaymentConfirmationService:
    return PaymentConfirmationService(
        order_repository=OrderDjangoRepository(),
        verifier=PaymentVerifier(),
        gateway=PaymentGatewayClient(),
        refunds=RefundService(),
    )


class PaymentViewSet(GenericViewSet):
    """Buyer-facing payment endpoints: initiate and confirm."""

    permission_classes = [AllowAny]
    throttle_scope = "payment"

    @action(detail=False, methods=["post"])
    def orders(self, request: Request) -> Response:
        """POST /api/v1/payments/orders/"""
        serializer = InitiatePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            payload = build_confirmation_service().initiate(
                str(serializer.validated_data["order_id"]),
                serializer.validated_data["email"],
            )
        except OrderNotFound:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)
        except InvalidOrderStatus as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        except GatewayError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"])
    def verify(self, request: Request) -> Response:
        """POST /api/v1/payments/verify/"""
        serializer = PaymentProofSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            proof = PaymentProofDTO.model_validate(serializer.validated_data)
        except DTOValidationError as exc:
            return Response(
                {"detail": exc.errors(include_url=False, include_context=False)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            result = build_confirmation_service().confirm_from_callback(proof)
        except InvalidPaymentSignature as exc:
            report_incident(
                request,
                IncidentType.PAYMENT_SIGNATURE_INVALID,
                severity=Severity.CRITICAL,
                order_id=str(proof.order_id),
            )
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except (PaymentProofMismatch, PaymentNotCaptured, PaymentAmountMismatch) as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except GatewayError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        if result.outcome == ConfirmationOutcome.NOT_FOUND:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)

        body = {"status": result.outcome.value, "order_id": result.order_id}
        if result.outcome == ConfirmationOutcome.RECONCILIATION_REQUIRED:
            body["warning"] = (
                "Payment received. Your order is being finalised and you will "
                "receive a confirmation email shortly."
            )
        return Response(body)


@method_decorator(csrf_exempt, name="dispatch")
class PaymentWebhookView(APIView):
    """POST /api/v1/payments/webhook/

    Authenticated by the HMAC of the raw body only.
    """

    authentication_classes: list = []
    permission_classes = [AllowAny]

    def post(self, request: Request) -> Response:
        # Read the raw bytes before DRF parses anything.
        raw_body = request.body
        signature = request.headers.get(settings.PAYMENT_WEBHOOK_SIGNATURE_HEADER)

        try:
            result = build_confirmation_service().handle_webhook(raw_body, signature)
        except InvalidWebhookSignature as exc:
            report_incident(
                request, IncidentType.WEBHOOK_SIGNATURE_INVALID, severity=Severity.CRITICAL
            )
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except MalformedWebhook as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        return Response(
            {
                "received": True,
                "event": result.event,
                "handled": result.handled,
            }
        )


class RefundRetryView(APIView):
    """POST /api/v1/payments/refunds/{order_id}/retry/

    Operator action: lock and refund again after ``REFUND_FAILED``.
    """

    permission_classes = [IsAdminUser]

    def post(self, request: Request, order_id: str) -> Response:
        order = OrderDjangoRepository().get_by_id(str(order_id))
        if order is None:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)
        if order.refund_status != RefundStatus.FAILED:
            return Response(
                {"detail": "Only a failed refund can be retried."},
                status=status.HTTP_409_CONFLICT,
            )

        outcome = RefundService().refund_cancelled_order(str(order.id))
        order.refresh_from_db()
        return Response(
            {
                "order_id": str(order.id),
                "outcome": outcome.value,
                "refund_status": order.refund_status,
                "refund_error_reason": order.refund_error_reason,
            }
        )

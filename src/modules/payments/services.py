"""Payment Confirmation Engine.

Two independent triggers can prove the same captured payment:

1. the buyer's browser, right after checkout (``confirm_from_callback``);
2. the gateway webhook, possibly before or after the callback, possibly
   more than once (``handle_webhook``).

The same webhook also reports refunds (``refund.*``), which are settled
by ``modules.payments.refunds``.

Both verify a signature first and then funnel into ``apply_capture``,
which issues one conditional transition ``initiated -> paid``.  Exactly
one caller can win it.  A loser sees zero rows, re-reads
``payment_status`` and reports ``already_processed`` when the order is
paid.  Side effects (tax breakdown, confirmation email) hang off the
winning transition only, so duplicates never send a second email.

A captured payment whose write fails is logged at ``critical`` and
reported as success to the buyer: retrying the payment would charge
twice, while the missing row is fixed by reconciliation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from modules.orders.constants import CarrierStatus, OrderStatus, PaymentStatus
from modules.orders.exceptions import InvalidOrderStatus, OrderNotFound
from modules.orders.models import OrderItem
from modules.orders.transitions import (
    ATTACH_GATEWAY_ORDER,
    ATTACH_TAX_BREAKDOWN,
    CONFIRM_PAYMENT,
    FAIL_PAYMENT,
)
from modules.payments.exceptions import (
    InvalidPaymentSignature,
    InvalidWebhookSignature,
    MalformedWebhook,
    PaymentAmountMismatch,
    PaymentNotCaptured,
    PaymentProofMismatch,
)
from modules.payments.gateway import to_minor_units
from modules.payments.tax import compute_tax_breakdown

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from modules.payments.dtos import PaymentProofDTO
    from modules.payments.gateway import PaymentGatewayClient
    from modules.payments.refunds import RefundService
    from modules.payments.verifier import PaymentVerifier

logger = structlog.get_logger(__name__)

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_REFUND_CREATED = "refund.created"
EVENT_REFUND_PROCESSED = "refund.processed"
EVENT_REFUND_FAILED = "refund.failed"
REFUND_EVENTS = {EVENT_REFUND_CREATED, EVENT_REFUND_PROCESSED, EVENT_REFUND_FAILED}


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"
    RECONCILIATION_REQUIRED = "reconciliation_required"


@dataclass(frozen=True)
class ConfirmationResult:
    outcome: ConfirmationOutcome
    order_id: str

    @property
    def success(self) -> bool:
        return self.outcome != ConfirmationOutcome.NOT_FOUND


@dataclass(frozen=True)
class WebhookResult:
    event: str
    handled: bool
    order_id: Optional[str] = None
    outcome: Optional[ConfirmationOutcome] = None


class PaymentConfirmationService:
    """Receives its collaborators via constructor injection (DIP)."""

    def __init__(
        self,
        order_repository: IOrderRepository,
        verifier: PaymentVerifier,
        gateway: Optional[PaymentGatewayClient] = None,
        refunds: Optional[RefundService] = None,
    ) -> None:
        self._order_repo = order_repository
        self._verifier = verifier
        self._gateway = gateway
        self._refunds = refunds

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def initiate(self, order_id: str, email: str) -> Dict[str, Any]:
        """Create (or reuse) the gateway order the browser will pay against.

        Raises:
            OrderNotFound: unknown order or email mismatch.
            InvalidOrderStatus: the order is no longer awaiting payment.
            GatewayError: the gateway could not create the order.
        """
        order = self._order_repo.get_by_id(order_id)
        if not order or order.guest_email != (email or "").strip().lower():
            raise OrderNotFound("Order not found.")
        if order.payment_status != PaymentStatus.INITIATED:
            raise InvalidOrderStatus(f"Order is already {order.payment_status}.")

        if not order.gateway_order_id:
            if self._gateway is None:
                raise RuntimeError("A gateway client is required to initiate payment.")
            gateway_order = self._gateway.create_order(
                amount=order.total_amount,
                currency=order.currency,
                receipt=str(order.id),
                notes={"order_id": str(order.id)},
            )
            rows = self._order_repo.transition(
                order.id, ATTACH_GATEWAY_ORDER, {"gateway_order_id": gateway_order.id}
            )
            if not rows:
                # A concurrent initiation attached its own gateway order first.
                logger.info("payment.initiation_raced", order_id=str(order.id))
            order = self._order_repo.get_by_id(str(order.id)) or order

        logger.info(
            "payment.initiated",
            order_id=str(order.id),
            gateway_order_id=order.gateway_order_id,
        )
        return {
            "order_id": str(order.id),
            "gateway_order_id": order.gateway_order_id,
            "amount": to_minor_units(order.total_amount),
            "currency": order.currency,
            "key_id": settings.PAYMENT_GATEWAY_KEY_ID,
        }

    # ------------------------------------------------------------------
    # Trigger 1: client callback
    # ------------------------------------------------------------------

    def confirm_from_callback(self, proof: PaymentProofDTO) -> ConfirmationResult:
        """Verify a browser-submitted proof and apply it.

        Raises:
            InvalidPaymentSignature: HMAC mismatch; the order is untouched.
            PaymentProofMismatch: proof is for another gateway order.
            PaymentNotCaptured / PaymentAmountMismatch: gateway disagrees.
            GatewayError: gateway unreachable while double-checking.
        """
        order_id = str(proof.order_id)
        log = logger.bind(order_id=order_id, payment_id=proof.payment_id)

        if not self._verifier.verify_checkout(
            proof.gateway_order_id, proof.payment_id, proof.signature
        ):
            log.warning("payment.signature_invalid", trigger="callback")
            raise InvalidPaymentSignature("Payment signature verification failed.")

        order = self._order_repo.get_by_id(order_id)
        if order is None:
            log.info("payment.order_unknown", trigger="callback")
            return ConfirmationResult(ConfirmationOutcome.NOT_FOUND, order_id)

        if order.gateway_order_id and order.gateway_order_id != proof.gateway_order_id:
            log.warning("payment.proof_mismatch", expected=order.gateway_order_id)
            raise PaymentProofMismatch("Payment does not belong to this order.")

        if order.payment_status == PaymentStatus.INITIATED and self._gateway is not None:
            self._check_capture(order, proof.payment_id)

        return self.apply_capture(order_id, proof.payment_id, trigger="callback")

    def _check_capture(self, order: Order, payment_id: str) -> None:
        payment = self._gateway.fetch_payment(payment_id)
        if not payment.is_captured:
            logger.warning(
                "payment.not_captured", order_id=str(order.id), status=payment.status
            )
            raise PaymentNotCaptured(f"Payment status is {payment.status!r}.")

        tolerance = Decimal(str(settings.PAYMENT_AMOUNT_TOLERANCE))
        if abs(payment.amount - order.total_amount) > tolerance:
            logger.warning(
                "payment.amount_mismatch",
                order_id=str(order.id),
                paid=str(payment.amount),
                expected=str(order.total_amount),
            )
            raise PaymentAmountMismatch("Payment amount does not match order total.")

    # ------------------------------------------------------------------
    # Trigger 2: gateway webhook
    # ------------------------------------------------------------------

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify and dispatch a gateway webhook.

        Raises:
            InvalidWebhookSignature: body/signature mismatch; nothing parsed.
            MalformedWebhook: signed, but not actionable.
        """
        if not self._verifier.verify_webhook(raw_body, signature):
            logger.warning("payment.signature_invalid", trigger="webhook")
            raise InvalidWebhookSignature("Webhook signature verification failed.")

        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedWebhook("Webhook body is not valid JSON.") from exc
        if not isinstance(event, dict):
            raise MalformedWebhook("Webhook body must be a JSON object.")

        event_type = event.get("event", "")
        if event_type in REFUND_EVENTS:
            return self._handle_refund_event(event_type, event)
        if event_type not in {EVENT_PAYMENT_CAPTURED, EVENT_PAYMENT_FAILED}:
            logger.info("payment.webhook_ignored", webhook_event=event_type)
            return WebhookResult(event=event_type, handled=False)

        entity = (event.get("payload") or {}).get("payment", {}).get("entity") or {}
        order_id = (entity.get("notes") or {}).get("order_id")
        payment_id = entity.get("id", "")
        if not order_id or not _is_uuid(order_id):
            logger.warning("payment.webhook_missing_order", webhook_event=event_type)
            raise MalformedWebhook("Webhook payment carries no order reference.")

        if event_type == EVENT_PAYMENT_FAILED:
            rows = self._order_repo.transition(
                order_id, FAIL_PAYMENT, {"payment_status": PaymentStatus.FAILED}
            )
            logger.info("payment.failed_recorded", order_id=order_id, rows=rows)
            return WebhookResult(event=event_type, handled=bool(rows), order_id=order_id)

        result = self.apply_capture(order_id, payment_id, trigger="webhook")
        return WebhookResult(
            event=event_type,
            handled=result.outcome == ConfirmationOutcome.CONFIRMED,
            order_id=order_id,
            outcome=result.outcome,
        )

    def _handle_refund_event(self, event_type: str, event: Dict[str, Any]) -> WebhookResult:
        """Settle a refund from the gateway's side.

        The order is found by refund id, then by payment id.  Settlement
        writes are conditional, so redelivered events are no-ops.
        """
        if self._refunds is None:
            raise RuntimeError("A refund service is required to handle refund events.")

        payload = event.get("payload") or {}
        refund = (payload.get("refund") or {}).get("entity") or {}
        refund_id = refund.get("id", "")
        payment_id = refund.get("payment_id", "")
        if not refund_id:
            raise MalformedWebhook("Webhook refund carries no refund id.")

        log = logger.bind(webhook_event=event_type, refund_id=refund_id)
        order_id = self._refunds.find_order_id(refund_id, payment_id)
        if order_id is None:
            log.warning("refund.webhook_order_unknown", payment_id=payment_id)
            return WebhookResult(event=event_type, handled=False)

        if event_type == EVENT_REFUND_PROCESSED:
            amount = refund.get("amount")
            handled = self._refunds.complete(
                order_id,
                refund_id,
                Decimal(int(amount)) / Decimal(100) if amount is not None else None,
            )
        elif event_type == EVENT_REFUND_FAILED:
            payment = (payload.get("payment") or {}).get("entity") or {}
            reason = (
                payment.get("error_description")
                or payment.get("error_reason")
                or "Refund failed at the gateway."
            )
            handled = self._refunds.fail(order_id, reason, refund_id=refund_id)
        else:
            handled = bool(self._refunds.record_refund_id(order_id, refund_id))

        log.info("refund.webhook_applied", order_id=order_id, handled=handled)
        return WebhookResult(event=event_type, handled=handled, order_id=order_id)

    # ------------------------------------------------------------------
    # Idempotent apply
    # ------------------------------------------------------------------

    def apply_capture(
        self, order_id: str, payment_id: str, trigger: str = "callback"
    ) -> ConfirmationResult:
        log = logger.bind(order_id=order_id, payment_id=payment_id, trigger=trigger)
        try:
            with transaction.atomic():
                rows = self._order_repo.transition(
                    order_id,
                    CONFIRM_PAYMENT,
                    {
                        "payment_status": PaymentStatus.PAID,
                        "order_status": OrderStatus.CONFIRMED,
                        "carrier_status": CarrierStatus.NOT_SHIPPED,
                        "payment_id": payment_id,
                        "paid_at": timezone.now(),
                    },
                    notes=f"Payment {payment_id} captured ({trigger})",
                )
                if rows:
                    transaction.on_commit(
                        lambda: self._on_payment_confirmed(order_id), robust=True
                    )
        except DatabaseError:
            log.critical("payment.reconciliation_required", reason="write_failed")
            return ConfirmationResult(ConfirmationOutcome.RECONCILIATION_REQUIRED, order_id)

        if rows:
            log.info("payment.confirmed")
            return ConfirmationResult(ConfirmationOutcome.CONFIRMED, order_id)

        current = self._order_repo.get_payment_status(order_id)
        if current == PaymentStatus.PAID:
            log.info("payment.duplicate_confirmation")
            return ConfirmationResult(ConfirmationOutcome.ALREADY_PROCESSED, order_id)
        if current == PaymentStatus.FAILED:
            log.critical("payment.reconciliation_required", reason="captured_after_failure")
            return ConfirmationResult(ConfirmationOutcome.RECONCILIATION_REQUIRED, order_id)

        log.info("payment.order_unknown")
        return ConfirmationResult(ConfirmationOutcome.NOT_FOUND, order_id)

    # ------------------------------------------------------------------
    # Domain Event Hooks
    # ------------------------------------------------------------------

    def _on_payment_confirmed(self, order_id: str) -> None:
        """Hook: first (and only first) confirmation of an order.

        Attaches the GST breakdown, then enqueues the confirmation email.
        A failed breakdown write is logged; the email still goes out.
        """
        from modules.notifications.tasks import send_order_confirmation

        try:
            self.attach_tax_breakdown(order_id)
        except DatabaseError:
            logger.error("payment.tax_breakdown_failed", order_id=order_id)

        send_order_confirmation.delay(order_id)
        logger.info("payment.event.confirmation_enqueued", order_id=order_id)

    @transaction.atomic
    def attach_tax_breakdown(self, order_id: str) -> bool:
        order = self._order_repo.get_by_id(order_id)
        if order is None:
            return False

        breakdown = compute_tax_breakdown(order.items.all(), order.is_intrastate)
        rows = self._order_repo.transition(
            order_id,
            ATTACH_TAX_BREAKDOWN,
            {
                "taxable_amount": breakdown.taxable_amount,
                "cgst_amount": breakdown.cgst_amount,
                "sgst_amount": breakdown.sgst_amount,
                "igst_amount": breakdown.igst_amount,
            },
        )
        if rows:
            for line in breakdown.lines:
                OrderItem.objects.filter(id=line.item_id).update(
                    taxable_amount=line.taxable_amount,
                    gst_amount=line.gst_amount,
                    updated_at=timezone.now(),
                )
        return bool(rows)


def _is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True

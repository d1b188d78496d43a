"""Order service layer (Use Cases).

Orchestrates guest checkout, forward status changes, and the
code-verified cancellation / return flow.  Every mutation is a
conditional transition on the repository; a zero row count means the
order moved underneath us and is reported as ``InvalidOrderStatus``.

Business rules enforced:
- A checkout starts as CHECKED_OUT / ``initiated``.
- Status only advances CONFIRMED -> PICKED_UP -> DELIVERED, and only
  for paid orders.
- Cancellation from CONFIRMED or PICKED_UP, return request from
  DELIVERED, both gated by a single-use emailed code with an attempt
  limit and a lockout window.
- Unknown order and wrong email are indistinguishable to the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from modules.orders.constants import (
    CANCELLABLE_STATES,
    OTP_LENGTH,
    VALID_TRANSITIONS,
    CancellationStatus,
    OrderStatus,
    PaymentStatus,
)
from modules.orders.exceptions import (
    InvalidOrderStatus,
    OrderNotFound,
    OtpExpired,
    OtpInvalid,
    OtpLockedOut,
    OtpNotIssued,
)
from modules.orders.transitions import (
    ADVANCE_STATUS,
    CANCEL,
    ISSUE_OTP,
    RECORD_OTP_FAILURE,
    REQUEST_RETURN,
)

if TYPE_CHECKING:
    from modules.notifications.services import EmailNotifier
    from modules.orders.dtos import CheckoutDTO
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository

logger = structlog.get_logger(__name__)


def hash_code(order_id: UUID | str, code: str) -> str:
    return hashlib.sha256(f"{order_id}:{code}".encode()).hexdigest()


class OrderService:
    """Application service for Order use-cases.

    Receives its repository and notifier via constructor injection (DIP).
    """

    def __init__(
        self,
        order_repository: IOrderRepository,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        self._order_repo = order_repository
        self._notifier = notifier

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_checkout(self, dto: CheckoutDTO) -> Order:
        """Persist a guest checkout as CHECKED_OUT / ``initiated``."""
        order = self._order_repo.create(dto)
        logger.info("order.checkout_created", order_id=str(order.id))
        return self._order_repo.get_by_id(str(order.id)) or order

    def advance_status(
        self,
        order_id: UUID,
        new_status: str,
        actor: str = "system",
        notes: str = "",
    ) -> Order:
        """Move a paid order forward along the fulfilment path.

        Raises:
            OrderNotFound: order does not exist.
            InvalidOrderStatus: ``new_status`` is not the next step, or the
                order changed concurrently.
        """
        if new_status in {OrderStatus.CANCELLED, OrderStatus.RETURN_REQUESTED}:
            raise InvalidOrderStatus(f"Cannot advance an order to {new_status}.")
        sources = [
            source
            for source, targets in VALID_TRANSITIONS.items()
            if new_status in targets and source in ADVANCE_STATUS.expected["order_status"]
        ]
        if not sources:
            raise InvalidOrderStatus(f"Cannot advance an order to {new_status}.")

        rows = self._order_repo.transition(
            order_id,
            ADVANCE_STATUS,
            {"order_status": new_status},
            actor=actor,
            notes=notes,
            order_status=sources,
        )
        order = self.get_order(str(order_id))
        if not rows:
            logger.warning(
                "order.invalid_transition",
                order_id=str(order_id),
                current_status=order.order_status,
                new_status=new_status,
            )
            raise InvalidOrderStatus(
                f"Cannot transition from {order.order_status} to {new_status}."
            )
        return order

    def issue_cancellation_code(self, order_id: str, email: str) -> datetime:
        """Email a single-use code that authorizes cancel or return.

        Returns the code's expiry.

        Raises:
            OrderNotFound: unknown order or email mismatch.
            OtpLockedOut: too many failed attempts recently.
            InvalidOrderStatus: order is neither cancellable nor returnable.
        """
        order = self.get_guest_order(order_id, email)
        now = timezone.now()
        self._ensure_not_locked(order, now)

        code = f"{secrets.randbelow(10**OTP_LENGTH):0{OTP_LENGTH}d}"
        expires_at = now + timedelta(minutes=settings.ORDER_OTP_TTL_MINUTES)
        rows = self._order_repo.transition(
            order.id,
            ISSUE_OTP,
            {
                "otp_hash": hash_code(order.id, code),
                "otp_expires_at": expires_at,
                "otp_attempts": 0,
                "otp_locked_until": None,
            },
        )
        if not rows:
            raise InvalidOrderStatus(
                f"Order in status {order.order_status} cannot be cancelled or returned."
            )

        if self._notifier is not None:
            self._notifier.send_cancellation_code(order, code, expires_at)
        logger.info("order.cancellation_code_issued", order_id=str(order.id))
        return expires_at

    def cancel_with_code(
        self, order_id: str, email: str, code: str, reason: str = ""
    ) -> Order:
        """Cancel (CONFIRMED / PICKED_UP) or request a return (DELIVERED).

        Raises:
            OrderNotFound: unknown order or email mismatch.
            OtpLockedOut: locked, or this attempt exhausted the limit.
            OtpNotIssued / OtpExpired / OtpInvalid: code problems.
            InvalidOrderStatus: the order moved concurrently.
        """
        order = self.get_guest_order(order_id, email)
        now = timezone.now()
        log = logger.bind(order_id=str(order.id))
        self._ensure_not_locked(order, now)

        if not order.otp_hash:
            raise OtpNotIssued("No verification code has been issued for this order.")
        if order.otp_expires_at is None or order.otp_expires_at <= now:
            raise OtpExpired("Verification code has expired.")

        if not hmac.compare_digest(hash_code(order.id, code), order.otp_hash):
            self._register_failed_attempt(order, now)

        is_return = order.order_status not in CANCELLABLE_STATES
        transition = REQUEST_RETURN if is_return else CANCEL
        new_status = OrderStatus.RETURN_REQUESTED if is_return else OrderStatus.CANCELLED

        with transaction.atomic():
            rows = self._order_repo.transition(
                order.id,
                transition,
                {
                    "order_status": new_status,
                    "cancellation_status": (
                        CancellationStatus.RETURN_REQUESTED
                        if is_return
                        else CancellationStatus.CANCELLED
                    ),
                    "cancellation_reason": reason,
                    "otp_hash": "",
                    "otp_expires_at": None,
                    "otp_attempts": 0,
                },
                actor="guest",
                notes=reason,
                otp_hash=[order.otp_hash],
            )
            if not rows:
                raise InvalidOrderStatus(
                    f"Order in status {order.order_status} can no longer be changed."
                )
            if not is_return:
                self._on_order_cancelled(order)

        log.info("order.cancelled" if not is_return else "order.return_requested")
        return self.get_order(str(order.id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        """Retrieve a single order by ID.

        Raises:
            OrderNotFound: if the order does not exist.
        """
        order = self._order_repo.get_by_id(order_id)
        if not order:
            raise OrderNotFound("Order not found.")
        return order

    def get_guest_order(self, order_id: str, email: str) -> Order:
        """Retrieve an order only if ``email`` owns it."""
        order = self._order_repo.get_by_id(order_id)
        if not order or order.guest_email != (email or "").strip().lower():
            raise OrderNotFound("Order not found.")
        return order

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_not_locked(order: Order, now: datetime) -> None:
        if order.otp_locked_until and order.otp_locked_until > now:
            raise OtpLockedOut(
                "Too many failed attempts. Try again later.",
                locked_until=order.otp_locked_until,
            )

    def _register_failed_attempt(self, order: Order, now: datetime) -> None:
        attempts = order.otp_attempts + 1
        max_attempts = settings.ORDER_OTP_MAX_ATTEMPTS

        if attempts >= max_attempts:
            locked_until = now + timedelta(minutes=settings.ORDER_OTP_LOCKOUT_MINUTES)
            self._order_repo.transition(
                order.id,
                RECORD_OTP_FAILURE,
                {"otp_attempts": 0, "otp_locked_until": locked_until, "otp_hash": ""},
            )
            logger.warning("order.otp_locked", order_id=str(order.id), attempts=attempts)
            raise OtpLockedOut(
                "Too many failed attempts. Try again later.", locked_until=locked_until
            )

        self._order_repo.transition(
            order.id,
            RECORD_OTP_FAILURE,
            {"otp_attempts": F("otp_attempts") + 1},
            otp_attempts=[order.otp_attempts],
        )
        logger.info("order.otp_mismatch", order_id=str(order.id), attempts=attempts)
        raise OtpInvalid(
            "Invalid verification code.", attempts_remaining=max_attempts - attempts
        )

    # ------------------------------------------------------------------
    # Domain Event Hooks
    # ------------------------------------------------------------------

    def _on_order_cancelled(self, order: Order) -> None:
        """Hook: once the cancellation commits, release the carrier booking
        (the refund follows its release) or refund a paid order directly.
        """
        from modules.payments.tasks import refund_cancelled_order
        from modules.shipping.tasks import cancel_carrier_order

        order_id = str(order.id)
        if order.carrier_order_id:
            transaction.on_commit(lambda: cancel_carrier_order.delay(order_id))
            logger.info("order.event.carrier_cancellation_queued", order_id=order_id)
        elif order.payment_status == PaymentStatus.PAID:
            transaction.on_commit(lambda: refund_cancelled_order.delay(order_id))
            logger.info("order.event.refund_queued", order_id=order_id)

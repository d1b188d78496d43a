"""Django ORM implementation of the Order repository.

Satisfies ``IOrderRepository`` using Django's QuerySet API.

Concurrency control is a conditional ``UPDATE``: ``filter(<expected>)
.update(<changes>)`` returns the number of rows it touched, and that
count is the whole outcome.  No ``select_for_update`` is used, so the
same code is safe across any number of web workers and schedulers.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from modules.orders.dtos import AddressDTO, CheckoutDTO
from modules.orders.models import Order, OrderItem, OrderStatusHistory
from modules.orders.repositories.interfaces import IOrderRepository
from modules.orders.transitions import OrderTransition

logger = structlog.get_logger(__name__)


def _address_fields(prefix: str, address: AddressDTO) -> Dict[str, Any]:
    fields = {
        f"{prefix}_first_name": address.first_name,
        f"{prefix}_last_name": address.last_name,
        f"{prefix}_address_line1": address.address_line1,
        f"{prefix}_address_line2": address.address_line2,
        f"{prefix}_city": address.city,
        f"{prefix}_state": address.state,
        f"{prefix}_pincode": address.pincode,
        f"{prefix}_country": address.country,
    }
    if prefix == "shipping":
        fields["shipping_state_code"] = address.state_code
    return fields


class OrderDjangoRepository(IOrderRepository):
    """Concrete Order repository backed by Django ORM."""

    # ------------------------------------------------------------------
    # Create (aggregate root + children)
    # ------------------------------------------------------------------

    @transaction.atomic
    def create(self, draft: CheckoutDTO) -> Order:
        order = Order.objects.create(
            guest_email=draft.guest_email,
            guest_phone=draft.guest_phone,
            shipping_cost=draft.shipping_cost,
            total_amount=draft.total_amount,
            **_address_fields("shipping", draft.shipping),
            **_address_fields("billing", draft.billing_address),
        )

        for item in draft.items:
            OrderItem(
                order=order,
                product_name=item.product_name,
                sku=item.sku,
                hsn=item.hsn,
                unit_price=item.unit_price,
                quantity=item.quantity,
                weight=item.weight,
                length=item.length,
                breadth=item.breadth,
                height=item.height,
                gst_rate=item.gst_rate,
            ).save()

        OrderStatusHistory.objects.create(
            order=order,
            old_status=None,
            new_status=order.order_status,
            notes="Checkout created",
        )

        logger.info(
            "order.created",
            order_id=str(order.id),
            item_count=len(draft.items),
            total_amount=str(order.total_amount),
        )
        return order

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order with eager-loaded items and history.

        Returns ``None`` for non-existent or malformed IDs.
        """
        try:
            return (
                Order.objects.prefetch_related("items", "status_history")
                .filter(id=id)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    def get_payment_status(self, id: str) -> Optional[str]:
        try:
            return (
                Order.objects.filter(id=id)
                .values_list("payment_status", flat=True)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    def transition(
        self,
        order_id: UUID | str,
        transition: OrderTransition,
        changes: Mapping[str, Any],
        *,
        actor: str = "system",
        notes: str = "",
        **narrow: Iterable[Any],
    ) -> int:
        transition.validate(changes)
        log = logger.bind(order_id=str(order_id), transition=transition.name)

        records_history = transition.records_history and "order_status" in changes
        try:
            with transaction.atomic():
                allowed = narrow.get("order_status")
                allowed = list(allowed) if allowed is not None else None
                if records_history and (allowed is None or len(allowed) != 1):
                    # Pin the exact prior status so the history row is truthful.
                    current = (
                        Order.objects.filter(id=order_id)
                        .values_list("order_status", flat=True)
                        .first()
                    )
                    if current is None or (allowed is not None and current not in allowed):
                        log.info("order.transition_missed", reason="state_mismatch")
                        return 0
                    narrow = {**narrow, "order_status": [current]}

                rows = (
                    Order.objects.filter(id=order_id)
                    .filter(transition.guard(**narrow))
                    .update(**changes, updated_at=timezone.now())
                )

                if rows and records_history:
                    old_status = next(iter(narrow["order_status"]))
                    OrderStatusHistory.objects.create(
                        order_id=order_id,
                        old_status=old_status,
                        new_status=changes["order_status"],
                        actor=actor,
                        notes=notes,
                    )
        except (ValueError, ValidationError):
            log.info("order.transition_missed", reason="invalid_id")
            return 0

        if rows:
            log.info("order.transition_applied", fields=sorted(changes))
        else:
            log.info("order.transition_missed", reason="state_mismatch")
        return rows

    def transition_many(
        self,
        order_ids: Iterable[UUID | str],
        transition: OrderTransition,
        changes: Mapping[str, Any],
        **narrow: Iterable[Any],
    ) -> int:
        transition.validate(changes)
        if transition.records_history and "order_status" in changes:
            raise ValueError(f"{transition.name} must be applied one order at a time.")

        ids = list(order_ids)
        if not ids:
            return 0
        rows = (
            Order.objects.filter(id__in=ids)
            .filter(transition.guard(**narrow))
            .update(**changes, updated_at=timezone.now())
        )
        logger.info(
            "order.bulk_transition_applied",
            transition=transition.name,
            requested=len(ids),
            rows=rows,
        )
        return rows

"""Erasure actions on a guest's orders.

``delete_orders`` hard-deletes (line items and history cascade);
``anonymize_orders`` overwrites contact and address fields in place and
keeps amounts, items and tax figures for bookkeeping.
"""

from __future__ import annotations

from typing import Iterable, Optional

from django.db.models import Q

from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.repositories.interfaces import IOrderRepository
from modules.orders.transitions import ANONYMIZE
from modules.retention.constants import ANONYMIZED_EMAIL, ANONYMIZED_NAME, RetentionAction

ANONYMIZED_CHANGES = {
    "guest_email": ANONYMIZED_EMAIL,
    "guest_phone": "",
    "shipping_first_name": ANONYMIZED_NAME,
    "shipping_last_name": "",
    "shipping_address_line1": ANONYMIZED_NAME,
    "shipping_address_line2": "",
    "billing_first_name": ANONYMIZED_NAME,
    "billing_last_name": "",
    "billing_address_line1": ANONYMIZED_NAME,
    "billing_address_line2": "",
    "otp_hash": "",
    "otp_expires_at": None,
    "otp_attempts": 0,
    "otp_locked_until": None,
}


def delete_orders(condition: Q) -> int:
    """Delete orders matching ``condition``; returns the number of orders removed."""
    _, per_model = Order.objects.filter(condition).delete()
    return per_model.get(Order._meta.label, 0)


def anonymize_orders(
    order_ids: Iterable, order_repository: Optional[IOrderRepository] = None
) -> int:
    repo = order_repository or OrderDjangoRepository()
    return repo.transition_many(order_ids, ANONYMIZE, ANONYMIZED_CHANGES)


def erase_orders_for_email(email: str, action: str) -> int:
    if action == RetentionAction.ANONYMIZE:
        ids = list(Order.objects.filter(guest_email=email).values_list("id", flat=True))
        return anonymize_orders(ids)
    return delete_orders(Q(guest_email=email))

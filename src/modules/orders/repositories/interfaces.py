"""Order repository interface.

Extends ``IRepository[Order]`` with the Order Store contract:
checkout creation and conditional transitions.  There is
no unconditional ``update``: every write states the prior state it
expects and reports how many rows matched.

The Service Layer depends exclusively on this contract (DIP).
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional
from uuid import UUID

from modules.core.repositories.interfaces import IRepository

if TYPE_CHECKING:
    from modules.orders.dtos import CheckoutDTO
    from modules.orders.models import Order
    from modules.orders.transitions import OrderTransition


class IOrderRepository(IRepository["Order"]):
    """Repository contract for the Order aggregate root."""

    @abstractmethod
    def create(self, draft: CheckoutDTO) -> Order:
        """Persist a CHECKED_OUT order with its items atomically."""

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order with prefetched items and status history."""

    @abstractmethod
    def get_payment_status(self, id: str) -> Optional[str]:
        """Re-read only ``payment_status``; ``None`` if the order is unknown."""

    @abstractmethod
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
        """Apply ``changes`` only if the row matches ``transition.expected``.

        ``narrow`` further restricts expected values for this call
        (e.g. ``order_status=[current]``).  Returns rows affected (0 or 1).
        """

    @abstractmethod
    def transition_many(
        self,
        order_ids: Iterable[UUID | str],
        transition: OrderTransition,
        changes: Mapping[str, Any],
        **narrow: Iterable[Any],
    ) -> int:
        """Bulk variant of ``transition``; returns rows affected."""

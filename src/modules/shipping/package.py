"""Package metrics for shipment booking.

Resolution order:

1. explicit dimensions supplied by the operator;
2. a single-line order: that item's dimensions, weight x quantity;
3. several lines: summed weights in the default box.

Missing per-item values fall back to the configured defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from django.conf import settings

SOURCE_EXPLICIT = "explicit"
SOURCE_SINGLE_ITEM = "single_item"
SOURCE_DEFAULT_BOX = "default_box"


@dataclass(frozen=True)
class PackageMetrics:
    length: Decimal
    breadth: Decimal
    height: Decimal
    weight: Decimal
    source: str = SOURCE_EXPLICIT

    def as_changes(self) -> dict:
        return {
            "package_length": self.length,
            "package_breadth": self.breadth,
            "package_height": self.height,
            "package_weight": self.weight,
        }


def _default(name: str) -> Decimal:
    return Decimal(str(getattr(settings, name)))


def _or_default(value: Optional[Decimal], name: str) -> Decimal:
    return Decimal(value) if value else _default(name)


def line_weight(item) -> Decimal:
    return _or_default(item.weight, "DEFAULT_ITEM_WEIGHT_KG") * item.quantity


def resolve_package_metrics(
    items: Sequence,
    explicit: Optional[PackageMetrics] = None,
) -> PackageMetrics:
    if explicit is not None:
        return explicit

    if not items:
        raise ValueError("Cannot compute package metrics for an order without items.")

    if len(items) == 1:
        item = items[0]
        return PackageMetrics(
            length=_or_default(item.length, "DEFAULT_PACKAGE_LENGTH_CM"),
            breadth=_or_default(item.breadth, "DEFAULT_PACKAGE_BREADTH_CM"),
            height=_or_default(item.height, "DEFAULT_PACKAGE_HEIGHT_CM"),
            weight=line_weight(item),
            source=SOURCE_SINGLE_ITEM,
        )

    return PackageMetrics(
        length=_default("DEFAULT_PACKAGE_LENGTH_CM"),
        breadth=_default("DEFAULT_PACKAGE_BREADTH_CM"),
        height=_default("DEFAULT_PACKAGE_HEIGHT_CM"),
        weight=sum((line_weight(item) for item in items), Decimal("0")),
        source=SOURCE_DEFAULT_BOX,
    )

"""Unit tests for package metric resolution."""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from modules.shipping.package import (
    SOURCE_DEFAULT_BOX,
    SOURCE_EXPLICIT,
    SOURCE_SINGLE_ITEM,
    PackageMetrics,
    resolve_package_metrics,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _defaults(settings):
    settings.DEFAULT_PACKAGE_LENGTH_CM = "10"
    settings.DEFAULT_PACKAGE_BREADTH_CM = "10"
    settings.DEFAULT_PACKAGE_HEIGHT_CM = "10"
    settings.DEFAULT_ITEM_WEIGHT_KG = "0.5"


def _item(qty=1, weight=None, length=None, breadth=None, height=None):
    dec = lambda v: Decimal(v) if v is not None else None  # noqa: E731
    return SimpleNamespace(
        quantity=qty,
        weight=dec(weight),
        length=dec(length),
        breadth=dec(breadth),
        height=dec(height),
    )


class TestResolvePackageMetrics:
    def test_explicit_metrics_win(self):
        explicit = PackageMetrics(
            length=Decimal("40"), breadth=Decimal("30"), height=Decimal("20"), weight=Decimal("2")
        )
        result = resolve_package_metrics([_item(weight="9")], explicit)
        assert result is explicit
        assert result.source == SOURCE_EXPLICIT

    def test_single_item_uses_its_dimensions(self):
        result = resolve_package_metrics(
            [_item(qty=3, weight="0.4", length="30", breadth="25", height="8")]
        )
        assert result.source == SOURCE_SINGLE_ITEM
        assert (result.length, result.breadth, result.height) == (
            Decimal("30"),
            Decimal("25"),
            Decimal("8"),
        )
        assert result.weight == Decimal("1.2")

    def test_single_item_missing_values_use_defaults(self):
        result = resolve_package_metrics([_item(qty=2)])
        assert result.length == Decimal("10")
        assert result.weight == Decimal("1.0")

    def test_multiple_items_sum_weight_in_default_box(self):
        result = resolve_package_metrics(
            [_item(qty=2, weight="0.4", length="50"), _item(qty=1)]
        )
        assert result.source == SOURCE_DEFAULT_BOX
        assert result.length == Decimal("10")
        assert result.weight == Decimal("1.3")

    def test_no_items(self):
        with pytest.raises(ValueError):
            resolve_package_metrics([])

    def test_as_changes_maps_order_columns(self):
        metrics = PackageMetrics(Decimal("1"), Decimal("2"), Decimal("3"), Decimal("4"))
        assert metrics.as_changes() == {
            "package_length": Decimal("1"),
            "package_breadth": Decimal("2"),
            "package_height": Decimal("3"),
            "package_weight": Decimal("4"),
        }

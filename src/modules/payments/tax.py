"""GST breakdown for receipts.

Unit prices are GST-inclusive.  For each line:

    taxable = gross / (1 + rate / 100)      (rounded to 2 dp)
    gst     = gross - taxable

Intrastate supplies (shipping state code == company state code) split
GST into CGST = round(gst / 2) and SGST = gst - CGST, so the halves
always add back up exactly; interstate supplies carry it all as IGST.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable, List, Optional

from django.conf import settings

if TYPE_CHECKING:
    from modules.orders.models import Order, OrderItem

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineTax:
    item_id: object
    gross: Decimal
    rate: Decimal
    taxable_amount: Decimal
    gst_amount: Decimal


@dataclass(frozen=True)
class TaxBreakdown:
    is_intrastate: bool
    taxable_amount: Decimal
    gst_amount: Decimal
    cgst_amount: Decimal = ZERO
    sgst_amount: Decimal = ZERO
    igst_amount: Decimal = ZERO
    lines: List[LineTax] = field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> TaxBreakdown:
        """Rebuild the summary from amounts already stored on the order."""
        cgst = order.cgst_amount or ZERO
        sgst = order.sgst_amount or ZERO
        igst = order.igst_amount or ZERO
        return cls(
            is_intrastate=order.is_intrastate,
            taxable_amount=order.taxable_amount or ZERO,
            gst_amount=cgst + sgst + igst,
            cgst_amount=cgst,
            sgst_amount=sgst,
            igst_amount=igst,
        )


def compute_line(item: OrderItem, default_rate: Decimal) -> LineTax:
    rate = item.gst_rate if item.gst_rate is not None else default_rate
    gross = money(item.unit_price * item.quantity)
    taxable = money(gross / (1 + rate / Decimal(100)))
    return LineTax(
        item_id=item.id,
        gross=gross,
        rate=rate,
        taxable_amount=taxable,
        gst_amount=gross - taxable,
    )


def compute_tax_breakdown(
    items: Iterable[OrderItem],
    is_intrastate: bool,
    default_rate: Optional[Decimal] = None,
) -> TaxBreakdown:
    rate = default_rate if default_rate is not None else Decimal(str(settings.GST_DEFAULT_RATE))
    lines = [compute_line(item, rate) for item in items]
    taxable = sum((line.taxable_amount for line in lines), ZERO)
    gst = sum((line.gst_amount for line in lines), ZERO)

    if is_intrastate:
        cgst = money(gst / 2)
        return TaxBreakdown(
            is_intrastate=True,
            taxable_amount=taxable,
            gst_amount=gst,
            cgst_amount=cgst,
            sgst_amount=gst - cgst,
            lines=lines,
        )
    return TaxBreakdown(
        is_intrastate=False,
        taxable_amount=taxable,
        gst_amount=gst,
        igst_amount=gst,
        lines=lines,
    )

"""Order DTOs for the Service Layer.

Framework-agnostic data transfer objects using Pydantic v2.
These are the contracts between the API layer (DRF Serializers)
and the Service layer.  DTOs are immutable (``frozen=True``).

- ``AddressDTO``: shipping / billing snapshot.
- ``CheckoutItemDTO``: a single line item as priced by the storefront.
- ``CheckoutDTO``: guest checkout (creates a CHECKED_OUT order).
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator

# ---------------------------------------------------------------------------
# Input DTOs
# ---------------------------------------------------------------------------


class AddressDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str
    last_name: str = ""
    address_line1: str
    address_line2: str = ""
    city: str
    state: str
    pincode: str
    country: str = "India"
    state_code: str = ""

    @field_validator("pincode")
    @classmethod
    def pincode_must_be_six_digits(cls, v: str) -> str:
        v = v.strip()
        if len(v) != 6 or not v.isdigit():
            raise ValueError("Pincode must have 6 digits.")
        return v


class CheckoutItemDTO(BaseModel):
    """Immutable DTO for one checkout line.

    ``unit_price`` is GST-inclusive.  Weight is in kilograms, dimensions
    in centimetres; both are optional and only used to derive package
    metrics for single-item orders.
    """

    model_config = ConfigDict(frozen=True)

    product_name: str
    sku: str
    hsn: str = ""
    unit_price: Decimal
    quantity: int
    weight: Optional[Decimal] = None
    length: Optional[Decimal] = None
    breadth: Optional[Decimal] = None
    height: Optional[Decimal] = None
    gst_rate: Optional[Decimal] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v

    @field_validator("unit_price")
    @classmethod
    def price_must_not_be_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Unit price cannot be negative.")
        return v


class CheckoutDTO(BaseModel):
    """Immutable DTO for guest checkout.

    ``billing`` defaults to the shipping snapshot when omitted.
    """

    model_config = ConfigDict(frozen=True)

    guest_email: EmailStr
    guest_phone: str = ""
    shipping: AddressDTO
    billing: Optional[AddressDTO] = None
    items: List[CheckoutItemDTO]
    shipping_cost: Decimal = Decimal("0.00")

    @field_validator("guest_email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(
        cls, v: List[CheckoutItemDTO]
    ) -> List[CheckoutItemDTO]:
        if not v:
            raise ValueError("Order must have at least one item.")
        return v

    @property
    def billing_address(self) -> AddressDTO:
        return self.billing or self.shipping

    @property
    def total_amount(self) -> Decimal:
        items_total = sum(
            (item.unit_price * item.quantity for item in self.items), Decimal("0.00")
        )
        return items_total + self.shipping_cost

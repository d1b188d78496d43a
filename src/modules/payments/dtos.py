"""Payment DTOs (Pydantic v2, immutable)."""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator


class PaymentProofDTO(BaseModel):
    """Proof of payment submitted by the buyer's browser after checkout."""

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    gateway_order_id: str
    payment_id: str
    signature: str

    @field_validator("gateway_order_id", "payment_id", "signature")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field must not be blank.")
        return v

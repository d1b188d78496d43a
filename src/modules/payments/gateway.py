"""Payment gateway REST client (Razorpay-compatible API).

Thin wrapper over ``requests`` with basic auth and a fixed timeout.
Amounts cross the wire in minor units (paise).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
import structlog
from django.conf import settings

from modules.payments.exceptions import GatewayError

logger = structlog.get_logger(__name__)

CAPTURED = "captured"
REFUND_PROCESSED = "processed"


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: str
    amount_minor: int
    currency: str
    order_id: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_minor) / Decimal(100)

    @property
    def is_captured(self) -> bool:
        return self.status == CAPTURED


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_id: str
    status: str
    amount_minor: int

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_minor) / Decimal(100)

    @property
    def is_processed(self) -> bool:
        return self.status == REFUND_PROCESSED


class PaymentGatewayClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_BASE_URL).rstrip("/") + "/"
        self._auth = (
            key_id if key_id is not None else settings.PAYMENT_GATEWAY_KEY_ID,
            key_secret if key_secret is not None else settings.PAYMENT_GATEWAY_KEY_SECRET,
        )
        self.timeout = timeout or settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS

    @property
    def key_id(self) -> str:
        return self._auth[0]

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{path}",
                auth=self._auth,
                timeout=self.timeout,
                **kwargs,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("payment_gateway.request_failed", path=path, error=str(exc))
            raise GatewayError(f"Gateway request to {path} failed.") from exc

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        data = self._request("GET", f"payments/{payment_id}")
        return GatewayPayment(
            id=data.get("id", payment_id),
            status=data.get("status", ""),
            amount_minor=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            order_id=data.get("order_id"),
        )

    def create_order(
        self, amount: Decimal, currency: str, receipt: str, notes: Dict[str, str]
    ) -> GatewayOrder:
        data = self._request(
            "POST",
            "orders",
            json={
                "amount": to_minor_units(amount),
                "currency": currency,
                "receipt": receipt,
                "notes": notes,
            },
        )
        if not data.get("id"):
            raise GatewayError("Gateway order response carried no id.")
        return GatewayOrder(
            id=data["id"],
            amount_minor=int(data.get("amount", to_minor_units(amount))),
            currency=data.get("currency", currency),
        )

    def refund_payment(self, payment_id: str, amount: Decimal) -> GatewayRefund:
        """Refund ``amount`` of a captured payment.

        The gateway answers ``processed`` for instant refunds and
        ``pending`` otherwise; the final state then arrives by webhook.
        """
        data = self._request(
            "POST",
            f"payments/{payment_id}/refund",
            json={"amount": to_minor_units(amount)},
        )
        if not data.get("id"):
            raise GatewayError("Gateway refund response carried no id.")
        return GatewayRefund(
            id=data["id"],
            payment_id=data.get("payment_id", payment_id),
            status=data.get("status", ""),
            amount_minor=int(data.get("amount", to_minor_units(amount))),
        )

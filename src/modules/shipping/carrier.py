"""Carrier REST client (Shiprocket-compatible API).

Authentication is a bearer token obtained from ``auth/login`` and kept
in a process-wide ``TokenCache``.  The cache refreshes the token
``CARRIER_TOKEN_REFRESH_MARGIN_SECONDS`` before it expires, and only one
thread performs the refresh while the others wait for its result.

Shipment creation is never retried here: a retried create can book the
same parcel twice.  AWB assignment retries belong to the shipment
service, which persists linkage between attempts.  Idempotent reads and
document generation retry transient failures through
``call_with_retry``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
import structlog
from django.conf import settings
from django.utils import timezone

from modules.core.retry import call_with_retry, linear_backoff
from modules.shipping.exceptions import (
    AwbAssignmentError,
    CarrierAuthError,
    CarrierError,
    CarrierRequestError,
)

logger = structlog.get_logger(__name__)

RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, CarrierRequestError) and exc.is_transient


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CarrierToken:
    value: str
    expires_at: datetime

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        return now < self.expires_at - margin


class TokenCache:
    """Holds one bearer token with single-flight refresh."""

    def __init__(self, ttl: timedelta, refresh_margin: timedelta) -> None:
        self.ttl = ttl
        self.refresh_margin = refresh_margin
        self._token: Optional[CarrierToken] = None
        self._lock = threading.Lock()

    def get(self, fetch: Callable[[], str]) -> str:
        token = self._token
        if token and token.is_fresh(timezone.now(), self.refresh_margin):
            return token.value

        with self._lock:
            # Another thread may have refreshed while we waited.
            token = self._token
            now = timezone.now()
            if token and token.is_fresh(now, self.refresh_margin):
                return token.value
            value = fetch()
            self._token = CarrierToken(value=value, expires_at=now + self.ttl)
            logger.info("carrier.token_refreshed", expires_at=self._token.expires_at.isoformat())
            return value

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


_shared_token_cache: Optional[TokenCache] = None
_shared_lock = threading.Lock()


def get_token_cache() -> TokenCache:
    global _shared_token_cache
    with _shared_lock:
        if _shared_token_cache is None:
            _shared_token_cache = TokenCache(
                ttl=timedelta(hours=settings.CARRIER_TOKEN_TTL_HOURS),
                refresh_margin=timedelta(seconds=settings.CARRIER_TOKEN_REFRESH_MARGIN_SECONDS),
            )
        return _shared_token_cache


def reset_token_cache() -> None:
    global _shared_token_cache
    with _shared_lock:
        _shared_token_cache = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreatedShipment:
    shipment_id: str
    carrier_order_id: Optional[str]


@dataclass(frozen=True)
class CourierRate:
    courier_name: str
    rate: Decimal
    etd: str = ""
    estimated_delivery_days: Optional[int] = None


class CarrierClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        token_cache: Optional[TokenCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = (base_url or settings.CARRIER_BASE_URL).rstrip("/") + "/"
        self._email = email if email is not None else settings.CARRIER_EMAIL
        self._password = password if password is not None else settings.CARRIER_PASSWORD
        self.timeout = timeout or settings.CARRIER_TIMEOUT_SECONDS
        self._tokens = token_cache or get_token_cache()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.warning("carrier.request_error", path=path, error=str(exc))
            raise CarrierRequestError(f"Carrier request to {path} failed.") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code == 401 and token:
            self._tokens.invalidate()
        if not resp.ok:
            message = data.get("message") if isinstance(data, dict) else None
            logger.warning("carrier.request_rejected", path=path, status=resp.status_code)
            raise CarrierRequestError(
                message or f"Carrier answered {resp.status_code} for {path}.",
                status_code=resp.status_code,
            )
        return data if isinstance(data, dict) else {"data": data}

    def _authed(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self._send(method, path, token=self.login(), **kwargs)

    def _with_retry(self, fn: Callable[[], Any], operation: str) -> Any:
        return call_with_retry(
            fn,
            max_attempts=RETRY_ATTEMPTS,
            backoff=linear_backoff(RETRY_BASE_DELAY_SECONDS),
            is_retryable=_is_transient,
            sleep=self._sleep,
            operation=operation,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def login(self) -> str:
        return self._tokens.get(self._fetch_token)

    def _fetch_token(self) -> str:
        if not self._email or not self._password:
            raise CarrierAuthError("Carrier credentials are not configured.")

        try:
            data = self._with_retry(
                lambda: self._send(
                    "POST",
                    "auth/login",
                    json={"email": self._email, "password": self._password},
                ),
                operation="carrier.login",
            )
        except CarrierRequestError as exc:
            raise CarrierAuthError("Unable to authenticate with the carrier.") from exc

        token = data.get("token")
        if not token:
            raise CarrierAuthError("Carrier login returned no token.")
        return token

    def create_shipment(self, payload: Dict[str, Any]) -> CreatedShipment:
        data = self._authed("POST", "orders/create/adhoc", json=payload)
        shipment_id = data.get("shipment_id")
        if not shipment_id:
            raise CarrierError("Carrier did not return a shipment id.")
        order_id = data.get("order_id")
        return CreatedShipment(
            shipment_id=str(shipment_id),
            carrier_order_id=str(order_id) if order_id else None,
        )

    def assign_awb(self, shipment_id: str) -> str:
        """Single AWB assignment attempt; callers own the retry policy."""
        data = self._authed(
            "POST", "courier/assign/awb", json={"shipment_id": [shipment_id]}
        )
        if data.get("awb_assign_status") == 1:
            awb = ((data.get("response") or {}).get("data") or {}).get("awb_code")
            if awb:
                return str(awb)
        raise AwbAssignmentError(data.get("message") or "Carrier did not assign an AWB.")

    def generate_label(self, shipment_id: str) -> str:
        data = self._with_retry(
            lambda: self._authed(
                "POST", "courier/generate/label", json={"shipment_id": [shipment_id]}
            ),
            operation="carrier.generate_label",
        )
        if data.get("label_created") == 1 and data.get("label_url"):
            return data["label_url"]
        raise CarrierError("Carrier did not create a label.")

    def schedule_pickup(self, shipment_id: str) -> Dict[str, Any]:
        data = self._with_retry(
            lambda: self._authed(
                "POST", "courier/generate/pickup", json={"shipment_id": [shipment_id]}
            ),
            operation="carrier.schedule_pickup",
        )
        if data.get("pickup_scheduled") == 1 or data.get("pickup_status") == 1:
            return data
        raise CarrierError(data.get("message") or "Carrier did not schedule the pickup.")

    def generate_manifest(self, shipment_ids: Iterable[str]) -> str:
        ids = list(shipment_ids)
        data = self._with_retry(
            lambda: self._authed("POST", "manifests/generate", json={"shipment_id": ids}),
            operation="carrier.generate_manifest",
        )
        url = data.get("manifest_url") or data.get("url")
        if not url:
            raise CarrierError("Carrier did not return a manifest.")
        return url

    def cancel_orders(self, carrier_order_ids: Iterable[str]) -> Dict[str, Any]:
        return self._authed("POST", "orders/cancel", json={"ids": list(carrier_order_ids)})

    def get_rates(
        self, pickup_pincode: str, delivery_pincode: str, weight: Decimal
    ) -> List[CourierRate]:
        data = self._with_retry(
            lambda: self._authed(
                "GET",
                "courier/serviceability/",
                params={
                    "pickup_postcode": pickup_pincode,
                    "delivery_postcode": delivery_pincode,
                    "weight": str(weight),
                    "cod": 0,
                },
            ),
            operation="carrier.get_rates",
        )
        couriers = ((data.get("data") or {}).get("available_courier_companies")) or []
        rates = [
            CourierRate(
                courier_name=c.get("courier_name", ""),
                rate=Decimal(str(c.get("rate", 0))),
                etd=c.get("etd", "") or "",
                estimated_delivery_days=_to_int(c.get("estimated_delivery_days")),
            )
            for c in couriers
        ]
        return sorted(rates, key=lambda r: r.rate)


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

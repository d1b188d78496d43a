"""Unit tests for the carrier client and its token cache.

HTTP is mocked at ``requests.request``; nothing leaves the process.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from modules.shipping.carrier import CarrierClient, TokenCache
from modules.shipping.exceptions import (
    AwbAssignmentError,
    CarrierAuthError,
    CarrierError,
    CarrierRequestError,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _response(status_code: int = 200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = payload if payload is not None else {}
    return resp


@pytest.fixture()
def token_cache():
    return TokenCache(ttl=timedelta(hours=24), refresh_margin=timedelta(seconds=60))


@pytest.fixture()
def client(token_cache):
    return CarrierClient(
        base_url="https://carrier.test/v1/external/",
        email="carrier@example.com",
        password="secret",
        token_cache=token_cache,
        sleep=lambda _: None,
    )


@pytest.fixture()
def mock_request():
    with patch("modules.shipping.carrier.requests.request") as mocked:
        yield mocked


def _login_then(*responses):
    return [_response(200, {"token": "tok-1"}), *responses]


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------


class TestTokenCache:
    def test_fresh_token_is_reused(self, token_cache):
        fetch = MagicMock(return_value="tok")
        assert token_cache.get(fetch) == "tok"
        assert token_cache.get(fetch) == "tok"
        fetch.assert_called_once()

    def test_token_refreshed_inside_margin(self, token_cache):
        fetch = MagicMock(side_effect=["tok-1", "tok-2"])
        with freeze_time("2025-06-01 00:00:00") as frozen:
            assert token_cache.get(fetch) == "tok-1"
            frozen.tick(timedelta(hours=23, minutes=58))
            assert token_cache.get(fetch) == "tok-1"
            frozen.tick(timedelta(minutes=1, seconds=1))
            assert token_cache.get(fetch) == "tok-2"

    def test_invalidate_forces_refresh(self, token_cache):
        fetch = MagicMock(side_effect=["tok-1", "tok-2"])
        token_cache.get(fetch)
        token_cache.invalidate()
        assert token_cache.get(fetch) == "tok-2"

    def test_concurrent_callers_share_one_refresh(self, token_cache):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_fetch():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return "tok"

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(token_cache.get(slow_fetch)))
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        started.wait(timeout=5)
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert results == ["tok"] * 5
        assert len(calls) == 1


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TestLogin:
    def test_missing_credentials(self, token_cache):
        client = CarrierClient(
            base_url="https://carrier.test/", email="", password="", token_cache=token_cache
        )
        with pytest.raises(CarrierAuthError):
            client.login()

    def test_rejected_credentials(self, client, mock_request):
        mock_request.return_value = _response(403, {"message": "Invalid credentials"})
        with pytest.raises(CarrierAuthError):
            client.login()
        assert mock_request.call_count == 1

    def test_unauthorized_response_invalidates_token(self, client, mock_request, token_cache):
        mock_request.side_effect = _login_then(_response(401, {"message": "expired"}))
        with pytest.raises(CarrierRequestError):
            client.cancel_orders(["123"])
        assert token_cache._token is None


class TestCreateShipment:
    def test_returns_ids(self, client, mock_request):
        mock_request.side_effect = _login_then(
            _response(200, {"shipment_id": 991, "order_id": 551})
        )

        created = client.create_shipment({"order_id": "abc"})

        assert created.shipment_id == "991"
        assert created.carrier_order_id == "551"
        _, kwargs = mock_request.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer tok-1"

    def test_server_error_is_not_retried(self, client, mock_request):
        mock_request.side_effect = _login_then(_response(503, {}))
        with pytest.raises(CarrierRequestError):
            client.create_shipment({})
        assert mock_request.call_count == 2


class TestAssignAwb:
    def test_assigned(self, client, mock_request):
        mock_request.side_effect = _login_then(
            _response(200, {"awb_assign_status": 1, "response": {"data": {"awb_code": "AWB123"}}})
        )
        assert client.assign_awb("991") == "AWB123"

    def test_not_assigned(self, client, mock_request):
        mock_request.side_effect = _login_then(
            _response(200, {"awb_assign_status": 0, "message": "No courier"})
        )
        with pytest.raises(AwbAssignmentError, match="No courier"):
            client.assign_awb("991")


class TestDocuments:
    def test_label_retries_transient_failures(self, client, mock_request):
        mock_request.side_effect = _login_then(
            _response(502),
            _response(200, {"label_created": 1, "label_url": "https://cdn.test/label.pdf"}),
        )
        assert client.generate_label("991") == "https://cdn.test/label.pdf"

    def test_label_client_error_is_not_retried(self, client, mock_request):
        mock_request.side_effect = _login_then(_response(422, {"message": "bad shipment"}))
        with pytest.raises(CarrierRequestError):
            client.generate_label("991")
        assert mock_request.call_count == 2

    def test_manifest_without_url(self, client, mock_request):
        mock_request.side_effect = _login_then(_response(200, {"status": 1}))
        with pytest.raises(CarrierError):
            client.generate_manifest(["991"])


class TestRates:
    def test_rates_sorted_cheapest_first(self, client, mock_request):
        mock_request.side_effect = _login_then(
            _response(
                200,
                {
                    "data": {
                        "available_courier_companies": [
                            {"courier_name": "Express", "rate": 140.5, "etd": "Jun 3"},
                            {"courier_name": "Surface", "rate": 62, "estimated_delivery_days": "5"},
                        ]
                    }
                },
            )
        )

        rates = client.get_rates("380001", "110001", Decimal("0.5"))

        assert [r.courier_name for r in rates] == ["Surface", "Express"]
        assert rates[0].rate == Decimal("62")
        assert rates[0].estimated_delivery_days == 5
        assert rates[1].estimated_delivery_days is None

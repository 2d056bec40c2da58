"""Tests for the fleet directory client.

Covers:
- Bypass mode: no URL configured, HTTP skipped entirely
- Known car/shop: payload parsed into records
- 404: unknown car/shop returns None
- Timeout, 5xx, transport errors: fail closed with FleetDirectoryUnavailable
  and a FLEET_LOOKUP_FAILED event
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from railshop.integrations.fleet.client import FleetDirectoryClient, FleetDirectoryUnavailable
from railshop.schemas.events import EventType

# ── Helpers ──────────────────────────────────────────────────────────


def _make_response(payload: dict, status_code: int = 200) -> MagicMock:
    """Build a mock httpx.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.raise_for_status = MagicMock()  # no-op for 200
    return resp


def _client() -> FleetDirectoryClient:
    client = FleetDirectoryClient()
    client._base_url = "https://fleet.example.test"  # not bypass mode
    client._api_key = "test-key"
    return client


def _patched_http(mock_client_cls: MagicMock, get: AsyncMock) -> AsyncMock:
    mock_http = AsyncMock()
    mock_http.get = get
    mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_http)
    mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_http


# ── Bypass mode ──────────────────────────────────────────────────────


class TestBypassMode:
    @pytest.mark.asyncio()
    async def test_no_url_accepts_everything(self):
        client = FleetDirectoryClient()
        client._base_url = ""

        with patch("httpx.AsyncClient") as mock_client_cls:
            car = await client.get_car("gatx 12345")
            shop = await client.get_shop("UP001")

        mock_client_cls.assert_not_called()
        assert car.car_number == "GATX12345"
        assert shop.shop_code == "UP001"


# ── Lookups ──────────────────────────────────────────────────────────


class TestLookups:
    @pytest.mark.asyncio()
    async def test_known_car(self):
        payload = {"car_number": "GATX 12345", "car_mark": "GATX", "car_type": "T105", "lessee_code": "ACME"}
        client = _client()

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_http = _patched_http(mock_client_cls, AsyncMock(return_value=_make_response(payload)))
            car = await client.get_car("GATX12345")

        assert car.car_number == "GATX12345"
        assert car.car_type == "T105"
        assert car.lessee_code == "ACME"
        assert car.raw_response == payload
        url = mock_http.get.await_args.args[0]
        assert url == "https://fleet.example.test/cars/GATX12345"
        assert mock_http.get.await_args.kwargs["headers"] == {"X-API-Key": "test-key"}

    @pytest.mark.asyncio()
    async def test_known_shop(self):
        payload = {"shop_code": "UP001", "shop_name": "North Platte", "region": "WEST", "is_active": False}

        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_http(mock_client_cls, AsyncMock(return_value=_make_response(payload)))
            shop = await _client().get_shop("UP001")

        assert shop.shop_name == "North Platte"
        assert shop.is_active is False

    @pytest.mark.asyncio()
    async def test_unknown_car_returns_none(self, emitted):
        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_http(mock_client_cls, AsyncMock(return_value=_make_response({}, status_code=404)))
            assert await _client().get_car("XXXX000000") is None

        assert emitted == []


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio()
    async def test_timeout_fails_closed(self, emitted):
        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_http(mock_client_cls, AsyncMock(side_effect=httpx.ReadTimeout("slow")))
            with pytest.raises(FleetDirectoryUnavailable) as exc_info:
                await _client().get_car("GATX12345")

        assert exc_info.value.reason == "timeout"
        assert [e.event_type for e in emitted] == [EventType.FLEET_LOOKUP_FAILED]
        assert emitted[0].data["resource"] == "car GATX12345"

    @pytest.mark.asyncio()
    async def test_server_error_fails_closed(self, emitted):
        resp = _make_response({}, status_code=503)
        resp.raise_for_status = MagicMock(
            side_effect=httpx.HTTPStatusError("unavailable", request=MagicMock(), response=resp)
        )

        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_http(mock_client_cls, AsyncMock(return_value=resp))
            with pytest.raises(FleetDirectoryUnavailable) as exc_info:
                await _client().get_shop("UP001")

        assert exc_info.value.reason == "http_503"
        assert emitted[0].data["error"] == "http_503"

    @pytest.mark.asyncio()
    async def test_transport_error_fails_closed(self, emitted):
        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_http(mock_client_cls, AsyncMock(side_effect=httpx.ConnectError("refused")))
            with pytest.raises(FleetDirectoryUnavailable, match="transport_error"):
                await _client().get_car("GATX12345")

        assert len(emitted) == 1

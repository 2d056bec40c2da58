"""Async httpx client for the fleet directory (car master and shop directory)."""

from __future__ import annotations

import logging

import httpx

from railshop.config import settings
from railshop.events.bus import emit
from railshop.integrations.fleet.schemas import CarRecord, ShopRecord
from railshop.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


class FleetDirectoryUnavailable(Exception):
    """The fleet directory could not answer (timeout, 5xx, transport error)."""

    def __init__(self, resource: str, reason: str) -> None:
        super().__init__(f"Fleet directory unavailable for {resource}: {reason}")
        self.resource = resource
        self.reason = reason


class FleetDirectoryClient:
    """Thin async wrapper around the fleet directory lookups.

    Endpoints:
        GET {base_url}/cars/{car_number}
        GET {base_url}/shops/{shop_code}
    Auth: X-API-Key header

    A 404 means the car or shop is unknown. Anything else that prevents an
    answer fails closed with FleetDirectoryUnavailable: an event is never
    created against a car or shop we could not check.
    """

    def __init__(self) -> None:
        self._base_url = settings.fleet.fleet_api_url.rstrip("/")
        self._api_key = settings.fleet.fleet_api_key
        self._timeout = httpx.Timeout(settings.fleet.fleet_timeout, connect=5.0)

    @property
    def _bypass_mode(self) -> bool:
        """Return True if no directory URL is configured (dev/test bypass)."""
        return not self._base_url

    async def get_car(self, car_number: str) -> CarRecord | None:
        """Return the car record, or None if the car master does not know it."""
        if self._bypass_mode:
            logger.debug("Fleet directory bypass mode active, car %s accepted", car_number)
            return CarRecord(car_number=car_number)

        payload = await self._get(f"/cars/{car_number}", resource=f"car {car_number}")
        if payload is None:
            return None
        return CarRecord(
            car_number=str(payload.get("car_number") or car_number),
            car_mark=payload.get("car_mark"),
            car_type=payload.get("car_type"),
            lessee_code=payload.get("lessee_code"),
            raw_response=payload,
        )

    async def get_shop(self, shop_code: str) -> ShopRecord | None:
        """Return the shop record, or None if the shop directory does not know it."""
        if self._bypass_mode:
            logger.debug("Fleet directory bypass mode active, shop %s accepted", shop_code)
            return ShopRecord(shop_code=shop_code)

        payload = await self._get(f"/shops/{shop_code}", resource=f"shop {shop_code}")
        if payload is None:
            return None
        return ShopRecord(
            shop_code=str(payload.get("shop_code") or shop_code),
            shop_name=payload.get("shop_name"),
            region=payload.get("region"),
            is_active=bool(payload.get("is_active", True)),
            raw_response=payload,
        )

    async def _get(self, path: str, *, resource: str) -> dict | None:
        headers = {"X-API-Key": self._api_key} if self._api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(f"{self._base_url}{path}", headers=headers)
                if response.status_code == 404:
                    logger.info("Fleet directory: %s not found", resource)
                    return None
                response.raise_for_status()
                payload: dict = response.json()

        except httpx.TimeoutException:
            logger.warning("Fleet directory timeout for %s", resource)
            await self._report_failure(resource, "timeout")
            raise FleetDirectoryUnavailable(resource, "timeout") from None

        except httpx.HTTPStatusError as exc:
            reason = f"http_{exc.response.status_code}"
            logger.warning("Fleet directory HTTP error %s for %s", exc.response.status_code, resource)
            await self._report_failure(resource, reason)
            raise FleetDirectoryUnavailable(resource, reason) from exc

        except httpx.TransportError as exc:
            logger.warning("Fleet directory transport error for %s: %s", resource, exc)
            await self._report_failure(resource, "transport_error")
            raise FleetDirectoryUnavailable(resource, "transport_error") from exc

        return payload

    async def _report_failure(self, resource: str, reason: str) -> None:
        await emit(SystemEvent(
            event_type=EventType.FLEET_LOOKUP_FAILED,
            data={"integration": "fleet_directory", "resource": resource, "error": reason},
            source_module="integrations.fleet.client",
        ))


# Module-level singleton
fleet_client = FleetDirectoryClient()

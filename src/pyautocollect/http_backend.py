"""aiohttp adapter implementing :class:`~pyautocollect.backend.FleetBackend`."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import aiohttp

from pyautocollect._constants import USER_AGENT
from pyautocollect.backend import coerce_model, coerce_models
from pyautocollect.events import DomainEvent, EventBus
from pyautocollect.exceptions import (
    AutoCollectCollaboratorError,
    AutoCollectError,
    AutoCollectTransportError,
)
from pyautocollect.models import Bin, CollectionRecord, Location, SessionUser

_logger = logging.getLogger(__name__)

BINS_ENDPOINT = "/api/bins"
DRIVER_LOCATIONS_ENDPOINT = "/api/driver/locations"
SYNC_ENDPOINT = "/api/data/sync"
COLLECTIONS_ENDPOINT = "/api/collections"


class HttpFleetBackend:
    """Fleet backend reached over its REST API.

    The host application owns authentication and tells the backend who is
    logged in through :meth:`set_current_user`.

    Usage::

        async with HttpFleetBackend("https://fleet.example") as backend:
            backend.set_current_user({"id": "d1", "type": "driver"})
            bins = await backend.get_bins()
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._external_session = session is not None
        self._http_session = session
        self._bus = bus
        self._current_user: SessionUser | None = None

    async def __aenter__(self) -> HttpFleetBackend:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            raise AutoCollectError("Backend not initialized. Use 'async with HttpFleetBackend(...) as backend:'")
        return self._http_session

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, endpoint: str, payload: Mapping[str, Any] | None = None) -> Any:
        http = self._require_session()
        url = f"{self._base_url}{endpoint}"
        headers = {"accept": "application/json", "user-agent": USER_AGENT}
        body: str | None = None
        if payload is not None:
            headers["content-type"] = "application/json; charset=UTF-8"
            body = json.dumps(payload, separators=(",", ":"))

        _logger.debug("%s %s", method, url)
        try:
            async with http.request(method, url, data=body, headers=headers) as resp:
                text = await resp.text()
                if resp.status not in (200, 201):
                    raise AutoCollectTransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except AutoCollectTransportError:
            raise
        except aiohttp.ClientError as exc:
            raise AutoCollectTransportError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise AutoCollectTransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc

    async def _get_json(self, endpoint: str) -> Any:
        return await self._request("GET", endpoint)

    async def _post_json(self, endpoint: str, payload: Mapping[str, Any]) -> Any:
        return await self._request("POST", endpoint, payload)

    # ------------------------------------------------------------------
    # FleetBackend
    # ------------------------------------------------------------------

    def set_current_user(self, user: SessionUser | Mapping[str, Any] | None) -> None:
        self._current_user = coerce_model(SessionUser, user)

    async def get_current_user(self) -> SessionUser | None:
        return self._current_user

    async def get_bins(self) -> list[Bin]:
        body = await self._get_json(BINS_ENDPOINT)
        items = body.get("bins") if isinstance(body, dict) else body
        return coerce_models(Bin, items if isinstance(items, list) else None)

    async def get_driver_location(self, driver_id: str) -> Location | None:
        body = await self._get_json(DRIVER_LOCATIONS_ENDPOINT)
        locations = body.get("locations") if isinstance(body, dict) else None
        if not isinstance(locations, dict):
            return None
        return coerce_model(Location, locations.get(str(driver_id)))

    async def get_collections(self) -> list[CollectionRecord]:
        body = await self._get_json(SYNC_ENDPOINT)
        data = body.get("data") if isinstance(body, dict) else None
        items = data.get("collections") if isinstance(data, dict) else None
        return coerce_models(CollectionRecord, items if isinstance(items, list) else None)

    async def mark_bin_collected(self, bin_id: str, meta: Mapping[str, Any] | None = None) -> Any:
        """Record a collection of *bin_id* by the current user.

        Raises
        ------
        AutoCollectCollaboratorError
            No user is logged in.
        AutoCollectTransportError
            The backend rejected or did not answer the request.
        """
        user = self._current_user
        if user is None:
            raise AutoCollectCollaboratorError(f"Cannot record collection of bin {bin_id}: no user logged in")
        meta = meta or {}

        payload: dict[str, Any] = {
            "binId": str(bin_id),
            "driverId": user.id,
            "driverName": user.name,
            "timestamp": datetime.now(UTC).isoformat(),
            "autoCollection": bool(meta.get("isAutoCollection", False)),
        }
        try:
            location = await self.get_driver_location(user.id)
        except AutoCollectTransportError:
            _logger.debug("Driver location unavailable for collection payload", exc_info=True)
            location = None
        if location is not None and location.has_coordinates:
            payload["driverLat"] = location.lat
            payload["driverLng"] = location.lng

        result = await self._post_json(COLLECTIONS_ENDPOINT, payload)
        _logger.info("Collection recorded bin=%s driver=%s auto=%s", bin_id, user.id, payload["autoCollection"])
        if self._bus is not None:
            self._bus.dispatch(
                DomainEvent.COLLECTION_RECORDED,
                {"binId": str(bin_id), "driverId": user.id, "autoCollection": payload["autoCollection"]},
            )
        return result

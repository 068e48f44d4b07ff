"""
Source fetchers — one per upstream IMGW endpoint.

═══════════════════════════════════════════════════════════════════════════
CONTRACT
═══════════════════════════════════════════════════════════════════════════

    fetch() -> FetchResult

    • Exactly one outbound GET per call (shared httpx.AsyncClient)
    • Response must be a JSON array whose items carry the source's
      required keys (see schemas.py) — otherwise the whole fetch fails
    • Every foreign field is mapped into RawStationReading here; untyped
      JSON never leaves this module
    • Never raises: HTTP errors, timeouts, transport errors and malformed
      bodies all become FetchResult.failure(...)
    • No retries — the orchestrator owns retry / fallback policy

Timestamps
──────────
IMGW publishes naive local timestamps ("2024-05-01 10:00:00"). They are
interpreted in SOURCE_TIMEZONE (Europe/Warsaw) and stored as aware UTC
datetimes. Explicit offsets are honoured. Unparseable values become None.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from backend.app.core.config import Settings, settings as default_settings
from backend.app.hydro.models import FetchResult, RawStationReading, SourceTag
from backend.app.hydro.schemas import (
    HYDRO2_PAYLOAD,
    HYDRO_PAYLOAD,
    Hydro2Item,
    HydroItem,
)

logger = logging.getLogger(__name__)


def parse_source_timestamp(value: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
    """Parse an upstream timestamp into an aware UTC datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable upstream timestamp: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


class SourceFetcher:
    """
    Base fetcher: HTTP call, shape check, per-item mapping.

    Subclasses provide ``source``, ``payload_adapter`` and ``_to_reading``.
    """

    source: SourceTag
    payload_adapter: TypeAdapter

    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        user_agent: str = "Hydro-API/2.0",
        source_timezone: str = "Europe/Warsaw",
    ):
        self.url = url
        self.timeout = timeout
        self.user_agent = user_agent
        self.tz = ZoneInfo(source_timezone)
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def fetch(self) -> FetchResult:
        start = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        try:
            client = await self._get_client()
            response = await client.get(
                self.url,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            return self._fail(f"timeout after {self.timeout:.0f}s ({type(e).__name__})",
                              duration_ms=elapsed_ms())
        except httpx.HTTPError as e:
            return self._fail(f"transport error: {e}", duration_ms=elapsed_ms())

        if not response.is_success:
            return self._fail(f"HTTP {response.status_code}",
                              http_status=response.status_code, duration_ms=elapsed_ms())

        try:
            payload = response.json()
        except ValueError:
            return self._fail("response body is not valid JSON",
                              http_status=response.status_code, duration_ms=elapsed_ms())

        if not isinstance(payload, list):
            return self._fail(f"expected a JSON array, got {type(payload).__name__}",
                              http_status=response.status_code, duration_ms=elapsed_ms())

        try:
            items = self.payload_adapter.validate_python(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            return self._fail(
                f"malformed payload: {e.error_count()} error(s), first at {location}: {first['msg']}",
                http_status=response.status_code, duration_ms=elapsed_ms(),
            )

        readings: List[RawStationReading] = []
        for item in items:
            reading = self._to_reading(item)
            if reading is None:
                logger.debug("Skipping %s item without station id", self.source.value)
                continue
            readings.append(reading)

        logger.info(
            "Fetched %d stations from %s endpoint",
            len(readings), self.source.value,
            extra={"source": self.source.value, "stations": len(readings),
                   "duration_ms": elapsed_ms()},
        )
        return FetchResult.ok(self.source, readings, duration_ms=elapsed_ms())

    def _fail(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        duration_ms: int = 0,
    ) -> FetchResult:
        logger.warning(
            "Fetch from %s failed: %s", self.source.value, message,
            extra={"source": self.source.value, "http_status": http_status},
        )
        return FetchResult.failure(self.source, message, http_status=http_status,
                                   duration_ms=duration_ms)

    def _to_reading(self, item: Any) -> Optional[RawStationReading]:
        raise NotImplementedError


class HydroFetcher(SourceFetcher):
    """Source A — ``/api/data/hydro``: levels, temperature, ice phenomena."""

    source = SourceTag.HYDRO
    payload_adapter = HYDRO_PAYLOAD

    def _to_reading(self, item: HydroItem) -> Optional[RawStationReading]:
        if not item.station_id:
            return None
        return RawStationReading(
            station_id=item.station_id,
            name=item.name or f"Station {item.station_id}",
            source=self.source,
            river=item.river,
            voivodeship=item.voivodeship,
            water_level=item.water_level,
            water_level_date=parse_source_timestamp(item.water_level_date, self.tz),
            flow=item.flow,
            water_temperature=item.water_temperature,
            water_temperature_date=parse_source_timestamp(item.water_temperature_date, self.tz),
            ice_phenomenon=item.ice_phenomenon,
            overgrowth_phenomenon=item.overgrowth_phenomenon,
            latitude=item.latitude,
            longitude=item.longitude,
        )


class Hydro2Fetcher(SourceFetcher):
    """Source B — ``/api/data/hydro2``: levels, flow with its own date, coordinates."""

    source = SourceTag.HYDRO2
    payload_adapter = HYDRO2_PAYLOAD

    def _to_reading(self, item: Hydro2Item) -> Optional[RawStationReading]:
        if not item.station_id:
            return None
        return RawStationReading(
            station_id=item.station_id,
            name=item.name or f"Station {item.station_id}",
            source=self.source,
            river=item.river,
            voivodeship=item.voivodeship,
            water_level=item.water_level,
            water_level_date=parse_source_timestamp(item.water_level_date, self.tz),
            flow=item.flow,
            flow_date=parse_source_timestamp(item.flow_date, self.tz),
            latitude=item.latitude,
            longitude=item.longitude,
        )


def build_fetchers(
    config: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[SourceTag, SourceFetcher]:
    """Construct both fetchers from settings, optionally sharing one client."""
    config = config or default_settings
    common = dict(
        client=client,
        timeout=config.FETCH_TIMEOUT_SECONDS,
        user_agent=config.USER_AGENT,
        source_timezone=config.SOURCE_TIMEZONE,
    )
    return {
        SourceTag.HYDRO: HydroFetcher(config.HYDRO_API_URL, **common),
        SourceTag.HYDRO2: Hydro2Fetcher(config.HYDRO2_API_URL, **common),
    }

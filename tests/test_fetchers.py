"""
test_fetchers.py — Tests for the hydro / hydro2 source fetchers.

Upstream HTTP is replaced with httpx.MockTransport, so no network access
is needed.

Covers:
    • Field mapping from the Polish upstream keys into RawStationReading
    • Numeric and timestamp coercion (comma decimals, Warsaw local time)
    • Failure typing: non-2xx, timeout, transport error, non-JSON,
      non-list and schema violations
    • Client ownership

Run with:
    pytest tests/test_fetchers.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import httpx

from backend.app.core.config import Settings
from backend.app.hydro.fetchers import (
    Hydro2Fetcher,
    HydroFetcher,
    build_fetchers,
    parse_source_timestamp,
)
from backend.app.hydro.models import SourceTag


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

HYDRO_URL = "https://imgw.test/api/data/hydro"
HYDRO2_URL = "https://imgw.test/api/data/hydro2"
WARSAW = ZoneInfo("Europe/Warsaw")

HYDRO_ITEM = {
    "id_stacji": "150160180",
    "stacja": "Kraków-Bielany",
    "rzeka": "Wisła",
    "województwo": "małopolskie",
    "stan_wody": "245",
    "stan_wody_data_pomiaru": "2024-05-01 10:00:00",
    "temperatura_wody": "12,4",
    "temperatura_wody_data_pomiaru": "2024-05-01 09:00:00",
    "zjawisko_lodowe": "0",
    "zjawisko_zarastania": None,
}

HYDRO2_ITEM = {
    "kod_stacji": "150160180",
    "nazwa_stacji": "KRAKÓW-BIELANY",
    "stan": "250",
    "stan_data": "2024-05-01 11:00:00",
    "przelyw": "101.5",
    "przeplyw_data": "2024-05-01 10:30:00",
    "lat": "50.0406",
    "lon": "19.8808",
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _json_handler(payload, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)
    return handler


def _fetch(fetcher_cls, url, handler):
    async def run():
        client = _client(handler)
        try:
            return await fetcher_cls(url, client=client).fetch()
        finally:
            await client.aclose()
    return asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════
# Timestamps
# ═══════════════════════════════════════════════════════════════════════════

class TestParseSourceTimestamp:
    def test_naive_local_time_converted_to_utc(self):
        parsed = parse_source_timestamp("2024-05-01 10:00:00", WARSAW)
        assert parsed == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def test_winter_offset(self):
        parsed = parse_source_timestamp("2024-01-15 10:00:00", WARSAW)
        assert parsed == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def test_explicit_offset_honoured(self):
        parsed = parse_source_timestamp("2024-05-01T10:00:00Z", WARSAW)
        assert parsed == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_empty_and_garbage(self):
        assert parse_source_timestamp(None, WARSAW) is None
        assert parse_source_timestamp("", WARSAW) is None
        assert parse_source_timestamp("yesterday", WARSAW) is None


# ═══════════════════════════════════════════════════════════════════════════
# Field mapping
# ═══════════════════════════════════════════════════════════════════════════

class TestHydroMapping:
    def test_fields(self):
        result = _fetch(HydroFetcher, HYDRO_URL, _json_handler([HYDRO_ITEM]))
        assert result.success is True
        assert result.source is SourceTag.HYDRO
        reading = result.readings[0]
        assert reading.station_id == "150160180"
        assert reading.name == "Kraków-Bielany"
        assert reading.river == "Wisła"
        assert reading.voivodeship == "małopolskie"
        assert reading.water_level == 245.0
        assert reading.water_level_date == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
        assert reading.water_temperature == 12.4
        assert reading.ice_phenomenon == "0"
        assert reading.overgrowth_phenomenon is None
        assert reading.has_coordinates is False

    def test_null_values_allowed(self):
        item = dict(HYDRO_ITEM, stan_wody=None, stan_wody_data_pomiaru=None)
        reading = _fetch(HydroFetcher, HYDRO_URL, _json_handler([item])).readings[0]
        assert reading.water_level is None
        assert reading.water_level_date is None

    def test_items_without_station_id_skipped(self):
        items = [HYDRO_ITEM, dict(HYDRO_ITEM, id_stacji="")]
        result = _fetch(HydroFetcher, HYDRO_URL, _json_handler(items))
        assert result.success is True
        assert len(result.readings) == 1

    def test_request_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["ua"] = request.headers.get("User-Agent")
            seen["url"] = str(request.url)
            return httpx.Response(200, json=[])

        result = _fetch(HydroFetcher, HYDRO_URL, handler)
        assert result.success is True
        assert result.readings == ()
        assert seen == {"ua": "Hydro-API/2.0", "url": HYDRO_URL}


class TestHydro2Mapping:
    def test_fields(self):
        result = _fetch(Hydro2Fetcher, HYDRO2_URL, _json_handler([HYDRO2_ITEM]))
        reading = result.readings[0]
        assert reading.source is SourceTag.HYDRO2
        assert reading.name == "KRAKÓW-BIELANY"
        assert reading.water_level == 250.0
        assert reading.flow == 101.5
        assert reading.flow_date == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        assert reading.latitude == 50.0406
        assert reading.longitude == 19.8808
        assert reading.has_coordinates is True

    def test_unparseable_number_becomes_none(self):
        item = dict(HYDRO2_ITEM, stan="n/a", lat="")
        reading = _fetch(Hydro2Fetcher, HYDRO2_URL, _json_handler([item])).readings[0]
        assert reading.water_level is None
        assert reading.latitude is None


# ═══════════════════════════════════════════════════════════════════════════
# Failures
# ═══════════════════════════════════════════════════════════════════════════

class TestFailures:
    def test_non_2xx(self):
        result = _fetch(HydroFetcher, HYDRO_URL, _json_handler({"error": "busy"}, status_code=503))
        assert result.success is False
        assert result.http_status == 503
        assert result.error_message == "HTTP 503"
        assert result.readings == ()

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = _fetch(HydroFetcher, HYDRO_URL, handler)
        assert result.success is False
        assert result.http_status is None
        assert result.error_message.startswith("timeout")

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = _fetch(Hydro2Fetcher, HYDRO2_URL, handler)
        assert result.success is False
        assert "transport error" in result.error_message

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        result = _fetch(HydroFetcher, HYDRO_URL, handler)
        assert result.success is False
        assert "not valid JSON" in result.error_message

    def test_non_list_body(self):
        result = _fetch(HydroFetcher, HYDRO_URL, _json_handler({"stations": []}))
        assert result.success is False
        assert result.error_message == "expected a JSON array, got dict"

    def test_missing_required_key(self):
        item = {k: v for k, v in HYDRO_ITEM.items() if k != "stan_wody"}
        result = _fetch(HydroFetcher, HYDRO_URL, _json_handler([item]))
        assert result.success is False
        assert result.error_message.startswith("malformed payload")
        assert "stan_wody" in result.error_message

    def test_hydro_payload_rejected_by_hydro2_fetcher(self):
        result = _fetch(Hydro2Fetcher, HYDRO2_URL, _json_handler([HYDRO_ITEM]))
        assert result.success is False
        assert result.error_message.startswith("malformed payload")


# ═══════════════════════════════════════════════════════════════════════════
# Client lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestClientLifecycle:
    def test_injected_client_not_closed(self):
        async def run():
            client = _client(_json_handler([]))
            fetcher = HydroFetcher(HYDRO_URL, client=client)
            await fetcher.fetch()
            await fetcher.close()
            closed = client.is_closed
            await client.aclose()
            return closed

        assert asyncio.run(run()) is False

    def test_build_fetchers_from_settings(self):
        config = Settings(HYDRO_API_URL=HYDRO_URL, HYDRO2_API_URL=HYDRO2_URL,
                          FETCH_TIMEOUT_SECONDS=3.0)
        fetchers = build_fetchers(config)
        assert isinstance(fetchers[SourceTag.HYDRO], HydroFetcher)
        assert isinstance(fetchers[SourceTag.HYDRO2], Hydro2Fetcher)
        assert fetchers[SourceTag.HYDRO2].url == HYDRO2_URL
        assert fetchers[SourceTag.HYDRO].timeout == 3.0

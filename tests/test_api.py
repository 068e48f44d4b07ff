"""
test_api.py — Tests for the HTTP routes in backend/app/api/v1/stations.py.

The routes are mounted on a bare FastAPI app with the service and the
sync injected through ``app.state``; upstreams are fakes, and the
database is a fake repository or, for the measurement routes, in-memory
SQLite.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.app.api.v1.stations import router
from backend.app.core.config import Settings, get_settings
from backend.app.core.database import init_db
from backend.app.core.errors import register_error_handlers
from backend.app.hydro.models import (
    FetchResult,
    PersistedMeasurement,
    PersistedStation,
    RawStationReading,
    SourceTag,
)
from backend.app.hydro.persistence import PersistenceSync, SqlAlchemyStationRepository
from backend.app.hydro.service import SmartDataService


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime.now(timezone.utc)
TOKEN = "s3cret"


class StaticFetcher:
    def __init__(self, source, readings=None, error=None):
        self.source = source
        self.readings = readings or []
        self.error = error
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.error:
            return FetchResult.failure(self.source, self.error, http_status=500)
        return FetchResult.ok(self.source, self.readings)

    async def close(self):
        pass


class MemoryRepository:
    def __init__(self):
        self.stations = {}
        self.measurements = set()

    async def find_station_by_code(self, station_code):
        return self.stations.get(station_code)

    async def create_station(self, station):
        self.stations[station.station_code] = station
        return station

    async def update_station(self, station_code, changes):
        for column, value in changes.items():
            setattr(self.stations[station_code], column, value)

    async def create_measurement_if_absent(self, measurement):
        key = (measurement.station_code, measurement.measured_at, measurement.source)
        created = key not in self.measurements
        self.measurements.add(key)
        return created

    async def get_station_stats(self, now):
        return {"totalStations": len(self.stations), "activeStations": 0,
                "measurementsToday": len(self.measurements), "rivers": 0}

    async def list_thresholds(self):
        return []


def _reading(station_id, level, source, **kwargs):
    return RawStationReading(
        station_id=station_id, name=f"Station {station_id}", source=source,
        water_level=level, water_level_date=NOW - timedelta(hours=1), **kwargs,
    )


def _build(tmp_path, hydro_error=None, hydro2_error=None):
    config = Settings(
        FETCH_RETRIES=0,
        FETCH_RETRY_BACKOFF_SECONDS=0.0,
        VISIBILITY_FILE=str(tmp_path / "visibility.json"),
        CRON_SECRET_TOKEN=TOKEN,
    )
    service = SmartDataService(config, fetchers={
        SourceTag.HYDRO: StaticFetcher(
            SourceTag.HYDRO, [_reading("1", 100.0, SourceTag.HYDRO), _reading("3", 40.0, SourceTag.HYDRO)],
            error=hydro_error,
        ),
        SourceTag.HYDRO2: StaticFetcher(
            SourceTag.HYDRO2, [_reading("2", 55.0, SourceTag.HYDRO2, latitude=50.0, longitude=19.0),
                               _reading("1", 101.0, SourceTag.HYDRO2, latitude=52.0, longitude=21.0)],
            error=hydro2_error,
        ),
    })
    repository = MemoryRepository()

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router)
    app.state.smart_data_service = service
    app.state.persistence_sync = PersistenceSync(repository)
    app.dependency_overrides[get_settings] = lambda: config
    return app, service, repository


@pytest.fixture
def api(tmp_path):
    app, service, repository = _build(tmp_path)
    with TestClient(app) as client:
        yield client, service, repository


# ═══════════════════════════════════════════════════════════════════════════
# Station reads
# ═══════════════════════════════════════════════════════════════════════════

class TestStationRoutes:
    def test_list(self, api):
        client, _, _ = api
        response = client.get("/api/v1/stations")
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 3
        assert [s["id"] for s in body["data"]] == ["1", "3", "2"]
        assert body["data"][0]["dataFreshness"] == "fresh"

    def test_map(self, api):
        client, _, _ = api
        body = client.get("/api/v1/stations/map").json()
        assert sorted(s["id"] for s in body["data"]) == ["1", "2"]

    def test_by_id(self, api):
        client, _, _ = api
        body = client.get("/api/v1/stations/2").json()
        assert body["data"]["waterLevel"] == 55.0

    def test_unknown_id_is_404(self, api):
        client, _, _ = api
        response = client.get("/api/v1/stations/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_stats(self, api):
        client, _, _ = api
        data = client.get("/api/v1/stats").json()["data"]
        assert data["totalStations"] == 3
        assert data["withCoordinates"] == 2

    def test_total_failure_is_503(self, tmp_path):
        app, _, _ = _build(tmp_path, hydro_error="HTTP 500", hydro2_error="HTTP 500")
        with TestClient(app) as client:
            response = client.get("/api/v1/stations")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "TOTAL_FETCH_FAILURE"


# ═══════════════════════════════════════════════════════════════════════════
# Visibility and coordinates
# ═══════════════════════════════════════════════════════════════════════════

class TestMetadataRoutes:
    def test_hide_station(self, api):
        client, _, _ = api
        response = client.post("/api/v1/stations/visibility",
                               json={"action": "toggle", "stationId": "3"})
        assert response.json()["isVisible"] is False
        assert client.get("/api/v1/stations").json()["count"] == 2
        assert client.get("/api/v1/stations/visibility").json()["hiddenStations"] == 1

    def test_visibility_requires_station_id(self, api):
        client, _, _ = api
        response = client.post("/api/v1/stations/visibility", json={"action": "set"})
        assert response.status_code == 422

    def test_pin_coordinates(self, api):
        client, service, _ = api
        client.get("/api/v1/stations")
        response = client.put("/api/v1/stations/3/coordinates",
                              json={"latitude": 53.0, "longitude": 18.6})
        assert response.json()["data"]["verified"] is True
        assert service.cache.get("merged") is None

        station = client.get("/api/v1/stations/3").json()["data"]
        assert station["latitude"] == 53.0
        assert station["coordinatesSource"] == "cache"


# ═══════════════════════════════════════════════════════════════════════════
# Cache control
# ═══════════════════════════════════════════════════════════════════════════

class TestCacheRoutes:
    def test_refresh_all(self, api):
        client, _, _ = api
        body = client.post("/api/v1/cache/refresh").json()
        assert body == {"success": ["hydro", "hydro2", "merged"], "failed": []}

    def test_refresh_unknown_key_is_422(self, api):
        client, _, _ = api
        response = client.post("/api/v1/cache/refresh", params={"key": "bogus"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_auto_refresh_status(self, api):
        client, _, _ = api
        client.get("/api/v1/stations")
        data = client.get("/api/v1/cache/auto-refresh").json()["data"]
        assert data["expiredEntries"] == []
        assert data["lastRefresh"] is not None

    def test_auto_refresh_requires_token(self, api):
        client, _, _ = api
        assert client.post("/api/v1/cache/auto-refresh").status_code == 401
        response = client.post("/api/v1/cache/auto-refresh",
                               headers={"Authorization": f"Bearer {TOKEN}"})
        assert response.status_code == 200
        assert response.json()["data"]["refreshResults"]["failed"] == []

    def test_stats_clear_cleanup(self, api):
        client, _, _ = api
        client.get("/api/v1/stations")
        assert client.get("/api/v1/cache").json()["totalEntries"] == 3
        assert client.post("/api/v1/cache/cleanup").json()["removed"] == 0
        assert client.post("/api/v1/cache/clear").json()["cleared"] == 3


# ═══════════════════════════════════════════════════════════════════════════
# Sync
# ═══════════════════════════════════════════════════════════════════════════

class TestSyncRoutes:
    def test_missing_token_is_401(self, api):
        client, _, repository = api
        response = client.post("/api/v1/sync")
        assert response.status_code == 401
        assert repository.stations == {}

    def test_wrong_token_is_401(self, api):
        client, _, _ = api
        response = client.post("/api/v1/sync", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

    def test_sync_with_token(self, api):
        client, _, repository = api
        response = client.post("/api/v1/sync", headers={"Authorization": f"Bearer {TOKEN}"})
        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["new_stations"] == 3
        assert stats["synced_measurements"] == 3
        assert stats["data_sources"]["from_hydro"] == 2
        assert stats["data_sources"]["from_hydro2"] == 1
        assert sorted(repository.stations) == ["1", "2", "3"]

    def test_sync_includes_hidden_stations(self, api):
        client, service, repository = api
        service.visibility.set_visibility("3", False)
        client.post("/api/v1/sync", headers={"Authorization": f"Bearer {TOKEN}"})
        assert "3" in repository.stations

    def test_database_stats(self, api):
        client, _, _ = api
        client.post("/api/v1/sync", headers={"Authorization": f"Bearer {TOKEN}"})
        data = client.get("/api/v1/database/stats").json()["data"]
        assert data["totalStations"] == 3


# ═══════════════════════════════════════════════════════════════════════════
# Stored measurements (in-memory SQLite)
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def history_api(tmp_path):
    app, _, _ = _build(tmp_path)
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    repository = SqlAlchemyStationRepository(async_sessionmaker(engine, expire_on_commit=False))

    @asynccontextmanager
    async def lifespan(_app):
        await init_db(engine)
        await repository.create_station(PersistedStation("1", "Station 1", river_name="Wisła"))
        for hours, level in ((1, 150.0), (2, 140.0), (3, 130.0)):
            await repository.create_measurement_if_absent(
                PersistedMeasurement("1", NOW - timedelta(hours=hours), SourceTag.HYDRO, level))
        yield
        await engine.dispose()

    app.router.lifespan_context = lifespan
    app.state.persistence_sync = PersistenceSync(repository, concurrency=1)
    with TestClient(app) as client:
        yield client


class TestMeasurementRoutes:
    def test_history_page(self, history_api):
        response = history_api.get("/api/v1/stations/1/history", params={"limit": 2})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["station"]["name"] == "Station 1"
        assert [m["waterLevel"] for m in data["measurements"]] == [150.0, 140.0]
        assert data["pagination"]["total"] == 3
        assert data["pagination"]["hasMore"] is True
        assert data["statistics"]["averageWaterLevel"] == 140.0

    def test_history_ascending(self, history_api):
        data = history_api.get("/api/v1/stations/1/history", params={"order": "asc"}).json()["data"]
        assert [m["waterLevel"] for m in data["measurements"]] == [130.0, 140.0, 150.0]

    def test_history_unknown_station_is_404(self, history_api):
        response = history_api.get("/api/v1/stations/nope/history")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_recent_measurements(self, history_api):
        data = history_api.get("/api/v1/database/recent-measurements",
                               params={"hours": 24, "limit": 2}).json()["data"]
        assert data["stats"]["totalFound"] == 2
        assert data["stats"]["windowCount"] == 3
        assert data["measurements"][0]["stationName"] == "Station 1"

"""
FastAPI routes: reconciled station data, cache control, visibility and sync.

Provides endpoints to:
    GET  /api/v1/stations                 — all reconciled stations
    GET  /api/v1/stations/map             — stations with coordinates
    GET  /api/v1/stations/alarms          — stations at warning / alarm level
    GET  /api/v1/stations/visibility      — hidden-station list
    POST /api/v1/stations/visibility      — hide / show / toggle a station
    GET  /api/v1/stations/{id}            — one station
    GET  /api/v1/stations/{id}/history    — stored measurements, paginated
    PUT  /api/v1/stations/{id}/coordinates — pin verified coordinates
    GET  /api/v1/stats                    — aggregate counts
    GET  /api/v1/cache                    — cache statistics
    POST /api/v1/cache/refresh            — force refresh (one key or all)
    POST /api/v1/cache/clear              — drop every entry
    POST /api/v1/cache/cleanup            — drop expired entries
    GET  /api/v1/cache/auto-refresh       — expired keys and last update
    POST /api/v1/cache/auto-refresh       — cleanup + refresh (bearer token)
    POST /api/v1/sync                     — persist stations (bearer token)
    GET  /api/v1/database/stats           — relational store counts
    GET  /api/v1/database/recent-measurements — latest stored measurements
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import NotFoundError, UnauthorizedError
from backend.app.hydro.persistence import PersistenceSync, SyncOptions
from backend.app.hydro.service import SmartDataService, compute_stats

router = APIRouter(prefix="/api/v1", tags=["smart-data"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_smart_data_service(request: Request) -> SmartDataService:
    """Process-wide service built in the application lifespan."""
    return request.app.state.smart_data_service


def get_persistence_sync(request: Request) -> PersistenceSync:
    return request.app.state.persistence_sync


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bearer_authorized(config: Settings, authorization: Optional[str]) -> bool:
    """True when a cron token is configured and the header carries it."""
    expected = config.CRON_SECRET_TOKEN
    return bool(expected) and authorization == f"Bearer {expected}"


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class VisibilityRequest(BaseModel):
    """Change the visibility of one station, or restore all of them."""
    action: str = Field("set", pattern="^(set|toggle|show_all)$", examples=["toggle"])
    station_id: Optional[str] = Field(None, alias="stationId", examples=["150160180"])
    visible: bool = Field(True)
    reason: Optional[str] = Field(None, examples=["Sensor under maintenance"])

    model_config = {"populate_by_name": True}


class CoordinatesRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, examples=[52.2297])
    longitude: float = Field(..., ge=-180, le=180, examples=[21.0122])


# ---------------------------------------------------------------------------
# Stations
# ---------------------------------------------------------------------------

@router.get("/stations")
async def list_stations(service: SmartDataService = Depends(get_smart_data_service)):
    stations = await service.get_reconciled_stations()
    return {"status": "success", "count": len(stations), "data": stations,
            "timestamp": _timestamp()}


@router.get("/stations/map")
async def list_map_stations(service: SmartDataService = Depends(get_smart_data_service)):
    stations = await service.get_smart_stations_for_map()
    return {"status": "success", "count": len(stations),
            "data": [s.to_dict() for s in stations], "timestamp": _timestamp()}


@router.get("/stations/alarms")
async def list_alarm_stations(service: SmartDataService = Depends(get_smart_data_service)):
    stations = await service.get_alarm_stations()
    return {"status": "success", "count": len(stations),
            "data": [s.to_dict() for s in stations], "timestamp": _timestamp()}


@router.get("/stations/visibility")
async def visibility_stats(service: SmartDataService = Depends(get_smart_data_service)):
    return service.visibility.stats()


@router.post("/stations/visibility")
async def change_visibility(
    body: VisibilityRequest,
    service: SmartDataService = Depends(get_smart_data_service),
):
    if body.action == "show_all":
        restored = service.visibility.show_all()
        return {"status": "success", "restored": restored}

    if not body.station_id:
        raise ValueError("stationId is required for this action")

    if body.action == "toggle":
        visible = service.visibility.toggle(body.station_id, reason=body.reason)
    else:
        visible = service.visibility.set_visibility(
            body.station_id, body.visible, reason=body.reason,
        ).is_visible
    return {"status": "success", "stationId": body.station_id, "isVisible": visible}


@router.get("/stations/{station_id}")
async def get_station(
    station_id: str,
    service: SmartDataService = Depends(get_smart_data_service),
):
    station = await service.get_smart_station_by_id(station_id)
    if station is None:
        raise NotFoundError("Station", id=station_id)
    return {"status": "success", "data": station.to_dict()}


@router.get("/stations/{station_id}/history")
async def station_history(
    station_id: str,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    sync: PersistenceSync = Depends(get_persistence_sync),
):
    history = await sync.station_history(
        station_id, start=start_date, end=end_date,
        limit=limit, offset=offset, newest_first=order == "desc",
    )
    return {"status": "success", "data": history, "timestamp": _timestamp()}


@router.put("/stations/{station_id}/coordinates")
async def pin_coordinates(
    station_id: str,
    body: CoordinatesRequest,
    service: SmartDataService = Depends(get_smart_data_service),
):
    pinned = service.coordinates.pin(station_id, body.latitude, body.longitude)
    # Reconciled snapshot carries the old coordinates until rebuilt
    service.cache.invalidate("merged")
    return {"status": "success", "data": pinned.to_dict()}


@router.get("/stats")
async def get_stats(service: SmartDataService = Depends(get_smart_data_service)):
    return {"status": "success", "data": await service.get_stats(), "timestamp": _timestamp()}


# ---------------------------------------------------------------------------
# Cache control
# ---------------------------------------------------------------------------

@router.get("/cache")
async def cache_stats(service: SmartDataService = Depends(get_smart_data_service)):
    return service.cache_stats()


@router.post("/cache/refresh")
async def refresh_cache(
    key: Optional[str] = Query(None, description="hydro, hydro2 or merged; all when omitted"),
    service: SmartDataService = Depends(get_smart_data_service),
):
    return await service.refresh(key)


@router.post("/cache/clear")
async def clear_cache(service: SmartDataService = Depends(get_smart_data_service)):
    return {"status": "success", "cleared": service.clear_cache()}


@router.post("/cache/cleanup")
async def cleanup_cache(service: SmartDataService = Depends(get_smart_data_service)):
    return {"status": "success", "removed": service.cleanup_expired()}


@router.get("/cache/auto-refresh")
async def auto_refresh_status(service: SmartDataService = Depends(get_smart_data_service)):
    return {"status": "success", "data": service.auto_refresh_status(), "timestamp": _timestamp()}


@router.post("/cache/auto-refresh")
async def auto_refresh(
    authorization: Optional[str] = Header(None),
    config: Settings = Depends(get_settings),
    service: SmartDataService = Depends(get_smart_data_service),
):
    if config.CRON_SECRET_TOKEN and not _bearer_authorized(config, authorization):
        raise UnauthorizedError()
    return {"status": "success", "data": await service.auto_refresh(), "timestamp": _timestamp()}


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@router.post("/sync")
async def sync_stations(
    batch_size: Optional[int] = Query(None, ge=1, le=1000),
    limit: Optional[int] = Query(None, ge=1),
    authorization: Optional[str] = Header(None),
    config: Settings = Depends(get_settings),
    service: SmartDataService = Depends(get_smart_data_service),
    sync: PersistenceSync = Depends(get_persistence_sync),
) -> Dict[str, Any]:
    expected = config.CRON_SECRET_TOKEN
    options = SyncOptions(
        batch_size=batch_size or config.SYNC_BATCH_SIZE,
        station_limit=limit or config.SYNC_STATION_LIMIT,
        auth_required=bool(expected),
    )
    authorized = _bearer_authorized(config, authorization)
    sync.check_authorized(options, authorized)

    stations = await service.get_smart_stations_data(include_hidden=True)
    report = await sync.run(stations, options, authorized=authorized)
    sources = compute_stats(stations)

    return {
        "status": "success",
        "message": f"Synchronization completed - processed {report.total_stations} unique stations",
        "stats": {
            **report.to_dict(),
            "data_sources": {
                "from_hydro": sources.from_hydro,
                "from_hydro2": sources.from_hydro2,
                "fresh_data": sources.fresh_data,
                "stale_data": sources.stale_data,
                "with_coordinates": sources.with_coordinates,
            },
        },
        "timestamp": _timestamp(),
    }


@router.get("/database/stats")
async def database_stats(sync: PersistenceSync = Depends(get_persistence_sync)):
    return {"status": "success", "data": await sync.database_stats(), "timestamp": _timestamp()}


@router.get("/database/recent-measurements")
async def recent_measurements(
    hours: float = Query(24, gt=0, le=24 * 31),
    limit: int = Query(20, ge=1, le=500),
    sync: PersistenceSync = Depends(get_persistence_sync),
):
    return {"status": "success", "data": await sync.recent_measurements(hours=hours, limit=limit),
            "timestamp": _timestamp()}

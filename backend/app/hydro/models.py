"""
Typed data model for the hydro smart-data pipeline.

═══════════════════════════════════════════════════════════════════════════
RECORD LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    upstream JSON ──► RawStationReading ──► ReconciledStation ──► JSON dict
     (fetchers)        (one per source)      (one per station)    (to_dict)

RawStationReading
    Produced on every upstream fetch, frozen, discarded after the merge.

ReconciledStation
    Exactly one per distinct station id. Carries provenance for every
    attribute that can come from either source, freshness computed from
    the selected water-level timestamp, and the alarm annotation.

PersistedStation / PersistedMeasurement
    Rows of the relational store, referenced through ``stationCode``
    (the upstream station id). Owned by the persistence layer.

StoredMeasurement
    A measurement read back for history views, joined with its station.

JSON field names produced by ``to_dict`` keep the established camelCase
vocabulary so existing dashboard consumers keep working.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SourceTag(str, Enum):
    """Upstream feed a reading came from. HYDRO is the primary source (A)."""
    HYDRO = "hydro"
    HYDRO2 = "hydro2"


class DataFreshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"


class AlarmStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    ALARM = "alarm"
    UNKNOWN = "unknown"


class CoordinatesSource(str, Enum):
    """Provenance of a station's coordinates."""
    HYDRO = "hydro"
    HYDRO2 = "hydro2"
    CACHE = "cache"   # pinned / previously seen coordinates
    NONE = "none"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def has_usable_coordinates(latitude: Optional[float], longitude: Optional[float]) -> bool:
    """True when both coordinates are present and finite."""
    if latitude is None or longitude is None:
        return False
    return math.isfinite(latitude) and math.isfinite(longitude)


# ═══════════════════════════════════════════════════════════════════════════
# Upstream readings
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RawStationReading:
    """A single station as reported by one upstream source."""
    station_id: str
    name: str
    source: SourceTag
    river: Optional[str] = None
    voivodeship: Optional[str] = None
    water_level: Optional[float] = None             # cm
    water_level_date: Optional[datetime] = None     # UTC
    flow: Optional[float] = None                    # m³/s
    flow_date: Optional[datetime] = None            # UTC, hydro2 only
    water_temperature: Optional[float] = None       # °C, hydro only
    water_temperature_date: Optional[datetime] = None
    ice_phenomenon: Optional[str] = None
    overgrowth_phenomenon: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return has_usable_coordinates(self.latitude, self.longitude)

    @property
    def effective_flow_date(self) -> Optional[datetime]:
        """Flow timestamp, falling back to the water-level timestamp."""
        return self.flow_date or self.water_level_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.station_id,
            "name": self.name,
            "river": self.river,
            "voivodeship": self.voivodeship,
            "waterLevel": self.water_level,
            "waterLevelDate": _iso(self.water_level_date),
            "flow": self.flow,
            "flowDate": _iso(self.flow_date),
            "waterTemperature": self.water_temperature,
            "waterTemperatureDate": _iso(self.water_temperature_date),
            "icePhenomenon": self.ice_phenomenon,
            "overgrowthPhenomenon": self.overgrowth_phenomenon,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class FetchResult:
    """
    Outcome of one upstream fetch.

    Fetchers never raise; callers check ``success`` before using
    ``readings``. A failure carries the HTTP status (when the upstream
    answered) and a human-readable message.
    """
    source: SourceTag
    success: bool
    readings: Tuple[RawStationReading, ...] = ()
    error_message: str = ""
    http_status: Optional[int] = None
    duration_ms: int = 0

    @classmethod
    def ok(
        cls,
        source: SourceTag,
        readings: List[RawStationReading],
        duration_ms: int = 0,
    ) -> "FetchResult":
        return cls(source=source, success=True, readings=tuple(readings),
                   duration_ms=duration_ms)

    @classmethod
    def failure(
        cls,
        source: SourceTag,
        message: str,
        http_status: Optional[int] = None,
        duration_ms: int = 0,
    ) -> "FetchResult":
        return cls(source=source, success=False, error_message=message,
                   http_status=http_status, duration_ms=duration_ms)


# ═══════════════════════════════════════════════════════════════════════════
# Reconciled view
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReconciledStation:
    """Canonical, freshness-annotated record for one physical station."""
    station_id: str
    name: str
    source: SourceTag                                # winner of the water level
    data_freshness: DataFreshness
    hours_old: Optional[float]
    river: Optional[str] = None
    voivodeship: Optional[str] = None
    water_level: Optional[float] = None
    water_level_date: Optional[datetime] = None
    flow: Optional[float] = None
    flow_date: Optional[datetime] = None
    flow_source: Optional[SourceTag] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    coordinates_source: CoordinatesSource = CoordinatesSource.NONE
    alarm_status: AlarmStatus = AlarmStatus.UNKNOWN
    alarm_message: str = ""
    warning_level: Optional[float] = None
    alarm_level: Optional[float] = None
    error: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return has_usable_coordinates(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.station_id,
            "name": self.name,
            "waterLevel": self.water_level,
            "waterLevelDate": _iso(self.water_level_date),
            "flow": self.flow,
            "flowDate": _iso(self.flow_date),
            "flowSource": self.flow_source.value if self.flow_source else None,
            "river": self.river,
            "voivodeship": self.voivodeship,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "coordinatesSource": self.coordinates_source.value,
            "source": self.source.value,
            "dataFreshness": self.data_freshness.value,
            "hoursOld": self.hours_old,
            "warningLevel": self.warning_level,
            "alarmLevel": self.alarm_level,
            "alarmStatus": self.alarm_status.value,
            "alarmMessage": self.alarm_message,
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class MapStation:
    """Projection of a ReconciledStation with just what a map marker needs."""
    station_id: str
    name: str
    latitude: float
    longitude: float
    river: Optional[str]
    water_level: Optional[float]
    water_level_date: Optional[datetime]
    data_freshness: DataFreshness
    alarm_status: AlarmStatus
    source: SourceTag

    @classmethod
    def from_station(cls, station: ReconciledStation) -> "MapStation":
        return cls(
            station_id=station.station_id,
            name=station.name,
            latitude=station.latitude,  # type: ignore[arg-type]
            longitude=station.longitude,  # type: ignore[arg-type]
            river=station.river,
            water_level=station.water_level,
            water_level_date=station.water_level_date,
            data_freshness=station.data_freshness,
            alarm_status=station.alarm_status,
            source=station.source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.station_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "river": self.river,
            "waterLevel": self.water_level,
            "waterLevelDate": _iso(self.water_level_date),
            "dataFreshness": self.data_freshness.value,
            "alarmStatus": self.alarm_status.value,
            "source": self.source.value,
        }


@dataclass
class SmartDataStats:
    """Aggregate counts over one reconciled snapshot."""
    total_stations: int = 0
    fresh_data: int = 0
    stale_data: int = 0
    from_hydro: int = 0
    from_hydro2: int = 0
    with_coordinates: int = 0
    alarm_stats: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in AlarmStatus}
    )
    average_data_age: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalStations": self.total_stations,
            "freshData": self.fresh_data,
            "staleData": self.stale_data,
            "fromHydro": self.from_hydro,
            "fromHydro2": self.from_hydro2,
            "withCoordinates": self.with_coordinates,
            "alarmStats": dict(self.alarm_stats),
            "averageDataAge": self.average_data_age,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Cache
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class CacheEntry:
    """
    One cached snapshot. Never mutated in place except for bookkeeping
    counters; a refresh replaces the whole entry.
    """
    key: str
    payload: Tuple[Any, ...]
    fetched_at: datetime
    expires_at: datetime
    hits: int = 0
    stale_served_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def age_seconds(self, now: datetime) -> float:
        return (now - self.fetched_at).total_seconds()


# ═══════════════════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PersistedStation:
    """A row of the ``stations`` table, keyed by ``station_code``."""
    station_code: str
    station_name: str
    river_name: Optional[str] = None
    voivodeship: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    warning_level: Optional[float] = None
    alarm_level: Optional[float] = None
    api_visible: bool = True
    id: Optional[int] = None


@dataclass(frozen=True)
class PersistedMeasurement:
    """A row of the append-only ``measurements`` table."""
    station_code: str
    measured_at: datetime
    source: SourceTag
    water_level: Optional[float] = None
    flow_rate: Optional[float] = None
    temperature: Optional[float] = None


@dataclass(frozen=True)
class StoredMeasurement:
    """A measurement read back from the store, with its station's identity."""
    id: int
    station_code: str
    measured_at: datetime
    source: str
    water_level: Optional[float] = None
    flow_rate: Optional[float] = None
    temperature: Optional[float] = None
    created_at: Optional[datetime] = None
    station_name: Optional[str] = None
    river_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stationId": self.station_code,
            "stationName": self.station_name,
            "riverName": self.river_name,
            "measurementTimestamp": self.measured_at.isoformat(),
            "waterLevel": self.water_level,
            "flowRate": self.flow_rate,
            "temperature": self.temperature,
            "source": self.source,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

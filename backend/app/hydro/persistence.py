"""
Persistence Sync — write reconciled stations and their readings to the relational store.

═══════════════════════════════════════════════════════════════════════════
PER-STATION RULES
═══════════════════════════════════════════════════════════════════════════

    station absent      → create it from the reconciled record
    station present     → name / voivodeship follow upstream when they differ;
                          river, coordinates, warning and alarm levels are
                          filled only while the stored value is null, so a
                          user-edited value is never overwritten
    water level present → append a measurement unless one already exists
                          for (station, timestamp, source)

Execution
─────────
    • Duplicate ids in the input are skipped (first occurrence wins)
    • Stations are processed in batches of ``batch_size``; inside a batch
      they run concurrently, bounded by an asyncio.Semaphore
    • One asyncio.Lock per station id serialises concurrent syncs of the
      same row
    • A failing station is logged, counted and recorded in the report;
      the rest of the batch continues
    • ``auth_required`` without ``authorized`` → UnauthorizedError before
      any write

Reads
─────
    database_stats()         station / measurement counts
    station_history(code)    one page of a station's measurements with
                             statistics over the filtered range
    recent_measurements()    latest stored measurements, all stations
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import distinct, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import (
    NotFoundError,
    PersistenceWriteError,
    UnauthorizedError,
    ValidationError,
)
from backend.app.hydro.cache_store import Clock, utc_now
from backend.app.hydro.db_models import MeasurementRecord, StationRecord
from backend.app.hydro.models import (
    PersistedMeasurement,
    PersistedStation,
    ReconciledStation,
    StoredMeasurement,
)

logger = logging.getLogger(__name__)

ThresholdRow = Tuple[str, Optional[float], Optional[float]]

# Upper bound on one page of station history
MAX_HISTORY_LIMIT = 1000

# Fields upstream may only fill while the stored value is null
_FILL_ONLY_FIELDS = (
    ("river_name", "river"),
    ("latitude", "latitude"),
    ("longitude", "longitude"),
    ("warning_level", "warning_level"),
    ("alarm_level", "alarm_level"),
)


# ═══════════════════════════════════════════════════════════════════════════
# Repository interface
# ═══════════════════════════════════════════════════════════════════════════

class StationRepository(Protocol):
    """Relational store as seen by the sync."""

    async def find_station_by_code(self, station_code: str) -> Optional[PersistedStation]: ...

    async def create_station(self, station: PersistedStation) -> PersistedStation: ...

    async def update_station(self, station_code: str, changes: Dict[str, Any]) -> None: ...

    async def create_measurement_if_absent(self, measurement: PersistedMeasurement) -> bool: ...

    async def get_station_stats(self, now: datetime) -> Dict[str, Any]: ...

    async def list_thresholds(self) -> List[ThresholdRow]: ...

    async def list_measurements(
        self,
        station_code: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[StoredMeasurement]: ...

    async def summarize_measurements(
        self,
        station_code: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Any]: ...

    async def recent_measurements(self, *, since: datetime, limit: int = 20) -> List[StoredMeasurement]: ...

    async def count_measurements(self, *, since: datetime) -> int: ...


def _to_persisted(record: StationRecord) -> PersistedStation:
    return PersistedStation(
        id=record.id,
        station_code=record.station_code,
        station_name=record.station_name,
        river_name=record.river_name,
        voivodeship=record.voivodeship,
        latitude=record.latitude,
        longitude=record.longitude,
        warning_level=record.warning_level,
        alarm_level=record.alarm_level,
        api_visible=record.api_visible,
    )


def _measurement_query():
    return select(MeasurementRecord, StationRecord).join(
        StationRecord, MeasurementRecord.station_id == StationRecord.id,
    )


def _in_range(query, since: Optional[datetime], until: Optional[datetime]):
    if since is not None:
        query = query.where(MeasurementRecord.measured_at >= since)
    if until is not None:
        query = query.where(MeasurementRecord.measured_at <= until)
    return query


def _to_stored(measurement: MeasurementRecord, station: StationRecord) -> StoredMeasurement:
    return StoredMeasurement(
        id=measurement.id,
        station_code=station.station_code,
        measured_at=measurement.measured_at,
        source=measurement.source,
        water_level=measurement.water_level,
        flow_rate=measurement.flow_rate,
        temperature=measurement.temperature,
        created_at=measurement.created_at,
        station_name=station.station_name,
        river_name=station.river_name,
    )


class SqlAlchemyStationRepository:
    """StationRepository over the ``stations`` / ``measurements`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_station_by_code(self, station_code: str) -> Optional[PersistedStation]:
        async with self._session_factory() as session:
            record = await session.scalar(
                select(StationRecord).where(StationRecord.station_code == station_code)
            )
            return _to_persisted(record) if record is not None else None

    async def create_station(self, station: PersistedStation) -> PersistedStation:
        async with self._session_factory() as session:
            record = StationRecord(
                station_code=station.station_code,
                station_name=station.station_name,
                river_name=station.river_name,
                voivodeship=station.voivodeship,
                latitude=station.latitude,
                longitude=station.longitude,
                warning_level=station.warning_level,
                alarm_level=station.alarm_level,
                api_visible=station.api_visible,
            )
            session.add(record)
            await session.commit()
            return _to_persisted(record)

    async def update_station(self, station_code: str, changes: Dict[str, Any]) -> None:
        if not changes:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(StationRecord)
                .where(StationRecord.station_code == station_code)
                .values(**changes)
            )
            await session.commit()

    async def create_measurement_if_absent(self, measurement: PersistedMeasurement) -> bool:
        async with self._session_factory() as session:
            station_id = await session.scalar(
                select(StationRecord.id).where(StationRecord.station_code == measurement.station_code)
            )
            if station_id is None:
                raise LookupError(f"Station {measurement.station_code} does not exist")

            existing = await session.scalar(
                select(MeasurementRecord.id).where(
                    MeasurementRecord.station_id == station_id,
                    MeasurementRecord.measured_at == measurement.measured_at,
                    MeasurementRecord.source == measurement.source.value,
                )
            )
            if existing is not None:
                return False

            session.add(MeasurementRecord(
                station_id=station_id,
                measured_at=measurement.measured_at,
                source=measurement.source.value,
                water_level=measurement.water_level,
                flow_rate=measurement.flow_rate,
                temperature=measurement.temperature,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Inserted concurrently by another process
                await session.rollback()
                return False
            return True

    async def get_station_stats(self, now: datetime) -> Dict[str, Any]:
        day_ago = now - timedelta(hours=24)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

        async with self._session_factory() as session:
            total = await session.scalar(select(func.count(StationRecord.id)))
            active = await session.scalar(
                select(func.count(distinct(MeasurementRecord.station_id)))
                .where(MeasurementRecord.measured_at >= day_ago)
            )
            today = await session.scalar(
                select(func.count(MeasurementRecord.id))
                .where(MeasurementRecord.measured_at >= midnight)
            )
            rivers = await session.scalar(
                select(func.count(distinct(StationRecord.river_name)))
                .where(StationRecord.river_name.is_not(None))
            )

        return {
            "totalStations": total or 0,
            "activeStations": active or 0,
            "measurementsToday": today or 0,
            "rivers": rivers or 0,
        }

    async def list_thresholds(self) -> List[ThresholdRow]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(
                    StationRecord.station_code,
                    StationRecord.warning_level,
                    StationRecord.alarm_level,
                ).where(or_(
                    StationRecord.warning_level.is_not(None),
                    StationRecord.alarm_level.is_not(None),
                ))
            )
            return [(code, warning, alarm) for code, warning, alarm in rows.all()]

    # ── Measurement reads ──

    async def list_measurements(
        self,
        station_code: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[StoredMeasurement]:
        order = MeasurementRecord.measured_at.desc() if newest_first else MeasurementRecord.measured_at.asc()
        query = _in_range(
            _measurement_query().where(StationRecord.station_code == station_code), since, until,
        ).order_by(order, MeasurementRecord.id).limit(limit).offset(offset)

        async with self._session_factory() as session:
            rows = await session.execute(query)
            return [_to_stored(measurement, station) for measurement, station in rows.all()]

    async def summarize_measurements(
        self,
        station_code: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query = _in_range(
            select(
                func.count(MeasurementRecord.id),
                func.avg(MeasurementRecord.water_level),
                func.avg(MeasurementRecord.flow_rate),
                func.min(MeasurementRecord.water_level),
                func.max(MeasurementRecord.water_level),
                func.min(MeasurementRecord.measured_at),
                func.max(MeasurementRecord.measured_at),
            )
            .select_from(MeasurementRecord)
            .join(StationRecord, MeasurementRecord.station_id == StationRecord.id)
            .where(StationRecord.station_code == station_code),
            since, until,
        )
        async with self._session_factory() as session:
            count, avg_level, avg_flow, min_level, max_level, oldest, newest = (
                await session.execute(query)
            ).one()

        return {
            "count": count or 0,
            "avg_water_level": float(avg_level) if avg_level is not None else None,
            "avg_flow_rate": float(avg_flow) if avg_flow is not None else None,
            "min_water_level": min_level,
            "max_water_level": max_level,
            "oldest": oldest,
            "newest": newest,
        }

    async def recent_measurements(self, *, since: datetime, limit: int = 20) -> List[StoredMeasurement]:
        """Most recently stored measurements taken at or after ``since``."""
        query = (
            _in_range(_measurement_query(), since, None)
            .order_by(MeasurementRecord.created_at.desc(), MeasurementRecord.id.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = await session.execute(query)
            return [_to_stored(measurement, station) for measurement, station in rows.all()]

    async def count_measurements(self, *, since: datetime) -> int:
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count(MeasurementRecord.id)).where(MeasurementRecord.measured_at >= since)
            )
        return total or 0


# ═══════════════════════════════════════════════════════════════════════════
# Sync
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SyncOptions:
    batch_size: int = 50
    station_limit: Optional[int] = None
    auth_required: bool = True


@dataclass
class SyncReport:
    """Counters for one sync run."""
    total_stations: int = 0
    new_stations: int = 0
    updated_stations: int = 0
    synced_measurements: int = 0
    skipped_duplicates: int = 0
    batches: int = 0
    errors: int = 0
    error_details: List[Dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0

    def record_error(self, error: PersistenceWriteError) -> None:
        self.errors += 1
        self.error_details.append({
            "stationId": error.details.get("station_id", ""),
            "message": error.message,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_stations": self.total_stations,
            "new_stations": self.new_stations,
            "updated_stations": self.updated_stations,
            "synced_measurements": self.synced_measurements,
            "skipped_duplicates": self.skipped_duplicates,
            "batches": self.batches,
            "errors": self.errors,
            "error_details": list(self.error_details),
            "duration_ms": self.duration_ms,
        }


def _station_changes(stored: PersistedStation, station: ReconciledStation) -> Dict[str, Any]:
    """Column updates for an existing row; user-maintained values are kept."""
    changes: Dict[str, Any] = {}
    if station.name and station.name != stored.station_name:
        changes["station_name"] = station.name
    if station.voivodeship and station.voivodeship != stored.voivodeship:
        changes["voivodeship"] = station.voivodeship
    for column, attr in _FILL_ONLY_FIELDS:
        incoming = getattr(station, attr)
        if getattr(stored, column) is None and incoming is not None:
            changes[column] = incoming
    return changes


def _new_station(station: ReconciledStation) -> PersistedStation:
    return PersistedStation(
        station_code=station.station_id,
        station_name=station.name or f"Station {station.station_id}",
        river_name=station.river,
        voivodeship=station.voivodeship,
        latitude=station.latitude if station.has_coordinates else None,
        longitude=station.longitude if station.has_coordinates else None,
        warning_level=station.warning_level,
        alarm_level=station.alarm_level,
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _rounded(value: Optional[float], digits: int) -> Optional[float]:
    return round(value, digits) if value is not None else None


class PersistenceSync:
    """
    Writes reconciled stations through a StationRepository.

    Usage:
        sync = PersistenceSync(SqlAlchemyStationRepository(get_session_factory()))
        report = await sync.run(stations, SyncOptions(batch_size=50), authorized=True)
    """

    def __init__(
        self,
        repository: StationRepository,
        concurrency: int = 5,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._clock = clock

    @asynccontextmanager
    async def _station_lock(self, station_id: str):
        """Hold the per-station lock; the entry is dropped once nobody uses it."""
        lock = self._locks.setdefault(station_id, asyncio.Lock())
        self._lock_users[station_id] = self._lock_users.get(station_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[station_id] -= 1
            if not self._lock_users[station_id]:
                del self._lock_users[station_id]
                del self._locks[station_id]

    @staticmethod
    def check_authorized(options: SyncOptions, authorized: bool) -> None:
        if options.auth_required and not authorized:
            raise UnauthorizedError("Sync requires a valid bearer token")

    async def run(
        self,
        stations: Sequence[ReconciledStation],
        options: Optional[SyncOptions] = None,
        authorized: bool = False,
    ) -> SyncReport:
        options = options or SyncOptions()
        self.check_authorized(options, authorized)

        start = time.perf_counter()
        report = SyncReport()

        unique: List[ReconciledStation] = []
        seen = set()
        for station in stations:
            if station.station_id in seen:
                report.skipped_duplicates += 1
                logger.debug("Skipping duplicate station %s", station.station_id,
                             extra={"station_id": station.station_id})
                continue
            seen.add(station.station_id)
            unique.append(station)

        if options.station_limit is not None:
            unique = unique[:options.station_limit]
        report.total_stations = len(unique)

        batch_size = max(1, options.batch_size)
        for offset in range(0, len(unique), batch_size):
            batch = unique[offset:offset + batch_size]
            report.batches += 1
            await asyncio.gather(*(self._sync_station(station, report) for station in batch))
            logger.info(
                "Synced batch %d (%d/%d stations, %d errors so far)",
                report.batches, min(offset + batch_size, len(unique)), len(unique), report.errors,
            )

        report.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Sync completed in %dms: %d stations, %d new, %d updated, "
            "%d measurements, %d errors",
            report.duration_ms, report.total_stations, report.new_stations,
            report.updated_stations, report.synced_measurements, report.errors,
            extra={"stations": report.total_stations, "duration_ms": report.duration_ms},
        )
        return report

    async def _sync_station(self, station: ReconciledStation, report: SyncReport) -> None:
        async with self._station_lock(station.station_id), self._semaphore:
            try:
                await self._write_station(station, report)
            except Exception as exc:
                error = PersistenceWriteError(station.station_id, str(exc) or type(exc).__name__)
                report.record_error(error)
                logger.error("Error syncing station %s: %s", station.station_id, exc,
                             extra={"station_id": station.station_id})

    async def _write_station(self, station: ReconciledStation, report: SyncReport) -> None:
        stored = await self.repository.find_station_by_code(station.station_id)
        if stored is None:
            await self.repository.create_station(_new_station(station))
            report.new_stations += 1
            logger.debug("Created station %s (%s) from %s",
                         station.station_id, station.name, station.source.value,
                         extra={"station_id": station.station_id})
        else:
            changes = _station_changes(stored, station)
            if changes:
                await self.repository.update_station(station.station_id, changes)
                report.updated_stations += 1

        if station.water_level is None or station.water_level_date is None:
            return

        created = await self.repository.create_measurement_if_absent(PersistedMeasurement(
            station_code=station.station_id,
            measured_at=station.water_level_date,
            source=station.source,
            water_level=station.water_level,
            flow_rate=station.flow,
        ))
        if created:
            report.synced_measurements += 1

    async def database_stats(self) -> Dict[str, Any]:
        return await self.repository.get_station_stats(self._clock())

    # ═══════════════════════════════════════════════════════════════════
    # Stored measurements
    # ═══════════════════════════════════════════════════════════════════

    async def station_history(
        self,
        station_code: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        newest_first: bool = True,
    ) -> Dict[str, Any]:
        """
        One page of a station's stored measurements plus statistics over
        the whole filtered range.

        Raises NotFoundError for an unknown station and ValidationError
        when ``start`` is after ``end``.
        """
        start, end = _as_utc(start), _as_utc(end)
        if start is not None and end is not None and start > end:
            raise ValidationError("start_date must not be after end_date", field="start_date")

        station = await self.repository.find_station_by_code(station_code)
        if station is None:
            raise NotFoundError("Station", id=station_code)

        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        offset = max(0, offset)
        measurements = await self.repository.list_measurements(
            station_code, since=start, until=end,
            limit=limit, offset=offset, newest_first=newest_first,
        )
        summary = await self.repository.summarize_measurements(station_code, since=start, until=end)
        total = summary["count"]

        return {
            "station": {
                "id": station.station_code,
                "name": station.station_name,
                "river": station.river_name,
                "voivodeship": station.voivodeship,
            },
            "measurements": [m.to_dict() for m in measurements],
            "pagination": {
                "limit": limit,
                "offset": offset,
                "total": total,
                "hasMore": offset + len(measurements) < total,
            },
            "statistics": {
                "totalMeasurements": total,
                "averageWaterLevel": _rounded(summary["avg_water_level"], 1),
                "averageFlowRate": _rounded(summary["avg_flow_rate"], 2),
                "minWaterLevel": summary["min_water_level"],
                "maxWaterLevel": summary["max_water_level"],
                "dataRange": {
                    "oldest": _isoformat(summary["oldest"]),
                    "newest": _isoformat(summary["newest"]),
                },
            },
            "filters": {
                "startDate": _isoformat(start),
                "endDate": _isoformat(end),
                "order": "desc" if newest_first else "asc",
            },
        }

    async def recent_measurements(self, hours: float = 24, limit: int = 20) -> Dict[str, Any]:
        """Latest stored measurements across all stations."""
        now = self._clock()
        since = now - timedelta(hours=hours)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

        measurements = await self.repository.recent_measurements(since=since, limit=limit)
        today = await self.repository.count_measurements(since=midnight)
        in_window = await self.repository.count_measurements(since=since)
        timestamps = [m.measured_at for m in measurements]

        return {
            "measurements": [m.to_dict() for m in measurements],
            "stats": {
                "totalFound": len(measurements),
                "todayCount": today,
                "windowCount": in_window,
                "hours": hours,
                "oldestMeasurement": _isoformat(min(timestamps)) if timestamps else None,
                "newestMeasurement": _isoformat(max(timestamps)) if timestamps else None,
            },
        }

"""
Smart Data Service — cache-through orchestration of fetch → reconcile → annotate.

═══════════════════════════════════════════════════════════════════════════
READ PATH
═══════════════════════════════════════════════════════════════════════════

    get_smart_stations_data()
      │
      ├─ "merged" entry fresh? ──────────────────────────► return (hit)
      │
      └─ coalesce("merged")                    one refresh per process
           │
           ├─ gather(source "hydro", source "hydro2")
           │     each: fresh source entry? → use it
           │           else coalesce(source) → fetch with retry/backoff
           │                ok   → cache (SOURCE_CACHE_TTL), seed coords
           │                fail → left out of the merge
           │
           ├─ both sources failed → TotalFetchFailure
           │       ├─ cached merged snapshot? → serve it stale
           │       ├─ cached source snapshots? → reconcile those, stale
           │       └─ nothing cached → propagate
           │   (stale results carry ``error`` on every station)
           │
           └─ reconcile → cache "merged"
                 MERGED_CACHE_TTL, or SOURCE_CACHE_TTL when one
                 source was missing

    every read: visibility filter → alarm annotation

The cache holds reconciled stations before annotation, so threshold and
visibility changes apply on the next read without a refetch.

A partial upstream failure never raises.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import TotalFetchFailure, UpstreamFetchError, ValidationError
from backend.app.hydro.alarms import ThresholdRegistry, annotate_station
from backend.app.hydro.cache_store import CacheStore, Clock
from backend.app.hydro.coordinates import CoordinatesCache
from backend.app.hydro.fetchers import SourceFetcher, build_fetchers
from backend.app.hydro.models import (
    AlarmStatus,
    DataFreshness,
    FetchResult,
    MapStation,
    RawStationReading,
    ReconciledStation,
    SmartDataStats,
    SourceTag,
)
from backend.app.hydro.reconciler import ReconciliationAmbiguity, reconcile
from backend.app.hydro.visibility import StationVisibilityStore

logger = logging.getLogger(__name__)

MERGED_KEY = "merged"
CACHE_KEYS = (SourceTag.HYDRO.value, SourceTag.HYDRO2.value, MERGED_KEY)


@dataclass
class SourceStatus:
    """Last known outcome of one upstream source."""
    source: SourceTag
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    stations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "lastSuccess": self.last_success.isoformat() if self.last_success else None,
            "lastError": self.last_error,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "lastDurationMs": self.last_duration_ms,
            "stations": self.stations,
        }


@dataclass
class SourceSnapshot:
    """Readings handed to the reconciler for one source; None when it failed."""
    readings: Optional[Sequence[RawStationReading]]
    error: Optional[str] = None


def compute_stats(stations: Sequence[ReconciledStation]) -> SmartDataStats:
    """Aggregate counts in a single pass."""
    stats = SmartDataStats(total_stations=len(stations))
    age_total = 0.0
    aged = 0
    for station in stations:
        if station.data_freshness is DataFreshness.FRESH:
            stats.fresh_data += 1
        else:
            stats.stale_data += 1
        if station.source is SourceTag.HYDRO:
            stats.from_hydro += 1
        else:
            stats.from_hydro2 += 1
        if station.has_coordinates:
            stats.with_coordinates += 1
        stats.alarm_stats[station.alarm_status.value] += 1
        if station.hours_old is not None:
            age_total += station.hours_old
            aged += 1
    stats.average_data_age = round(age_total / aged, 2) if aged else 0.0
    return stats


class SmartDataService:
    """
    Owns the cache, fetchers and station metadata for one process.

    Usage:
        service = SmartDataService.from_settings(settings, client=http_client)
        stations = await service.get_smart_stations_data()
        stats = await service.get_smart_data_stats()
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        cache: Optional[CacheStore] = None,
        fetchers: Optional[Dict[SourceTag, SourceFetcher]] = None,
        coordinates: Optional[CoordinatesCache] = None,
        thresholds: Optional[ThresholdRegistry] = None,
        visibility: Optional[StationVisibilityStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or default_settings
        if cache is None:
            cache_kwargs: Dict[str, Any] = {"stale_grace_seconds": self.config.CACHE_STALE_GRACE_SECONDS}
            if clock is not None:
                cache_kwargs["clock"] = clock
            cache = CacheStore(**cache_kwargs)
        self.cache = cache
        self.fetchers = fetchers if fetchers is not None else build_fetchers(self.config)
        self.coordinates = coordinates or CoordinatesCache()
        self.thresholds = thresholds or ThresholdRegistry()
        self.visibility = visibility or StationVisibilityStore(self.config.VISIBILITY_FILE)
        self.source_status: Dict[SourceTag, SourceStatus] = {
            tag: SourceStatus(tag) for tag in SourceTag
        }
        self.last_ambiguities: List[ReconciliationAmbiguity] = []

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "SmartDataService":
        """Build a service with fetchers sharing ``client`` and thresholds from file."""
        thresholds = (
            ThresholdRegistry.from_file(config.ALARM_LEVELS_FILE)
            if config.ALARM_LEVELS_FILE else ThresholdRegistry()
        )
        return cls(
            config,
            fetchers=build_fetchers(config, client=client),
            thresholds=thresholds,
            visibility=StationVisibilityStore(config.VISIBILITY_FILE),
        )

    async def close(self) -> None:
        for fetcher in self.fetchers.values():
            await fetcher.close()

    # ═══════════════════════════════════════════════════════════════════
    # Upstream access
    # ═══════════════════════════════════════════════════════════════════

    async def _fetch_with_retry(self, tag: SourceTag) -> FetchResult:
        """One fetch plus FETCH_RETRIES retries with exponential backoff."""
        fetcher = self.fetchers[tag]
        attempts = 1 + max(0, self.config.FETCH_RETRIES)
        timeout = self.config.FETCH_TIMEOUT_SECONDS
        result = FetchResult.failure(tag, "not attempted")

        for attempt in range(attempts):
            try:
                result = await asyncio.wait_for(fetcher.fetch(), timeout=timeout)
            except asyncio.TimeoutError:
                result = FetchResult.failure(tag, f"timeout after {timeout:g}s")

            if result.success:
                break
            if attempt + 1 < attempts:
                delay = self.config.FETCH_RETRY_BACKOFF_SECONDS * (2 ** attempt)
                logger.warning(
                    "Fetch from %s failed: %s, retrying in %.1f seconds (attempt %d/%d)",
                    tag.value, result.error_message, delay, attempt + 1, attempts,
                    extra={"source": tag.value},
                )
                await asyncio.sleep(delay)

        self._record_status(result)
        return result

    def _record_status(self, result: FetchResult) -> None:
        status = self.source_status[result.source]
        status.last_duration_ms = result.duration_ms
        if result.success:
            status.last_success = self.cache.now()
            status.stations = len(result.readings)
        else:
            status.last_error = result.error_message
            status.last_error_at = self.cache.now()

    async def _refresh_source(self, tag: SourceTag) -> FetchResult:
        result = await self._fetch_with_retry(tag)
        if result.success:
            self.cache.set(tag.value, result.readings, ttl=self.config.SOURCE_CACHE_TTL_SECONDS)
            if tag is SourceTag.HYDRO2:
                self.coordinates.seed(result.readings, now=self.cache.now())
        return result

    async def _source_snapshot(self, tag: SourceTag) -> SourceSnapshot:
        key = tag.value
        entry = self.cache.get_fresh(key)
        if entry is not None:
            return SourceSnapshot(readings=entry.payload)

        result = await self.cache.coalesce(key, lambda: self._refresh_source(tag))
        if result.success:
            return SourceSnapshot(readings=result.readings)

        error = UpstreamFetchError(tag.value, result.error_message, http_status=result.http_status)
        logger.warning("%s; reconciling without it", error.message,
                       extra={"source": key, "http_status": result.http_status})
        return SourceSnapshot(readings=None, error=error.message)

    def _reconcile(
        self,
        primary: Optional[Sequence[RawStationReading]],
        secondary: Optional[Sequence[RawStationReading]],
    ) -> Tuple[ReconciledStation, ...]:
        result = reconcile(
            primary,
            secondary,
            now=self.cache.now(),
            freshness_threshold_hours=self.config.FRESHNESS_THRESHOLD_HOURS,
            pinned_coordinates=self.coordinates.snapshot(),
        )
        self.last_ambiguities = result.ambiguities
        return tuple(result.stations)

    async def _refresh_merged(self) -> Tuple[ReconciledStation, ...]:
        primary, secondary = await asyncio.gather(
            self._source_snapshot(SourceTag.HYDRO),
            self._source_snapshot(SourceTag.HYDRO2),
        )
        if primary.readings is None and secondary.readings is None:
            raise TotalFetchFailure([e for e in (primary.error, secondary.error) if e])

        stations = self._reconcile(primary.readings, secondary.readings)
        # A single-source result is rebuilt as soon as the failed source is due again
        degraded = primary.readings is None or secondary.readings is None
        ttl = self.config.SOURCE_CACHE_TTL_SECONDS if degraded else self.config.MERGED_CACHE_TTL_SECONDS
        entry = self.cache.set(MERGED_KEY, stations, ttl=ttl)
        return entry.payload

    @staticmethod
    def _stale_message(fetched_at: datetime) -> str:
        return f"Upstream refresh failed, serving data cached at {fetched_at.isoformat()}"

    def _reconcile_stale_sources(self) -> Optional[Tuple[ReconciledStation, ...]]:
        """Rebuild from expired source entries when no merged snapshot is left."""
        entries = {tag: self.cache.get(tag.value) for tag in SourceTag}
        cached = [entry for entry in entries.values() if entry is not None]
        if not cached:
            return None

        for entry in cached:
            self.cache.mark_stale_served(entry.key)
        hydro, hydro2 = entries[SourceTag.HYDRO], entries[SourceTag.HYDRO2]
        stations = self._reconcile(
            hydro.payload if hydro is not None else None,
            hydro2.payload if hydro2 is not None else None,
        )
        message = self._stale_message(min(entry.fetched_at for entry in cached))
        return tuple(replace(station, error=message) for station in stations)

    async def _merged_snapshot(self) -> Tuple[ReconciledStation, ...]:
        entry = self.cache.get_fresh(MERGED_KEY)
        if entry is not None:
            return entry.payload

        try:
            return await self.cache.coalesce(MERGED_KEY, self._refresh_merged)
        except TotalFetchFailure as exc:
            stale = self.cache.get(MERGED_KEY)
            if stale is not None:
                self.cache.mark_stale_served(MERGED_KEY)
                logger.warning(
                    "All sources failed, serving stale snapshot (%d stations)", len(stale.payload),
                    extra={"cache_key": MERGED_KEY, "errors": exc.failures},
                )
                message = self._stale_message(stale.fetched_at)
                return tuple(replace(station, error=message) for station in stale.payload)

            rebuilt = self._reconcile_stale_sources()
            if rebuilt is None:
                logger.error("All sources failed and no cached data: %s", exc.failures)
                raise
            logger.warning(
                "All sources failed, rebuilt %d stations from cached source snapshots", len(rebuilt),
                extra={"errors": exc.failures},
            )
            return rebuilt

    def _present(
        self,
        stations: Sequence[ReconciledStation],
        include_hidden: bool = False,
    ) -> List[ReconciledStation]:
        if not include_hidden:
            stations = self.visibility.filter_visible(stations)
        return [annotate_station(station, self.thresholds) for station in stations]

    # ═══════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════

    async def get_smart_stations_data(self, include_hidden: bool = False) -> List[ReconciledStation]:
        """All reconciled stations, alarm-annotated, hidden stations removed."""
        return self._present(await self._merged_snapshot(), include_hidden=include_hidden)

    async def get_smart_data_stats(self) -> SmartDataStats:
        return compute_stats(await self.get_smart_stations_data())

    async def get_smart_stations_for_map(self) -> List[MapStation]:
        stations = await self.get_smart_stations_data()
        return [MapStation.from_station(s) for s in stations if s.has_coordinates]

    async def get_smart_station_by_id(self, station_id: str) -> Optional[ReconciledStation]:
        for station in await self.get_smart_stations_data():
            if station.station_id == station_id:
                return station
        return None

    async def get_alarm_stations(self) -> List[ReconciledStation]:
        """Stations currently at warning or alarm level."""
        return [
            s for s in await self.get_smart_stations_data()
            if s.alarm_status in (AlarmStatus.WARNING, AlarmStatus.ALARM)
        ]

    async def get_reconciled_stations(self) -> List[Dict[str, Any]]:
        return [station.to_dict() for station in await self.get_smart_stations_data()]

    async def get_stats(self) -> Dict[str, Any]:
        return (await self.get_smart_data_stats()).to_dict()

    # ═══════════════════════════════════════════════════════════════════
    # Cache management
    # ═══════════════════════════════════════════════════════════════════

    async def refresh(self, key: Optional[str] = None) -> Dict[str, List[str]]:
        """
        Force a refresh of one cache key, or of all of them.

        Source keys are always refetched. "merged" is rebuilt from the
        source snapshots, fetching those that are expired.
        """
        if key is not None and key not in CACHE_KEYS:
            raise ValidationError(f"Unknown cache key: {key}", field="key", allowed=list(CACHE_KEYS))

        keys = [key] if key is not None else list(CACHE_KEYS)
        report: Dict[str, List[str]] = {"success": [], "failed": []}

        for name in keys:
            if name == MERGED_KEY:
                try:
                    await self.cache.coalesce(MERGED_KEY, self._refresh_merged)
                except TotalFetchFailure:
                    report["failed"].append(name)
                else:
                    report["success"].append(name)
                continue

            tag = SourceTag(name)
            result = await self.cache.coalesce(name, lambda tag=tag: self._refresh_source(tag))
            report["success" if result.success else "failed"].append(name)

        logger.info("Cache refresh finished: success=%s failed=%s",
                    report["success"], report["failed"])
        return report

    def clear_cache(self) -> int:
        return self.cache.clear_all()

    def cleanup_expired(self) -> int:
        return self.cache.cleanup_expired()

    def cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        stats["sources"] = {tag.value: s.to_dict() for tag, s in self.source_status.items()}
        stats["coordinates"] = self.coordinates.stats()
        stats["ambiguities"] = [a.to_dict() for a in self.last_ambiguities]
        return stats

    async def auto_refresh(self) -> Dict[str, Any]:
        """Scheduled maintenance: drop expired entries, then refresh every key."""
        cleaned = self.cleanup_expired()
        results = await self.refresh()
        return {
            "cleanedExpiredEntries": cleaned,
            "refreshResults": results,
            "currentStats": self.cache.stats(),
        }

    def auto_refresh_status(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        return {
            "stats": stats,
            "expiredEntries": self.cache.expired_keys(),
            "lastRefresh": stats["lastUpdate"],
        }

    # ═══════════════════════════════════════════════════════════════════
    # Station metadata
    # ═══════════════════════════════════════════════════════════════════

    async def load_thresholds_from_store(self, repository) -> int:
        """Merge warning/alarm levels maintained in the relational store."""
        rows = await repository.list_thresholds()
        loaded = self.thresholds.update_many(rows)
        logger.info("Loaded alarm levels for %d stations from the database", loaded)
        return loaded

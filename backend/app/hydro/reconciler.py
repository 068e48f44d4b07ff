"""
Freshness reconciler — merge hydro (A) and hydro2 (B) into one record per station.

═══════════════════════════════════════════════════════════════════════════
ALGORITHM
═══════════════════════════════════════════════════════════════════════════

    1. Deduplicate each source by station id (latest water-level timestamp
       wins, first occurrence on ties) and index B by id.
    2. For every station of A that B also reports, pick each attribute
       independently from the source with the newer timestamp for it:

           water level   ← water-level timestamp
           flow          ← flow timestamp (falls back to water-level ts)
           coordinates   ← verified pin > newest source with coordinates
                           > unverified cached pin > none

       A reading whose value is null does not compete for that attribute.
    3. Stations reported by one source only are emitted as that source
       reported them.
    4. hoursOld = now − selected water-level timestamp;
       fresh  ⇔ hoursOld ≤ freshness threshold (default 6 h).
    5. Equal timestamps → A wins. This is a policy choice that keeps the
       output reproducible.

Identity fields (name, river, voivodeship) always come from A; empty A
fields are filled from B. A materially different name or river for the
same id is reported as a ReconciliationAmbiguity and logged.

Output order: A order, then B-only stations in B order.

If one source is None (its fetch failed) the other is used alone; if
both are None a TotalFetchFailure is raised. The function is pure: the
same inputs and ``now`` give identical output.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from backend.app.core.errors import TotalFetchFailure
from backend.app.hydro.coordinates import PinnedCoordinates
from backend.app.hydro.models import (
    CoordinatesSource,
    DataFreshness,
    RawStationReading,
    ReconciledStation,
    SourceTag,
)

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_THRESHOLD_HOURS = 6.0


@dataclass(frozen=True)
class ReconciliationAmbiguity:
    """Same station id, materially different identity in the two sources."""
    station_id: str
    field: str
    primary_value: str
    secondary_value: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "stationId": self.station_id,
            "field": self.field,
            "hydro": self.primary_value,
            "hydro2": self.secondary_value,
        }


@dataclass
class ReconciliationResult:
    stations: List[ReconciledStation]
    ambiguities: List[ReconciliationAmbiguity] = field(default_factory=list)
    sources_used: List[SourceTag] = field(default_factory=list)
    failed_sources: List[SourceTag] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_newer(candidate: Optional[datetime], current: Optional[datetime]) -> bool:
    """Strictly newer; a missing timestamp is older than any real one."""
    if candidate is None:
        return False
    if current is None:
        return True
    return candidate > current


def _dedupe(readings: Sequence[RawStationReading]) -> Dict[str, RawStationReading]:
    """Index by station id, keeping first-seen order and the newest reading."""
    by_id: Dict[str, RawStationReading] = {}
    for reading in readings:
        existing = by_id.get(reading.station_id)
        if existing is None or _is_newer(reading.water_level_date, existing.water_level_date):
            by_id[reading.station_id] = reading
    return by_id


def _pick(
    candidates: Sequence[Tuple[RawStationReading, Optional[datetime]]],
) -> Optional[RawStationReading]:
    """Newest candidate; earlier entries (source A) win ties."""
    winner: Optional[RawStationReading] = None
    winner_ts: Optional[datetime] = None
    for reading, ts in candidates:
        if winner is None or _is_newer(ts, winner_ts):
            winner, winner_ts = reading, ts
    return winner


def _normalise(text: Optional[str]) -> str:
    return " ".join((text or "").split()).casefold()


def _freshness(
    timestamp: Optional[datetime],
    now: datetime,
    threshold_hours: float,
) -> Tuple[DataFreshness, Optional[float]]:
    if timestamp is None:
        return DataFreshness.STALE, None
    age_seconds = max(0.0, (now - timestamp).total_seconds())
    hours_old = round(age_seconds / 3600, 2)
    if age_seconds <= threshold_hours * 3600:
        return DataFreshness.FRESH, hours_old
    return DataFreshness.STALE, hours_old


def _resolve_coordinates(
    readings: Sequence[RawStationReading],
    pinned: Optional[PinnedCoordinates],
) -> Tuple[Optional[float], Optional[float], CoordinatesSource]:
    if pinned is not None and pinned.verified:
        return pinned.latitude, pinned.longitude, CoordinatesSource.CACHE

    best = _pick([(r, r.water_level_date) for r in readings if r.has_coordinates])
    if best is not None:
        return best.latitude, best.longitude, CoordinatesSource(best.source.value)

    if pinned is not None:
        return pinned.latitude, pinned.longitude, CoordinatesSource.CACHE
    return None, None, CoordinatesSource.NONE


def _find_ambiguities(
    primary: RawStationReading,
    secondary: RawStationReading,
) -> List[ReconciliationAmbiguity]:
    found = []
    for attr in ("name", "river"):
        a_value = getattr(primary, attr)
        b_value = getattr(secondary, attr)
        if a_value and b_value and _normalise(a_value) != _normalise(b_value):
            found.append(ReconciliationAmbiguity(
                station_id=primary.station_id,
                field=attr,
                primary_value=a_value,
                secondary_value=b_value,
            ))
    return found


def _merge_station(
    readings: Sequence[RawStationReading],
    *,
    now: datetime,
    threshold_hours: float,
    pinned: Optional[PinnedCoordinates],
) -> ReconciledStation:
    """Build one station from its readings, ordered A first."""
    identity = readings[0]

    level_candidates = [(r, r.water_level_date) for r in readings if r.water_level is not None]
    level_winner = _pick(level_candidates) or _pick([(r, r.water_level_date) for r in readings])

    flow_winner = _pick([(r, r.effective_flow_date) for r in readings if r.flow is not None])

    latitude, longitude, coords_source = _resolve_coordinates(readings, pinned)
    freshness, hours_old = _freshness(level_winner.water_level_date, now, threshold_hours)

    return ReconciledStation(
        station_id=identity.station_id,
        name=identity.name,
        river=identity.river or next((r.river for r in readings if r.river), None),
        voivodeship=identity.voivodeship or next(
            (r.voivodeship for r in readings if r.voivodeship), None
        ),
        source=level_winner.source,
        water_level=level_winner.water_level,
        water_level_date=level_winner.water_level_date,
        flow=flow_winner.flow if flow_winner else None,
        flow_date=flow_winner.flow_date if flow_winner else None,
        flow_source=flow_winner.source if flow_winner else None,
        latitude=latitude,
        longitude=longitude,
        coordinates_source=coords_source,
        data_freshness=freshness,
        hours_old=hours_old,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def reconcile(
    primary: Optional[Sequence[RawStationReading]],
    secondary: Optional[Sequence[RawStationReading]],
    *,
    now: datetime,
    freshness_threshold_hours: float = DEFAULT_FRESHNESS_THRESHOLD_HOURS,
    pinned_coordinates: Optional[Mapping[str, PinnedCoordinates]] = None,
) -> ReconciliationResult:
    """
    Merge hydro (``primary``) and hydro2 (``secondary``) readings.

    Parameters
    ----------
    primary, secondary : sequence of RawStationReading, or None
        None means that source's fetch failed.
    now : datetime
        Reference time for ``hoursOld`` (aware, UTC).
    freshness_threshold_hours : float
        Maximum age of a fresh reading.
    pinned_coordinates : mapping, optional
        Station id → PinnedCoordinates from the coordinates cache.

    Raises
    ------
    TotalFetchFailure
        Both sources are None.
    """
    failed = [
        tag for tag, data in ((SourceTag.HYDRO, primary), (SourceTag.HYDRO2, secondary))
        if data is None
    ]
    if len(failed) == 2:
        raise TotalFetchFailure([tag.value for tag in failed])

    pinned_coordinates = pinned_coordinates or {}
    a_by_id = _dedupe(primary or ())
    b_by_id = _dedupe(secondary or ())

    stations: List[ReconciledStation] = []
    ambiguities: List[ReconciliationAmbiguity] = []

    for station_id, a_reading in a_by_id.items():
        b_reading = b_by_id.get(station_id)
        readings = [a_reading] if b_reading is None else [a_reading, b_reading]
        if b_reading is not None:
            ambiguities.extend(_find_ambiguities(a_reading, b_reading))
        stations.append(_merge_station(
            readings, now=now, threshold_hours=freshness_threshold_hours,
            pinned=pinned_coordinates.get(station_id),
        ))

    for station_id, b_reading in b_by_id.items():
        if station_id in a_by_id:
            continue
        stations.append(_merge_station(
            [b_reading], now=now, threshold_hours=freshness_threshold_hours,
            pinned=pinned_coordinates.get(station_id),
        ))

    for ambiguity in ambiguities:
        logger.warning(
            "Station %s has conflicting %s: hydro=%r hydro2=%r (keeping hydro)",
            ambiguity.station_id, ambiguity.field,
            ambiguity.primary_value, ambiguity.secondary_value,
            extra={"station_id": ambiguity.station_id},
        )

    fresh = sum(1 for s in stations if s.data_freshness is DataFreshness.FRESH)
    from_hydro = sum(1 for s in stations if s.source is SourceTag.HYDRO)
    logger.info(
        "Reconciled %d stations (fresh=%d stale=%d hydro=%d hydro2=%d)",
        len(stations), fresh, len(stations) - fresh,
        from_hydro, len(stations) - from_hydro,
        extra={"stations": len(stations)},
    )

    return ReconciliationResult(
        stations=stations,
        ambiguities=ambiguities,
        sources_used=[
            tag for tag, data in ((SourceTag.HYDRO, primary), (SourceTag.HYDRO2, secondary))
            if data is not None
        ],
        failed_sources=failed,
    )

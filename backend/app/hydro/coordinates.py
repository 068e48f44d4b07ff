"""
Pinned station coordinates.

hydro (source A) publishes no coordinates for most stations, hydro2 does.
This cache remembers every coordinate pair seen from hydro2 so a station
whose winning reading came from hydro can still be placed on the map,
and holds manually verified pins that always take precedence over
upstream values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from backend.app.hydro.models import (
    CoordinatesSource,
    RawStationReading,
    has_usable_coordinates,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PinnedCoordinates:
    station_id: str
    latitude: float
    longitude: float
    source: CoordinatesSource
    verified: bool
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "source": self.source.value,
            "verified": self.verified,
            "lastUpdated": self.updated_at.isoformat(),
        }


class CoordinatesCache:
    """Station id → last known coordinates, with verified manual pins."""

    def __init__(self):
        self._coordinates: Dict[str, PinnedCoordinates] = {}
        self._seeded = False

    def seed(self, readings: Iterable[RawStationReading], now: Optional[datetime] = None) -> int:
        """Remember coordinates from upstream readings. Verified pins are kept."""
        now = now or datetime.now(timezone.utc)
        added = 0
        for reading in readings:
            if not reading.has_coordinates:
                continue
            existing = self._coordinates.get(reading.station_id)
            if existing is not None and existing.verified:
                continue
            self._coordinates[reading.station_id] = PinnedCoordinates(
                station_id=reading.station_id,
                latitude=reading.latitude,  # type: ignore[arg-type]
                longitude=reading.longitude,  # type: ignore[arg-type]
                source=CoordinatesSource(reading.source.value),
                verified=False,
                updated_at=now,
            )
            added += 1
        self._seeded = True
        logger.debug("Coordinates cache seeded with %d stations", added)
        return added

    def pin(
        self,
        station_id: str,
        latitude: float,
        longitude: float,
        now: Optional[datetime] = None,
    ) -> PinnedCoordinates:
        """Store a verified coordinate pair that upstream data never overrides."""
        if not has_usable_coordinates(latitude, longitude):
            raise ValueError(f"Invalid coordinates for station {station_id}")
        pinned = PinnedCoordinates(
            station_id=station_id,
            latitude=latitude,
            longitude=longitude,
            source=CoordinatesSource.CACHE,
            verified=True,
            updated_at=now or datetime.now(timezone.utc),
        )
        self._coordinates[station_id] = pinned
        logger.info("Pinned coordinates for station %s", station_id,
                    extra={"station_id": station_id})
        return pinned

    def get(self, station_id: str) -> Optional[PinnedCoordinates]:
        return self._coordinates.get(station_id)

    def all(self) -> List[PinnedCoordinates]:
        return list(self._coordinates.values())

    def snapshot(self) -> Dict[str, PinnedCoordinates]:
        """Immutable-by-convention copy handed to the reconciler."""
        return dict(self._coordinates)

    def clear(self) -> None:
        self._coordinates.clear()
        self._seeded = False

    @property
    def is_seeded(self) -> bool:
        return self._seeded

    def stats(self) -> Dict[str, Any]:
        verified = sum(1 for c in self._coordinates.values() if c.verified)
        return {
            "totalStations": len(self._coordinates),
            "verified": verified,
            "initialized": self._seeded,
        }

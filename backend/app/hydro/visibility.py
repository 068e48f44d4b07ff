"""
Station visibility — operators can hide individual stations from the API.

State is a JSON list of ``{"stationId", "isVisible", "hiddenAt",
"hiddenBy", "reason"}`` records in VISIBILITY_FILE. Stations with no
record are visible.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

S = TypeVar("S")


@dataclass
class VisibilityRecord:
    station_id: str
    is_visible: bool
    hidden_at: Optional[str] = None
    hidden_by: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "isVisible": self.is_visible,
            "hiddenAt": self.hidden_at,
            "hiddenBy": self.hidden_by,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisibilityRecord":
        return cls(
            station_id=str(data["stationId"]),
            is_visible=bool(data.get("isVisible", True)),
            hidden_at=data.get("hiddenAt"),
            hidden_by=data.get("hiddenBy"),
            reason=data.get("reason"),
        )


class StationVisibilityStore:
    """Hidden-station list persisted to a JSON file, loaded lazily."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._records: Dict[str, VisibilityRecord] = {}
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            return
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        self._records = {
            record.station_id: record
            for record in (VisibilityRecord.from_dict(item) for item in raw)
        }
        logger.info("Loaded visibility settings for %d stations", len(self._records))

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [record.to_dict() for record in self._records.values()]
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    # ── Queries ──

    def is_visible(self, station_id: str) -> bool:
        self._load()
        record = self._records.get(station_id)
        return True if record is None else record.is_visible

    def hidden_stations(self) -> List[VisibilityRecord]:
        self._load()
        return [r for r in self._records.values() if not r.is_visible]

    def filter_visible(self, stations: Sequence[S], key=lambda s: s.station_id) -> List[S]:
        """Keep the stations whose id (``key(station)``) is visible."""
        self._load()
        return [s for s in stations if self.is_visible(key(s))]

    def stats(self) -> Dict[str, Any]:
        self._load()
        hidden = self.hidden_stations()
        total = len(self._records)
        return {
            "totalStations": total,
            "visibleStations": total - len(hidden),
            "hiddenStations": len(hidden),
            "hiddenStationsList": [r.to_dict() for r in hidden],
        }

    # ── Updates ──

    def set_visibility(
        self,
        station_id: str,
        visible: bool,
        reason: Optional[str] = None,
        hidden_by: Optional[str] = None,
    ) -> VisibilityRecord:
        self._load()
        record = VisibilityRecord(
            station_id=station_id,
            is_visible=visible,
            hidden_at=None if visible else datetime.now(timezone.utc).isoformat(),
            hidden_by=hidden_by,
            reason=reason,
        )
        self._records[station_id] = record
        self._save()
        logger.info("Station %s visibility set to %s", station_id, visible,
                    extra={"station_id": station_id})
        return record

    def toggle(self, station_id: str, reason: Optional[str] = None) -> bool:
        """Flip visibility and return the new state."""
        visible = not self.is_visible(station_id)
        self.set_visibility(station_id, visible, reason=reason)
        return visible

    def show_all(self) -> int:
        """Make every station visible again; returns how many were hidden."""
        self._load()
        hidden = len(self.hidden_stations())
        self._records.clear()
        self._save()
        logger.info("All stations visibility restored (%d were hidden)", hidden)
        return hidden

"""
Alarm classification — water level vs. per-station warning / alarm thresholds.

Rules (evaluated in order):

    water level or either threshold missing  → unknown
    level ≥ alarm level                      → alarm
    level ≥ warning level                    → warning
    otherwise                                → normal

``classify`` is pure. Thresholds live in a ThresholdRegistry, loaded from
a JSON file and/or the levels users maintain in the relational store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from backend.app.hydro.models import AlarmStatus, DataFreshness, ReconciledStation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlarmClassification:
    status: AlarmStatus
    message: str


@dataclass(frozen=True)
class StationThresholds:
    warning_level: Optional[float] = None
    alarm_level: Optional[float] = None


def _fmt(value: float) -> str:
    return f"{value:g}"


def classify(
    water_level: Optional[float],
    warning_level: Optional[float],
    alarm_level: Optional[float],
) -> AlarmClassification:
    """Classify one water level (cm) against its thresholds."""
    if warning_level is None or alarm_level is None:
        return AlarmClassification(AlarmStatus.UNKNOWN, "Alarm levels not defined")
    if water_level is None:
        return AlarmClassification(AlarmStatus.UNKNOWN, "No water level reading")

    if water_level >= alarm_level:
        return AlarmClassification(
            AlarmStatus.ALARM,
            f"Alarm: water level {_fmt(water_level)} cm "
            f"reached alarm level {_fmt(alarm_level)} cm",
        )
    if water_level >= warning_level:
        return AlarmClassification(
            AlarmStatus.WARNING,
            f"Warning: water level {_fmt(water_level)} cm "
            f"reached warning level {_fmt(warning_level)} cm",
        )
    return AlarmClassification(
        AlarmStatus.NORMAL,
        f"Normal: water level {_fmt(water_level)} cm "
        f"below warning level {_fmt(warning_level)} cm",
    )


class ThresholdRegistry:
    """Station id → (warning level, alarm level)."""

    def __init__(self, thresholds: Optional[Mapping[str, StationThresholds]] = None):
        self._thresholds: Dict[str, StationThresholds] = dict(thresholds or {})

    def __len__(self) -> int:
        return len(self._thresholds)

    def get(self, station_id: str) -> StationThresholds:
        return self._thresholds.get(station_id, StationThresholds())

    def set(
        self,
        station_id: str,
        warning_level: Optional[float],
        alarm_level: Optional[float],
    ) -> None:
        self._thresholds[station_id] = StationThresholds(warning_level, alarm_level)

    def update_many(
        self,
        rows: Iterable[Tuple[str, Optional[float], Optional[float]]],
    ) -> int:
        """Merge (station id, warning, alarm) rows; rows without levels are skipped."""
        count = 0
        for station_id, warning_level, alarm_level in rows:
            if warning_level is None and alarm_level is None:
                continue
            self.set(station_id, warning_level, alarm_level)
            count += 1
        return count

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ThresholdRegistry":
        """
        Load ``{"<station id>": {"warning": 200, "alarm": 300}, ...}``.

        A missing file yields an empty registry.
        """
        path = Path(path)
        if not path.exists():
            logger.warning("Alarm levels file not found: %s", path)
            return cls()

        raw: Dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
        registry = cls()
        for station_id, levels in raw.items():
            registry.set(
                str(station_id),
                _optional_float(levels.get("warning")),
                _optional_float(levels.get("alarm")),
            )
        logger.info("Loaded alarm levels for %d stations from %s", len(registry), path)
        return registry


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def annotate_station(station: ReconciledStation, registry: ThresholdRegistry) -> ReconciledStation:
    """Return a copy of ``station`` with the four alarm fields filled in."""
    thresholds = registry.get(station.station_id)
    result = classify(station.water_level, thresholds.warning_level, thresholds.alarm_level)

    message = result.message
    if station.data_freshness is DataFreshness.STALE:
        if station.hours_old is None:
            message = "Data stale: no measurement timestamp"
        else:
            message = f"Data stale for {station.hours_old:g} hours"

    return replace(
        station,
        warning_level=thresholds.warning_level,
        alarm_level=thresholds.alarm_level,
        alarm_status=result.status,
        alarm_message=message,
    )

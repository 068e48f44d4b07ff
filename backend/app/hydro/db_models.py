"""
ORM tables backing Persistence Sync.

    stations      one row per upstream station id (``station_code``);
                  river, coordinates and alarm levels may be user-edited
    measurements  append-only, unique per (station, timestamp, source)

Timestamps are stored timezone-aware (UTC).
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.database import Base


class StationRecord(Base):
    __tablename__ = "stations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    station_name: Mapped[str] = mapped_column(String(255), nullable=False)
    river_name: Mapped[Optional[str]] = mapped_column(String(255))
    voivodeship: Mapped[Optional[str]] = mapped_column(String(64))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    warning_level: Mapped[Optional[float]] = mapped_column(Float)
    alarm_level: Mapped[Optional[float]] = mapped_column(Float)
    api_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False,
    )

    measurements: Mapped[List["MeasurementRecord"]] = relationship(
        back_populates="station",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<StationRecord {self.station_code} {self.station_name!r}>"


class MeasurementRecord(Base):
    __tablename__ = "measurements"
    __table_args__ = (
        UniqueConstraint("station_id", "measured_at", "source", name="uq_measurement_station_ts_source"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_id: Mapped[int] = mapped_column(
        ForeignKey("stations.id", ondelete="CASCADE"), index=True, nullable=False,
    )
    measured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)  # hydro | hydro2
    water_level: Mapped[Optional[float]] = mapped_column(Float)
    flow_rate: Mapped[Optional[float]] = mapped_column(Float)
    temperature: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )

    station: Mapped[StationRecord] = relationship(back_populates="measurements")

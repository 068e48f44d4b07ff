"""
Pydantic schemas for the two upstream IMGW payloads.

The upstream APIs return arrays of flat objects with Polish field names
and every value encoded as a string (or null). These models are the only
place those names appear: aliases map them to English attribute names,
validators coerce numeric strings, and ``extra="ignore"`` drops fields we
do not use.

Required keys (the key must exist, the value may be null):

    hydro  : id_stacji, stacja, stan_wody, stan_wody_data_pomiaru
    hydro2 : kod_stacji, nazwa_stacji, stan, stan_data

A payload that is not a list, or whose items miss a required key, fails
validation as a whole — that is a schema change upstream, not bad data.
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def _to_optional_float(value: Any) -> Optional[float]:
    """'123', '12.5', 12, '12,5' → float; '', None, garbage → None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(",", ".")
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _to_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class _UpstreamItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HydroItem(_UpstreamItem):
    """One station object from the ``/api/data/hydro`` endpoint (source A)."""
    station_id: Optional[str] = Field(..., alias="id_stacji")
    name: Optional[str] = Field(..., alias="stacja")
    water_level: Optional[float] = Field(..., alias="stan_wody")
    water_level_date: Optional[str] = Field(..., alias="stan_wody_data_pomiaru")
    river: Optional[str] = Field(None, alias="rzeka")
    voivodeship: Optional[str] = Field(None, alias="województwo")
    flow: Optional[float] = Field(None, alias="przelyw")
    water_temperature: Optional[float] = Field(None, alias="temperatura_wody")
    water_temperature_date: Optional[str] = Field(None, alias="temperatura_wody_data_pomiaru")
    ice_phenomenon: Optional[str] = Field(None, alias="zjawisko_lodowe")
    overgrowth_phenomenon: Optional[str] = Field(None, alias="zjawisko_zarastania")
    latitude: Optional[float] = Field(None, alias="lat")
    longitude: Optional[float] = Field(None, alias="lon")

    @field_validator(
        "water_level", "flow", "water_temperature", "latitude", "longitude",
        mode="before",
    )
    @classmethod
    def coerce_float(cls, value: Any) -> Optional[float]:
        return _to_optional_float(value)

    @field_validator(
        "station_id", "name", "water_level_date", "river", "voivodeship",
        "water_temperature_date", "ice_phenomenon", "overgrowth_phenomenon",
        mode="before",
    )
    @classmethod
    def coerce_str(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class Hydro2Item(_UpstreamItem):
    """One station object from the ``/api/data/hydro2`` endpoint (source B)."""
    station_id: Optional[str] = Field(..., alias="kod_stacji")
    name: Optional[str] = Field(..., alias="nazwa_stacji")
    water_level: Optional[float] = Field(..., alias="stan")
    water_level_date: Optional[str] = Field(..., alias="stan_data")
    flow: Optional[float] = Field(None, alias="przelyw")
    flow_date: Optional[str] = Field(None, alias="przeplyw_data")
    river: Optional[str] = Field(None, alias="rzeka")
    voivodeship: Optional[str] = Field(None, alias="wojewodztwo")
    latitude: Optional[float] = Field(None, alias="lat")
    longitude: Optional[float] = Field(None, alias="lon")

    @field_validator(
        "water_level", "flow", "latitude", "longitude", mode="before",
    )
    @classmethod
    def coerce_float(cls, value: Any) -> Optional[float]:
        return _to_optional_float(value)

    @field_validator(
        "station_id", "name", "water_level_date", "flow_date", "river",
        "voivodeship", mode="before",
    )
    @classmethod
    def coerce_str(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


HYDRO_PAYLOAD: TypeAdapter[List[HydroItem]] = TypeAdapter(List[HydroItem])
HYDRO2_PAYLOAD: TypeAdapter[List[Hydro2Item]] = TypeAdapter(List[Hydro2Item])

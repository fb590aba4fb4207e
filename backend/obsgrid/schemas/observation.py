# backend/obsgrid/schemas/observation.py
from pydantic import BaseModel, Field
import datetime as dt
from typing import Optional

from .measurement import MeasurementDefinition, MeasurementValue


class StandardColumns(BaseModel):
    survey_observation_id: Optional[int] = None  # null なら新規
    itis_tsn: Optional[int] = None
    itis_scientific_name: Optional[str] = None
    survey_sample_site_id: Optional[int] = None
    survey_sample_method_id: Optional[int] = None
    survey_sample_period_id: Optional[int] = None
    count: Optional[int] = None
    observation_date: Optional[dt.date] = None
    observation_time: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    comment: str = ""


class ObservationOut(StandardColumns):
    survey_observation_id: int
    survey_id: int
    # taxon_measurement_id -> {kind, value}
    measurements: dict[str, MeasurementValue] = {}


class SupplementaryData(BaseModel):
    observation_count: int
    measurement_definitions: list[MeasurementDefinition] = []


class ObservationsOut(BaseModel):
    observations: list[ObservationOut]
    supplementary: SupplementaryData


class ObservationToSave(BaseModel):
    standard: StandardColumns
    measurements: dict[str, MeasurementValue] = {}


class ObservationsSaveIn(BaseModel):
    observations: list[ObservationToSave]
    # 保存する値が参照する計測項目定義（一覧取得時に列を復元するため保持）
    definitions: list[MeasurementDefinition] = []


class ObservationIdsIn(BaseModel):
    observation_ids: list[int] = Field(default_factory=list)


class MeasurementIdsIn(BaseModel):
    measurement_ids: list[str] = Field(default_factory=list)

# backend/obsgrid/grid/rows.py
"""
Observation rows held by the grid.

``saved`` mirrors what the server returned on the last fetch. ``staged``
holds rows that are not committed yet: brand-new rows (temporary ``staged-``
ids) and overrides of saved rows, which keep the saved row's id. Rows are
immutable, so every edit produces a new row object.
"""
import datetime as dt
import logging
import uuid
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from obsgrid.schemas.measurement import MeasurementValue

logger = logging.getLogger(__name__)

STAGED_ID_PREFIX = "staged-"

STANDARD_FIELDS = (
    "itis_tsn",
    "itis_scientific_name",
    "survey_sample_site_id",
    "survey_sample_method_id",
    "survey_sample_period_id",
    "count",
    "observation_date",
    "observation_time",
    "latitude",
    "longitude",
    "comment",
)


class ObservationRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    survey_observation_id: Optional[int] = None
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
    # MeasurementColumn.field_key -> {kind, value}
    measurements: dict[str, MeasurementValue] = {}

    @classmethod
    def new(cls) -> "ObservationRow":
        return cls(id=f"{STAGED_ID_PREFIX}{uuid.uuid4()}")

    @property
    def is_new(self) -> bool:
        """True for rows that were never persisted."""
        return self.survey_observation_id is None

    def with_fields(self, **changes) -> "ObservationRow":
        unknown = set(changes) - set(STANDARD_FIELDS)
        if unknown:
            raise ValueError(f"not an observation field: {', '.join(sorted(unknown))}")
        return type(self).model_validate({**self.model_dump(), **changes})

    def with_measurement(self, field_key: str, value) -> "ObservationRow":
        data = self.model_dump()
        if value is None:
            data["measurements"].pop(field_key, None)
        else:
            data["measurements"][field_key] = value
        return type(self).model_validate(data)

    def without_measurements(self, field_keys: Iterable[str]) -> "ObservationRow":
        drop = set(field_keys) & set(self.measurements)
        if not drop:
            return self
        data = self.model_dump()
        data["measurements"] = {k: v for k, v in data["measurements"].items() if k not in drop}
        return type(self).model_validate(data)


class ObservationRowStore:
    """In-memory row collections. No I/O; callers decide how to react to commit failures."""

    def __init__(self):
        self._saved: list[ObservationRow] = []
        self._staged: list[ObservationRow] = []

    @property
    def saved_rows(self) -> list[ObservationRow]:
        return list(self._saved)

    @property
    def staged_rows(self) -> list[ObservationRow]:
        return list(self._staged)

    @property
    def has_unsaved_changes(self) -> bool:
        return bool(self._staged)

    def set_saved_rows(self, rows: Iterable[ObservationRow]) -> None:
        self._saved = list(rows)

    def set_staged_rows(self, updater: Callable[[list[ObservationRow]], Iterable[ObservationRow]]) -> None:
        rows = list(updater(list(self._staged)))
        seen = set()
        for row in rows:
            if not isinstance(row, ObservationRow):
                raise TypeError(f"staged rows must be ObservationRow, got {type(row).__name__}")
            if row.id in seen:
                raise ValueError(f"duplicate staged row id {row.id}")
            seen.add(row.id)
        self._staged = rows

    def add_staged_row(self) -> ObservationRow:
        row = ObservationRow.new()
        self._staged = [*self._staged, row]
        return row

    def get(self, row_id: str) -> ObservationRow:
        for row in self._staged:
            if row.id == row_id:
                return row
        for row in self._saved:
            if row.id == row_id:
                return row
        raise KeyError(row_id)

    def _stage(self, updated: ObservationRow) -> None:
        # 保存済み行の初回編集は同じ id の上書き行として staged に入る
        if any(r.id == updated.id for r in self._staged):
            self._staged = [updated if r.id == updated.id else r for r in self._staged]
        else:
            self._staged = [*self._staged, updated]

    def edit_row(self, row_id: str, **changes) -> ObservationRow:
        updated = self.get(row_id).with_fields(**changes)
        self._stage(updated)
        return updated

    def set_measurement(self, row_id: str, field_key: str, value) -> ObservationRow:
        updated = self.get(row_id).with_measurement(field_key, value)
        self._stage(updated)
        return updated

    def delete_column_values(self, field_keys: Iterable[str]) -> None:
        keys = list(field_keys)
        if not keys:
            return
        self._saved = [r.without_measurements(keys) for r in self._saved]
        self._staged = [r.without_measurements(keys) for r in self._staged]

    def purge_stale(self, valid_field_keys: Iterable[str]) -> list[str]:
        valid = set(valid_field_keys)
        stale = sorted({k for r in [*self._saved, *self._staged] for k in r.measurements if k not in valid})
        if stale:
            logger.warning("purging values of unregistered measurement columns: %s", ", ".join(stale))
            self.delete_column_values(stale)
        return stale

    def merged_rows(self) -> list[ObservationRow]:
        staged_by_id = {r.id: r for r in self._staged}
        saved_ids = {r.id for r in self._saved}
        merged = [staged_by_id.get(r.id, r) for r in self._saved]
        merged.extend(r for r in self._staged if r.id not in saved_ids)
        return merged

    def modified_ids(self) -> list[str]:
        return [r.id for r in self._staged]

    def rows_to_save(self) -> list[ObservationRow]:
        return list(self._staged)

    def persisted_ids(self, row_ids: Iterable[str]) -> list[int]:
        wanted = set(row_ids)
        return [r.survey_observation_id for r in self._saved if r.id in wanted and r.survey_observation_id is not None]

    def remove_rows(self, row_ids: Iterable[str]) -> list[int]:
        """Drop rows from both collections; returns the primary keys that need a server delete."""
        drop = set(row_ids)
        persisted = self.persisted_ids(drop)
        self._saved = [r for r in self._saved if r.id not in drop]
        self._staged = [r for r in self._staged if r.id not in drop]
        return persisted

    def discard_changes(self) -> None:
        self._staged = []

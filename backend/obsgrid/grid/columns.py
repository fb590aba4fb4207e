# backend/obsgrid/grid/columns.py
"""
Grid column descriptors and the registry of user-added measurement columns.

The fixed observation columns never change. Measurement columns are added
at runtime from catalog definitions and the whole set is written to a
session-scoped store per survey so a reload restores them without any
schema change on the server.
"""
from __future__ import annotations

import json
import logging
from typing import Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from obsgrid.schemas.measurement import MeasurementDefinition
from obsgrid.grid.errors import PersistenceWriteFailed, StaleColumnReference
from obsgrid.grid.storage import MEASUREMENT_COLUMNS, ScopedKeyValueStore, load_json, survey_storage_key

logger = logging.getLogger(__name__)

_definitions_adapter = TypeAdapter(list[MeasurementDefinition])


class GridColumn(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    header: str
    kind: Literal["standard", "qualitative", "quantitative"] = "standard"
    hideable: bool = True
    unit: Optional[str] = None


FIXED_COLUMNS: tuple[GridColumn, ...] = (
    GridColumn(field="itis_tsn", header="Species", hideable=False),
    GridColumn(field="survey_sample_site_id", header="Site"),
    GridColumn(field="survey_sample_method_id", header="Method"),
    GridColumn(field="survey_sample_period_id", header="Period"),
    GridColumn(field="count", header="Count", hideable=False),
    GridColumn(field="observation_date", header="Date"),
    GridColumn(field="observation_time", header="Time"),
    GridColumn(field="latitude", header="Latitude"),
    GridColumn(field="longitude", header="Longitude"),
    GridColumn(field="comment", header="Comment"),
)


def field_key_for(definition) -> str:
    # 定義 id をそのまま行のキー・列 id に使う（1:1）
    return definition.id


class MeasurementColumn(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_key: str
    definition: MeasurementDefinition

    @classmethod
    def from_definition(cls, definition) -> "MeasurementColumn":
        return cls(field_key=field_key_for(definition), definition=definition)

    @property
    def kind(self) -> str:
        return self.definition.kind

    def to_grid_column(self) -> GridColumn:
        unit = getattr(self.definition, "unit", None)
        header = f"{self.definition.name} ({unit})" if unit else self.definition.name
        return GridColumn(field=self.field_key, header=header, kind=self.definition.kind, unit=unit)


class MeasurementColumnRegistry:
    def __init__(self, survey_id: int, store: ScopedKeyValueStore, row_store=None):
        self.survey_id = survey_id
        self.store = store
        self.row_store = row_store
        self.storage_key = survey_storage_key(survey_id, MEASUREMENT_COLUMNS)
        self.last_warning: Optional[PersistenceWriteFailed] = None
        # dict の挿入順 = 表示順
        self._columns: dict[str, MeasurementColumn] = {}

    def __len__(self) -> int:
        return len(self._columns)

    def __contains__(self, field_key: str) -> bool:
        return field_key in self._columns

    def list(self) -> list[MeasurementColumn]:
        return list(self._columns.values())

    def field_keys(self) -> list[str]:
        return list(self._columns)

    def get(self, field_key: str) -> MeasurementColumn:
        try:
            return self._columns[field_key]
        except KeyError:
            raise StaleColumnReference(field_key) from None

    def stored_definitions(self) -> list:
        raw = load_json(self.store, self.storage_key, default=[])
        try:
            return _definitions_adapter.validate_python(raw)
        except ValidationError:
            logger.warning("ignoring malformed measurement columns stored under %s", self.storage_key)
            return []

    def load(self, server_definitions: Iterable = ()) -> list[MeasurementColumn]:
        """Rebuild from the stored columns, then append server definitions not already present."""
        self._columns = {}
        for definition in self.stored_definitions():
            self._columns.setdefault(field_key_for(definition), MeasurementColumn.from_definition(definition))
        self._append_missing(server_definitions)
        return self.list()

    def merge(self, server_definitions: Iterable) -> list[MeasurementColumn]:
        """Append server definitions not yet registered, keeping the current columns and their order."""
        if self._append_missing(server_definitions):
            self._persist()
        return self.list()

    def _append_missing(self, definitions: Iterable) -> int:
        added = 0
        for definition in definitions:
            key = field_key_for(definition)
            if key not in self._columns:
                self._columns[key] = MeasurementColumn.from_definition(definition)
                added += 1
        return added

    def add_columns(self, definitions: Iterable) -> list[MeasurementColumn]:
        added = self._append_missing(definitions)
        if added:
            logger.debug("added %d measurement column(s) to survey %s", added, self.survey_id)
        self._persist()
        return self.list()

    def remove_columns(self, field_keys: Iterable[str]) -> list[MeasurementColumn]:
        keys = list(dict.fromkeys(field_keys))
        removed = [self._columns.pop(k) for k in keys if k in self._columns]
        # 列を消したら全行から値も消す（同じキーで型の違う列を再追加したときに古い値が復活しないように）
        if self.row_store is not None:
            self.row_store.delete_column_values(keys)
        self._persist()
        return removed

    def _persist(self) -> None:
        value = json.dumps([c.definition.model_dump(mode="json") for c in self._columns.values()])
        try:
            self.store.set(self.storage_key, value)
        except Exception as e:
            # 保存は best-effort（セッション中はメモリ上の列が正）
            self.last_warning = PersistenceWriteFailed(f"could not store measurement columns: {e}")
            logger.warning("measurement columns for survey %s not persisted: %s", self.survey_id, e)
        else:
            self.last_warning = None

# backend/obsgrid/grid/controller.py
"""
Composition root of the observation grid.

Wires the measurement column registry, the row store, the debounced
measurement search and the CSV import pipeline to the observation API and
exposes the column list and row list to whatever renders the grid.
"""
import json
import logging
import math
from typing import Iterable, Optional

from obsgrid.schemas.measurement import QualitativeValue, QuantitativeValue
from obsgrid.schemas.observation import ObservationOut, ObservationsSaveIn, ObservationToSave, StandardColumns
from obsgrid.schemas.submission import ProcessOptions
from obsgrid.grid.columns import FIXED_COLUMNS, GridColumn, MeasurementColumnRegistry
from obsgrid.grid.errors import PersistenceWriteFailed, ValidationRejected
from obsgrid.grid.importer import ImportHooks, ImportPipeline, ImportSubmission, fire_hook
from obsgrid.grid.rows import STANDARD_FIELDS, ObservationRow, ObservationRowStore
from obsgrid.grid.search import MeasurementSearch
from obsgrid.grid.storage import HIDDEN_COLUMNS, ScopedKeyValueStore, load_json, survey_storage_key
from obsgrid.grid.validation import validate_rows

logger = logging.getLogger(__name__)


def row_from_observation(obs: ObservationOut) -> ObservationRow:
    data = obs.model_dump(include={"survey_observation_id", *STANDARD_FIELDS})
    return ObservationRow(id=str(obs.survey_observation_id), measurements=obs.measurements, **data)


def observation_to_save(row: ObservationRow) -> ObservationToSave:
    standard = StandardColumns(**row.model_dump(include={"survey_observation_id", *STANDARD_FIELDS}))
    return ObservationToSave(standard=standard, measurements=row.measurements)


class GridController:
    def __init__(self, survey_id: int, api, catalog, store: ScopedKeyValueStore,
                 fixed_columns: Iterable[GridColumn] = FIXED_COLUMNS, debounce_ms: Optional[int] = None):
        self.survey_id = survey_id
        self.api = api
        self.store = store
        self.fixed_columns = tuple(fixed_columns)
        self.rows = ObservationRowStore()
        self.registry = MeasurementColumnRegistry(survey_id, store, row_store=self.rows)
        self.search = MeasurementSearch(catalog) if debounce_ms is None else MeasurementSearch(catalog, debounce_ms)
        self.importer = ImportPipeline(api, survey_id)
        self.hidden_key = survey_storage_key(survey_id, HIDDEN_COLUMNS)
        self.hidden_fields: set[str] = set()
        self.validation_model: dict = {}
        self.last_warning: Optional[PersistenceWriteFailed] = None

    # --- 列 ---

    def all_columns(self) -> list[GridColumn]:
        """Fixed columns first, then measurement columns in the order they were added."""
        return [*self.fixed_columns, *(c.to_grid_column() for c in self.registry.list())]

    def visible_columns(self) -> list[GridColumn]:
        return [c for c in self.all_columns() if not (c.hideable and c.field in self.hidden_fields)]

    def on_add_measurements(self, definitions: Iterable) -> list:
        columns = self.registry.add_columns(definitions)
        self.last_warning = self.registry.last_warning
        return columns

    async def on_remove_measurements(self, field_keys: Iterable[str]) -> list:
        keys = list(dict.fromkeys(field_keys))
        if not keys:
            return []
        # 保存済みの値をサーバ側で先に削除（失敗したら列はそのまま）
        await self.api.delete_measurements(self.survey_id, keys)
        removed = self.registry.remove_columns(keys)
        self.last_warning = self.registry.last_warning
        if self.hidden_fields & set(keys):
            self.set_hidden_fields(self.hidden_fields - set(keys))
        return removed

    def set_hidden_fields(self, fields: Iterable[str]) -> None:
        self.hidden_fields = set(fields)
        try:
            self.store.set(self.hidden_key, json.dumps(sorted(self.hidden_fields)))
        except Exception as e:
            self.last_warning = PersistenceWriteFailed(f"could not store hidden columns: {e}")
            logger.warning("hidden columns for survey %s not persisted: %s", self.survey_id, e)

    def toggle_column(self, field: str) -> bool:
        """Flip visibility of one column. Returns True when it is now visible."""
        hidden = set(self.hidden_fields)
        if field in hidden:
            hidden.discard(field)
        else:
            hidden.add(field)
        self.set_hidden_fields(hidden)
        return field not in hidden

    # --- 行 ---

    async def mount(self) -> None:
        self.hidden_fields = set(load_json(self.store, self.hidden_key, default=[]))
        await self.refresh(restore=True)

    async def refresh(self, restore: bool = False) -> None:
        """Reload saved rows. Columns are rebuilt from the store only when ``restore`` is set."""
        data = await self.api.list_observations(self.survey_id)
        if restore:
            self.registry.load(data.supplementary.measurement_definitions)
        else:
            self.registry.merge(data.supplementary.measurement_definitions)
        self.rows.set_saved_rows(row_from_observation(o) for o in data.observations)
        self.rows.purge_stale(self.registry.field_keys())
        logger.debug("survey %s: %d saved rows, %d measurement columns",
                     self.survey_id, len(self.rows.saved_rows), len(self.registry))

    async def on_import_complete(self) -> None:
        await self.refresh()

    def add_row(self) -> ObservationRow:
        return self.rows.add_staged_row()

    def edit_cell(self, row_id: str, field: str, value) -> ObservationRow:
        if field in STANDARD_FIELDS:
            return self.rows.edit_row(row_id, **{field: value})
        column = self.registry.get(field)
        if value is None or value == "":
            return self.rows.set_measurement(row_id, field, None)
        if column.kind == "qualitative":
            mv = QualitativeValue(value=str(value))
        else:
            number = float(value)
            if not math.isfinite(number):
                raise ValidationRejected(f"{column.definition.name}: {value!r} is not a finite number")
            mv = QuantitativeValue(value=number)
        return self.rows.set_measurement(row_id, field, mv)

    def merged_rows(self) -> list[ObservationRow]:
        return self.rows.merged_rows()

    def validate(self) -> bool:
        self.validation_model = validate_rows(self.rows.rows_to_save(), self.registry.list())
        return not self.validation_model

    async def save(self) -> list[int]:
        """Validate and commit staged rows. Staged rows are kept when anything fails."""
        if not self.validate():
            raise ValidationRejected(f"{len(self.validation_model)} row(s) have errors")
        rows = self.rows.rows_to_save()
        if not rows:
            return []
        used = {k for r in rows for k in r.measurements}
        payload = ObservationsSaveIn(
            observations=[observation_to_save(r) for r in rows],
            definitions=[c.definition for c in self.registry.list() if c.field_key in used],
        )
        ids = await self.api.save_observations(self.survey_id, payload)
        self.rows.discard_changes()
        await self.refresh()
        return ids

    async def delete_rows(self, row_ids: Iterable[str]) -> int:
        ids = list(row_ids)
        persisted = self.rows.persisted_ids(ids)
        if persisted:
            await self.api.delete_observations(self.survey_id, persisted)
        self.rows.remove_rows(ids)
        for row_id in ids:
            self.validation_model.pop(row_id, None)
        return len(persisted)

    def discard_changes(self) -> None:
        self.rows.discard_changes()
        self.validation_model = {}

    # --- 計測項目検索・取込 ---

    async def search_measurements(self, taxon_id: int, keyword: str) -> Optional[list]:
        return await self.search.search(taxon_id, keyword, exclude=self.registry.field_keys())

    def cancel_search(self) -> None:
        self.search.cancel()

    async def import_csv(self, filename: str, content: bytes, options: Optional[ProcessOptions] = None,
                         hooks: Optional[ImportHooks] = None) -> Optional[ImportSubmission]:
        hooks = hooks or ImportHooks()

        async def on_success(submission: ImportSubmission) -> None:
            # 取込結果を一覧に反映してから呼び出し側へ
            await self.on_import_complete()
            await fire_hook(hooks.on_success, submission)

        chained = ImportHooks(on_start=hooks.on_start, on_success=on_success,
                              on_error=hooks.on_error, on_finish=hooks.on_finish)
        return await self.importer.import_file(filename, content, options, chained)

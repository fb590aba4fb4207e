# backend/obsgrid/grid/validation.py
import re
from typing import Iterable, Mapping

from obsgrid.schemas.commons import RowError
from obsgrid.schemas.measurement import QualitativeMeasurementDefinition
from obsgrid.grid.columns import FIXED_COLUMNS, MeasurementColumn
from obsgrid.grid.rows import ObservationRow

REQUIRED_FIELDS = ("itis_tsn", "count", "latitude", "longitude", "observation_date", "observation_time")
SAMPLING_FIELDS = ("survey_sample_site_id", "survey_sample_method_id", "survey_sample_period_id")

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")
_HEADERS = {c.field: c.header for c in FIXED_COLUMNS}


def _missing(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_row(row: ObservationRow, columns: Mapping[str, MeasurementColumn]) -> list[RowError]:
    errors: list[RowError] = []

    missing = [f for f in REQUIRED_FIELDS if _missing(getattr(row, f))]

    # 調査地点が入っていれば偶発的記録ではないので、手法・期間も必須
    if not _missing(row.survey_sample_site_id):
        missing.extend(f for f in SAMPLING_FIELDS if _missing(getattr(row, f)))
    elif any(not _missing(getattr(row, f)) for f in SAMPLING_FIELDS[1:]):
        errors.append(RowError(row=row.id, field="survey_sample_site_id",
                               message="A sampling site is required when a method or period is set"))

    for field in missing:
        errors.append(RowError(row=row.id, field=field, message=f"Missing column: {_HEADERS.get(field, field)}"))

    if row.observation_time and not _TIME_RE.match(row.observation_time):
        errors.append(RowError(row=row.id, field="observation_time", message="Invalid time"))

    if row.count is not None and row.count < 0:
        errors.append(RowError(row=row.id, field="count", message="Count must not be negative"))

    if row.measurements and row.itis_tsn is None:
        errors.append(RowError(row=row.id, field="itis_tsn",
                               message="A taxon needs to be selected before adding measurements"))

    for key, mv in row.measurements.items():
        column = columns.get(key)
        if column is None:
            # 登録されていない列の値は無視（次回の列削除・再取得で消える）
            continue
        definition = column.definition
        if mv.kind != definition.kind:
            errors.append(RowError(row=row.id, field=key, message=f"{definition.name} expects a {definition.kind} value"))
        elif isinstance(definition, QualitativeMeasurementDefinition):
            if not any(opt.id == mv.value for opt in definition.options):
                errors.append(RowError(row=row.id, field=key, message=f"Invalid option selected for {definition.name}"))
        elif not definition.in_range(mv.value):
            errors.append(RowError(row=row.id, field=key, message=f"{definition.name} is out of range"))

    return errors


def validate_rows(rows: Iterable[ObservationRow], columns: Iterable[MeasurementColumn]) -> dict[str, list[RowError]]:
    """Return {row id: errors} for rows that failed; empty when everything is valid."""
    by_key = {c.field_key: c for c in columns}
    model: dict[str, list[RowError]] = {}
    for row in rows:
        errors = validate_row(row, by_key)
        if errors:
            model[row.id] = errors
    return model

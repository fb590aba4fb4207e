# backend/obsgrid/services/importing/observations_csv.py
"""
Observation CSV processing.

A submission's CSV is parsed, the standard columns are matched against their
aliases, every other column is matched against the measurement definitions of
the row's taxon, and the whole file is validated before anything is written.
Either every row is inserted or none is.
"""
import csv
import datetime as dt
import io
import logging
import re
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import Session

from obsgrid.models.sampling import SampleMethod, SamplePeriod, SampleSite
from obsgrid.models.submission import ObservationSubmission
from obsgrid.schemas.commons import RowError
from obsgrid.schemas.measurement import (
    QualitativeMeasurementDefinition,
    QualitativeValue,
    QuantitativeValue,
    TaxonMeasurements,
)
from obsgrid.schemas.observation import StandardColumns
from obsgrid.schemas.submission import ProcessOptions
from obsgrid.services.catalog.critterbase import CatalogUnavailable, CritterbaseCatalog
from obsgrid.services.observations.repository import insert_observation, upsert_definitions

logger = logging.getLogger(__name__)

# 標準列とその別名（大文字小文字は区別しない）
STANDARD_COLUMNS: dict[str, tuple[str, ...]] = {
    "ITIS_TSN": ("ITIS_TSN", "TSN", "TAXON", "SPECIES"),
    "COUNT": ("COUNT",),
    "DATE": ("DATE",),
    "TIME": ("TIME",),
    "LATITUDE": ("LATITUDE", "LAT"),
    "LONGITUDE": ("LONGITUDE", "LON", "LONG", "LNG"),
    "SAMPLING_SITE": ("SAMPLING_SITE", "SITE"),
    "SAMPLING_METHOD": ("SAMPLING_METHOD", "METHOD", "TECHNIQUE"),
    "SAMPLING_PERIOD": ("SAMPLING_PERIOD", "PERIOD"),
    "COMMENT": ("COMMENT", "COMMENTS", "NOTE", "NOTES"),
}
REQUIRED_COLUMNS = ("ITIS_TSN", "COUNT")

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


class ObservationImportError(Exception):
    def __init__(self, message: str, errors: Optional[list[RowError]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class SubmissionNotFound(Exception):
    pass


class SubmissionStateError(Exception):
    pass


def _read_rows(path: Path) -> tuple[list[str], list[dict]]:
    try:
        text = Path(path).read_bytes().decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ObservationImportError("Failed to process file for importing observations. File is not UTF-8 text.") from e
    reader = csv.DictReader(io.StringIO(text))
    headers = [h for h in (reader.fieldnames or [])]
    rows = [r for r in reader if any((v or "").strip() for k, v in r.items() if k is not None)]
    return headers, rows


def map_columns(headers: list[str]) -> tuple[dict[str, str], list[str]]:
    """Return ({STANDARD_NAME: header}, [non-standard headers])."""
    alias_to_std = {alias: std for std, aliases in STANDARD_COLUMNS.items() for alias in aliases}
    mapping: dict[str, str] = {}
    others: list[str] = []
    for header in headers:
        if header is None or not header.strip():
            continue
        std = alias_to_std.get(header.strip().upper())
        if std and std not in mapping:
            mapping[std] = header
        else:
            others.append(header)
    return mapping, others


def _cell(row: dict, mapping: dict[str, str], name: str) -> str:
    header = mapping.get(name)
    if header is None:
        return ""
    return (row.get(header) or "").strip()


def _parse_int(text: str) -> int:
    number = float(text)
    if not number.is_integer():
        raise ValueError(text)
    return int(number)


def _parse_standard(row_no: int, row: dict, mapping: dict[str, str], errors: list[RowError]) -> dict:
    values: dict = {}

    def fail(field: str, message: str):
        errors.append(RowError(row=row_no, field=field, message=message))

    tsn = _cell(row, mapping, "ITIS_TSN")
    if not tsn:
        fail("ITIS_TSN", "Missing taxon (ITIS TSN)")
    else:
        try:
            values["itis_tsn"] = _parse_int(tsn)
        except ValueError:
            fail("ITIS_TSN", f"Invalid taxon (ITIS TSN): {tsn}")

    count = _cell(row, mapping, "COUNT")
    if not count:
        fail("COUNT", "Missing count")
    else:
        try:
            values["count"] = _parse_int(count)
            if values["count"] < 0:
                fail("COUNT", "Count must not be negative")
        except ValueError:
            fail("COUNT", f"Invalid count: {count}")

    date = _cell(row, mapping, "DATE")
    if date:
        try:
            values["observation_date"] = dt.date.fromisoformat(date)
        except ValueError:
            fail("DATE", f"Invalid date: {date}")

    time = _cell(row, mapping, "TIME")
    if time:
        if _TIME_RE.match(time):
            values["observation_time"] = time
        else:
            fail("TIME", f"Invalid time: {time}")

    for name, field, bound in (("LATITUDE", "latitude", 90.0), ("LONGITUDE", "longitude", 180.0)):
        text = _cell(row, mapping, name)
        if not text:
            continue
        try:
            number = float(text)
        except ValueError:
            fail(name, f"Invalid {field}: {text}")
            continue
        if not -bound <= number <= bound:
            fail(name, f"{field.capitalize()} out of range: {text}")
        values[field] = number

    values["comment"] = _cell(row, mapping, "COMMENT")
    return values


def _measurement_value(definition, text: str):
    if isinstance(definition, QualitativeMeasurementDefinition):
        option = definition.find_option(text)
        if option is None:
            return None, f"Invalid option for {definition.name}: {text}"
        return QualitativeValue(value=option.id), None
    try:
        number = float(text)
    except ValueError:
        return None, f"Invalid number for {definition.name}: {text}"
    if not definition.in_range(number):
        return None, f"{definition.name} out of range: {text}"
    return QuantitativeValue(value=number), None


class _SamplingIndex:
    def __init__(self, db: Session, survey_id: int):
        self.sites = db.query(SampleSite).filter(SampleSite.survey_id == survey_id).all()
        site_ids = [s.id for s in self.sites]
        self.methods = db.query(SampleMethod).filter(SampleMethod.sample_site_id.in_(site_ids)).all() if site_ids else []
        method_ids = [m.id for m in self.methods]
        self.periods = (
            db.query(SamplePeriod).filter(SamplePeriod.sample_method_id.in_(method_ids)).all() if method_ids else []
        )

    def resolve(self, site: str, method: str, period: str) -> tuple[Optional[tuple], Optional[str]]:
        if not site:
            if method or period:
                return None, "A sampling method or period requires a sampling site"
            return (None, None, None), None
        s = next((x for x in self.sites if x.name.lower() == site.lower()), None)
        if s is None:
            return None, f"Unknown sampling site: {site}"
        if not method:
            return (s.id, None, None), None
        m = next((x for x in self.methods if x.sample_site_id == s.id and x.name.lower() == method.lower()), None)
        if m is None:
            return None, f"Unknown sampling method for site {s.name}: {method}"
        if not period:
            return (s.id, m.id, None), None
        for p in self.periods:
            if p.sample_method_id != m.id:
                continue
            if str(p.id) == period or (p.start_at and p.start_at.isoformat().startswith(period)):
                return (s.id, m.id, p.id), None
        return None, f"Unknown sampling period for method {m.name}: {period}"


def period_hierarchy(db: Session, survey_id: int, period_id: int) -> tuple[int, int, int]:
    period = db.get(SamplePeriod, period_id)
    method = db.get(SampleMethod, period.sample_method_id) if period else None
    site = db.get(SampleSite, method.sample_site_id) if method else None
    if site is None or site.survey_id != survey_id:
        raise ObservationImportError(
            "Failed to process file for importing observations. Sampling period not found.",
            [RowError(field="survey_sample_period_id", message=f"Sampling period {period_id} does not belong to this survey")],
        )
    return site.id, method.id, period.id


def import_observations_csv(db: Session, catalog: CritterbaseCatalog, survey_id: int, path: Path,
                            options: Optional[ProcessOptions] = None) -> int:
    """Validate the CSV at ``path`` and add its rows to the survey. Caller commits."""
    headers, rows = _read_rows(path)
    mapping, other_columns = map_columns(headers)

    missing = [name for name in REQUIRED_COLUMNS if name not in mapping]
    if missing:
        raise ObservationImportError(
            "Failed to process file for importing observations. Column validator failed.",
            [RowError(field=name, message=f"Missing required column: {name}") for name in missing],
        )
    if not rows:
        raise ObservationImportError("Failed to process file for importing observations. The file has no rows.")

    errors: list[RowError] = []
    parsed = [_parse_standard(i, row, mapping, errors) for i, row in enumerate(rows, start=1)]

    # 分類群ごとの計測項目定義（重複取得しない）
    taxon_measurements: dict[int, TaxonMeasurements] = {}
    for tsn in sorted({p["itis_tsn"] for p in parsed if "itis_tsn" in p}):
        try:
            taxon_measurements[tsn] = catalog.taxon_measurements(tsn)
        except CatalogUnavailable as e:
            if other_columns:
                errors.append(RowError(field="ITIS_TSN", message=str(e)))

    # 非標準列のうち、いずれかの分類群の計測項目名に一致するものが計測列
    known_names = {d.name.lower() for tm in taxon_measurements.values() for d in tm.all()}
    measurement_columns = [c for c in other_columns if c.strip().lower() in known_names]
    for column in other_columns:
        if column not in measurement_columns and taxon_measurements:
            errors.append(RowError(field=column, message=f"Unrecognized column: {column}"))

    hierarchy = None
    sampling = None
    if options and options.survey_sample_period_id:
        hierarchy = period_hierarchy(db, survey_id, options.survey_sample_period_id)
    else:
        sampling = _SamplingIndex(db, survey_id)

    to_insert = []
    used_definitions = {}
    for row_no, (row, values) in enumerate(zip(rows, parsed), start=1):
        measurements = {}
        tm = taxon_measurements.get(values.get("itis_tsn"))
        for column in measurement_columns:
            text = (row.get(column) or "").strip()
            if not text:
                continue
            definition = tm.find_by_name(column) if tm else None
            if definition is None:
                errors.append(RowError(row=row_no, field=column,
                                       message=f"Measurement {column} is not valid for taxon {values.get('itis_tsn')}"))
                continue
            mv, message = _measurement_value(definition, text)
            if message:
                errors.append(RowError(row=row_no, field=column, message=message))
                continue
            measurements[definition.id] = mv
            used_definitions[definition.id] = definition

        if hierarchy is not None:
            site_id, method_id, period_id = hierarchy
        else:
            ids, message = sampling.resolve(
                _cell(row, mapping, "SAMPLING_SITE"),
                _cell(row, mapping, "SAMPLING_METHOD"),
                _cell(row, mapping, "SAMPLING_PERIOD"),
            )
            if message:
                errors.append(RowError(row=row_no, field="SAMPLING_SITE", message=message))
                continue
            site_id, method_id, period_id = ids

        to_insert.append((
            StandardColumns(
                survey_sample_site_id=site_id,
                survey_sample_method_id=method_id,
                survey_sample_period_id=period_id,
                **values,
            ),
            measurements,
        ))

    if errors:
        logger.info("csv import for survey %s rejected with %d error(s)", survey_id, len(errors))
        raise ObservationImportError("Failed to process file for importing observations.", errors)

    upsert_definitions(db, used_definitions.values())
    for standard, measurements in to_insert:
        insert_observation(db, survey_id, standard, measurements)
    logger.info("csv import for survey %s added %d observation(s)", survey_id, len(to_insert))
    return len(to_insert)


def process_submission(db: Session, catalog: CritterbaseCatalog, survey_id: int, submission_id: int,
                       options: Optional[ProcessOptions] = None) -> int:
    sub = db.get(ObservationSubmission, submission_id)
    if sub is None or sub.survey_id != survey_id:
        raise SubmissionNotFound(f"submission {submission_id} not found")
    if sub.status != "uploaded":
        # 終了状態からの再実行はしない（再取込は新しいアップロードから）
        raise SubmissionStateError(f"submission {submission_id} is already {sub.status}")

    sub.status = "processing"
    sub.options = options.model_dump() if options else None
    db.commit()

    try:
        created = import_observations_csv(db, catalog, survey_id, Path(sub.file_path), options)
    except ObservationImportError as e:
        db.rollback()
        sub = db.get(ObservationSubmission, submission_id)
        sub.status = "failed"
        sub.errors = [err.model_dump() for err in e.errors] or [{"row": None, "field": None, "message": e.message}]
        sub.processed_at = dt.datetime.utcnow()
        db.commit()
        raise
    except Exception as e:
        db.rollback()
        logger.exception("submission %s for survey %s failed unexpectedly", submission_id, survey_id)
        sub = db.get(ObservationSubmission, submission_id)
        sub.status = "failed"
        sub.errors = [{"row": None, "field": None, "message": str(e) or type(e).__name__}]
        sub.processed_at = dt.datetime.utcnow()
        db.commit()
        raise

    sub.status = "succeeded"
    sub.errors = []
    sub.processed_at = dt.datetime.utcnow()
    db.commit()
    return created

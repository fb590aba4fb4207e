# backend/obsgrid/services/observations/repository.py
import logging
from typing import Iterable

from pydantic import TypeAdapter
from sqlalchemy.orm import Session

from obsgrid.models.measurement import MeasurementDefinitionRecord, ObservationMeasurement
from obsgrid.models.observation import Observation
from obsgrid.schemas.measurement import MeasurementDefinition, QualitativeValue, QuantitativeValue
from obsgrid.schemas.observation import (
    ObservationOut,
    ObservationsOut,
    ObservationToSave,
    StandardColumns,
    SupplementaryData,
)

logger = logging.getLogger(__name__)

_definition_adapter = TypeAdapter(MeasurementDefinition)

_STANDARD_FIELDS = (
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
)


class ObservationNotFound(Exception):
    def __init__(self, observation_id: int):
        super().__init__(f"observation {observation_id} not found")
        self.observation_id = observation_id


def upsert_definitions(db: Session, definitions: Iterable) -> None:
    for definition in definitions:
        rec = db.get(MeasurementDefinitionRecord, definition.id)
        data = definition.model_dump(mode="json")
        if rec is None:
            db.add(MeasurementDefinitionRecord(taxon_measurement_id=definition.id, kind=definition.kind, definition=data))
        else:
            rec.kind = definition.kind
            rec.definition = data


def _measurement_rows(observation_id: int, measurements: dict) -> list[ObservationMeasurement]:
    rows = []
    for measurement_id, mv in measurements.items():
        if mv.kind == "qualitative":
            rows.append(ObservationMeasurement(
                observation_id=observation_id, taxon_measurement_id=measurement_id,
                kind="qualitative", option_id=mv.value,
            ))
        else:
            rows.append(ObservationMeasurement(
                observation_id=observation_id, taxon_measurement_id=measurement_id,
                kind="quantitative", value=mv.value,
            ))
    return rows


def insert_observation(db: Session, survey_id: int, standard: StandardColumns, measurements: dict) -> Observation:
    obs = Observation(survey_id=survey_id, comment=standard.comment or "")
    for name in _STANDARD_FIELDS:
        setattr(obs, name, getattr(standard, name))
    db.add(obs)
    db.flush()  # id 採番
    db.add_all(_measurement_rows(obs.id, measurements))
    return obs


def save_observations(db: Session, survey_id: int, rows: list[ObservationToSave], definitions: Iterable = ()) -> list[int]:
    """Insert new rows and update existing ones (measurements replaced wholesale). Caller commits."""
    upsert_definitions(db, definitions)
    ids: list[int] = []
    for row in rows:
        std = row.standard
        if std.survey_observation_id is None:
            ids.append(insert_observation(db, survey_id, std, row.measurements).id)
            continue
        obs = db.get(Observation, std.survey_observation_id)
        if obs is None or obs.survey_id != survey_id:
            raise ObservationNotFound(std.survey_observation_id)
        for name in _STANDARD_FIELDS:
            setattr(obs, name, getattr(std, name))
        obs.comment = std.comment or ""
        db.query(ObservationMeasurement).filter(ObservationMeasurement.observation_id == obs.id).delete(
            synchronize_session=False
        )
        db.add_all(_measurement_rows(obs.id, row.measurements))
        ids.append(obs.id)
    logger.debug("saved %d observation(s) for survey %s", len(ids), survey_id)
    return ids


def list_observations(db: Session, survey_id: int) -> ObservationsOut:
    observations = (
        db.query(Observation).filter(Observation.survey_id == survey_id).order_by(Observation.id.asc()).all()
    )
    obs_ids = [o.id for o in observations]
    by_obs: dict[int, dict] = {oid: {} for oid in obs_ids}
    used_ids: list[str] = []
    if obs_ids:
        q = db.query(ObservationMeasurement).filter(ObservationMeasurement.observation_id.in_(obs_ids))
        for m in q.order_by(ObservationMeasurement.id.asc()).all():
            if m.kind == "qualitative":
                by_obs[m.observation_id][m.taxon_measurement_id] = QualitativeValue(value=m.option_id)
            else:
                by_obs[m.observation_id][m.taxon_measurement_id] = QuantitativeValue(value=m.value)
            if m.taxon_measurement_id not in used_ids:
                used_ids.append(m.taxon_measurement_id)

    definitions = []
    if used_ids:
        records = {
            r.taxon_measurement_id: r
            for r in db.query(MeasurementDefinitionRecord)
            .filter(MeasurementDefinitionRecord.taxon_measurement_id.in_(used_ids))
            .all()
        }
        for mid in used_ids:
            rec = records.get(mid)
            if rec is None:
                # 定義が無い値は列を復元できないので返さない
                logger.warning("measurement %s has values but no stored definition", mid)
                continue
            definitions.append(_definition_adapter.validate_python(rec.definition))

    out = [
        ObservationOut(
            survey_observation_id=o.id,
            survey_id=o.survey_id,
            itis_tsn=o.itis_tsn,
            itis_scientific_name=o.itis_scientific_name,
            survey_sample_site_id=o.survey_sample_site_id,
            survey_sample_method_id=o.survey_sample_method_id,
            survey_sample_period_id=o.survey_sample_period_id,
            count=o.count,
            observation_date=o.observation_date,
            observation_time=o.observation_time,
            latitude=o.latitude,
            longitude=o.longitude,
            comment=o.comment or "",
            measurements=by_obs[o.id],
        )
        for o in observations
    ]
    return ObservationsOut(
        observations=out,
        supplementary=SupplementaryData(observation_count=len(out), measurement_definitions=definitions),
    )


def delete_observations(db: Session, survey_id: int, observation_ids: list[int]) -> int:
    if not observation_ids:
        return 0
    q = db.query(Observation).filter(Observation.survey_id == survey_id, Observation.id.in_(observation_ids))
    targets = q.all()
    ids = [o.id for o in targets]
    if ids:
        # SQLite では FK カスケードが無効な場合があるため明示削除
        db.query(ObservationMeasurement).filter(ObservationMeasurement.observation_id.in_(ids)).delete(
            synchronize_session=False
        )
    for o in targets:
        db.delete(o)
    return len(targets)


def delete_measurements(db: Session, survey_id: int, measurement_ids: list[str]) -> int:
    if not measurement_ids:
        return 0
    obs_ids = db.query(Observation.id).filter(Observation.survey_id == survey_id)
    return (
        db.query(ObservationMeasurement)
        .filter(
            ObservationMeasurement.observation_id.in_(obs_ids.scalar_subquery()),
            ObservationMeasurement.taxon_measurement_id.in_(measurement_ids),
        )
        .delete(synchronize_session=False)
    )

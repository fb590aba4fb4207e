from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from obsgrid.db import get_db
from obsgrid.models.survey import Survey
from obsgrid.schemas.observation import MeasurementIdsIn, ObservationIdsIn, ObservationsOut, ObservationsSaveIn
from obsgrid.services.observations import repository
from obsgrid.services.observations.repository import ObservationNotFound

router = APIRouter()


def _get_survey(db: Session, survey_id: int) -> Survey:
    s = db.get(Survey, survey_id)
    if not s:
        raise HTTPException(status_code=404, detail="survey not found")
    return s


@router.get("")
@router.get("/")
def list_observations(survey_id: int, db: Session = Depends(get_db)) -> ObservationsOut:
    """
    調査の観察記録を返す。
    - 各行に計測値（taxon_measurement_id -> {kind, value}）を含める
    - supplementary.measurement_definitions に値が参照する計測項目定義を含める（列の復元用）
    """
    _get_survey(db, survey_id)
    return repository.list_observations(db, survey_id)


@router.put("")
@router.put("/")
def save_observations(survey_id: int, payload: ObservationsSaveIn, db: Session = Depends(get_db)):
    _get_survey(db, survey_id)
    try:
        ids = repository.save_observations(db, survey_id, payload.observations, payload.definitions)
    except ObservationNotFound as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    db.commit()
    return {"survey_observation_ids": ids}


@router.post("/delete")
def delete_observations(survey_id: int, payload: ObservationIdsIn, db: Session = Depends(get_db)):
    _get_survey(db, survey_id)
    deleted = repository.delete_observations(db, survey_id, payload.observation_ids)
    db.commit()
    return {"deleted": deleted}


@router.post("/measurements/delete")
def delete_measurements(survey_id: int, payload: MeasurementIdsIn, db: Session = Depends(get_db)):
    # 指定した計測列の値を調査内の全観察から削除
    _get_survey(db, survey_id)
    deleted = repository.delete_measurements(db, survey_id, payload.measurement_ids)
    db.commit()
    return {"deleted": deleted}

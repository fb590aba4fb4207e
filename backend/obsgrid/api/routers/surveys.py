from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session
from datetime import date as Date

from obsgrid.db import get_db
from obsgrid.models.observation import Observation
from obsgrid.models.sampling import SampleMethod, SamplePeriod, SampleSite
from obsgrid.models.submission import ObservationSubmission
from obsgrid.models.survey import Survey
from obsgrid.schemas.sampling import SampleSiteIn, SampleSiteOut
from obsgrid.schemas.survey import SurveyIn, SurveyOut, SurveyUpdate
from obsgrid.services.observations import repository

router = APIRouter()


def _to_out(db: Session, s: Survey) -> SurveyOut:
    count = db.query(Observation).filter(Observation.survey_id == s.id).count()
    return SurveyOut(
        id=s.id,
        name=s.name,
        start_date=s.start_date,
        end_date=s.end_date,
        observers=s.observers or "",
        observation_count=count,
    )


def _get_survey(db: Session, survey_id: int) -> Survey:
    s = db.get(Survey, survey_id)
    if not s:
        raise HTTPException(status_code=404, detail="survey not found")
    return s


@router.get("")
@router.get("/")
def list_surveys(db: Session = Depends(get_db)) -> list[SurveyOut]:
    rows = db.query(Survey).order_by(Survey.start_date.desc(), Survey.id.asc()).all()
    return [_to_out(db, s) for s in rows]


@router.post("")
@router.post("/")
def create_survey(payload: SurveyIn, db: Session = Depends(get_db)) -> SurveyOut:
    obj = Survey(
        name=payload.name,
        start_date=payload.start_date or Date.today(),
        end_date=payload.end_date,
        observers=payload.observers or "",
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return _to_out(db, obj)


@router.get("/{survey_id}")
def get_survey(survey_id: int, db: Session = Depends(get_db)) -> SurveyOut:
    return _to_out(db, _get_survey(db, survey_id))


@router.patch("/{survey_id}")
def update_survey(survey_id: int, payload: SurveyUpdate, db: Session = Depends(get_db)) -> SurveyOut:
    s = _get_survey(db, survey_id)
    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(s, field, value)
    if s.end_date and s.end_date < s.start_date:
        db.rollback()
        raise HTTPException(status_code=422, detail="end_date must not be before start_date")
    db.commit()
    db.refresh(s)
    return _to_out(db, s)


@router.delete("/{survey_id}")
def delete_survey(survey_id: int, db: Session = Depends(get_db)):
    s = _get_survey(db, survey_id)
    # SQLite では FK カスケードが効かないため、観察記録（計測値含む）と取込履歴を先に削除
    obs_ids = [oid for (oid,) in db.query(Observation.id).filter(Observation.survey_id == survey_id).all()]
    repository.delete_observations(db, survey_id, obs_ids)
    db.query(ObservationSubmission).filter(ObservationSubmission.survey_id == survey_id).delete(
        synchronize_session=False
    )
    db.delete(s)
    db.commit()
    return {"ok": True}


@router.get("/{survey_id}/stats")
def survey_stats(survey_id: int, db: Session = Depends(get_db)):
    _get_survey(db, survey_id)
    obs_count = db.query(Observation).filter(Observation.survey_id == survey_id).count()
    # 取込状況（status ごとの件数）
    by_status = dict(
        db.query(ObservationSubmission.status, func.count(ObservationSubmission.id))
        .filter(ObservationSubmission.survey_id == survey_id)
        .group_by(ObservationSubmission.status)
        .all()
    )
    return {"survey_id": survey_id, "observations_count": obs_count, "submissions": by_status}


@router.post("/{survey_id}/sample-sites")
def create_sample_site(survey_id: int, payload: SampleSiteIn, db: Session = Depends(get_db)) -> SampleSiteOut:
    """調査地点を手法・期間ごと登録する（CSV取込の期間指定で参照される階層）"""
    _get_survey(db, survey_id)
    site = SampleSite(survey_id=survey_id, name=payload.name)
    db.add(site)
    db.flush()
    for m in payload.methods:
        method = SampleMethod(sample_site_id=site.id, name=m.name)
        db.add(method)
        db.flush()
        for p in m.periods:
            db.add(SamplePeriod(sample_method_id=method.id, start_at=p.start_at, end_at=p.end_at))
    db.commit()
    return _site_out(db, site)


@router.get("/{survey_id}/sample-sites")
def list_sample_sites(survey_id: int, db: Session = Depends(get_db)) -> list[SampleSiteOut]:
    _get_survey(db, survey_id)
    sites = db.query(SampleSite).filter(SampleSite.survey_id == survey_id).order_by(SampleSite.id.asc()).all()
    return [_site_out(db, s) for s in sites]


def _site_out(db: Session, site: SampleSite) -> SampleSiteOut:
    methods = db.query(SampleMethod).filter(SampleMethod.sample_site_id == site.id).order_by(SampleMethod.id.asc()).all()
    return SampleSiteOut(
        id=site.id,
        name=site.name,
        methods=[
            {
                "id": m.id,
                "name": m.name,
                "periods": [
                    {"id": p.id, "start_at": p.start_at, "end_at": p.end_at}
                    for p in db.query(SamplePeriod)
                    .filter(SamplePeriod.sample_method_id == m.id)
                    .order_by(SamplePeriod.id.asc())
                    .all()
                ],
            }
            for m in methods
        ],
    )

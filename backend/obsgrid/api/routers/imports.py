import datetime as dt
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from obsgrid.db import get_db
from obsgrid.models.submission import ObservationSubmission
from obsgrid.models.survey import Survey
from obsgrid.schemas.commons import ErrorDetail
from obsgrid.schemas.submission import ProcessIn, ProcessOut, SubmissionOut, UploadOut
from obsgrid.services.catalog.critterbase import CritterbaseCatalog, get_catalog
from obsgrid.services.importing.observations_csv import (
    ObservationImportError,
    SubmissionNotFound,
    SubmissionStateError,
    process_submission,
)
from obsgrid.services.importing.storage import UploadRejected, check_csv_upload, store_upload

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_survey(db: Session, survey_id: int) -> Survey:
    s = db.get(Survey, survey_id)
    if not s:
        raise HTTPException(status_code=404, detail="survey not found")
    return s


@router.post("/upload")
def upload_observations_csv(survey_id: int, media: UploadFile = File(...), db: Session = Depends(get_db)) -> UploadOut:
    """CSV を受け取り submission を作成する（処理は /process で別途実行）"""
    _get_survey(db, survey_id)
    content = media.file.read()
    try:
        check_csv_upload(media.filename, content, media.content_type)
    except UploadRejected as e:
        raise HTTPException(status_code=400, detail=str(e))

    path = store_upload(survey_id, media.filename, content)
    sub = ObservationSubmission(
        survey_id=survey_id,
        original_filename=media.filename,
        file_path=str(path),
        status="uploaded",
        created_at=dt.datetime.utcnow(),
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    logger.info("observation csv %s uploaded for survey %s as submission %s", media.filename, survey_id, sub.id)
    return UploadOut(submission_id=sub.id)


@router.post("/process")
def process_observations_csv(
    survey_id: int,
    payload: ProcessIn,
    db: Session = Depends(get_db),
    catalog: CritterbaseCatalog = Depends(get_catalog),
) -> ProcessOut:
    _get_survey(db, survey_id)
    try:
        created = process_submission(db, catalog, survey_id, payload.submission_id, payload.options)
    except SubmissionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SubmissionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ObservationImportError as e:
        detail = ErrorDetail(message=e.message, errors=e.errors)
        raise HTTPException(status_code=422, detail=detail.model_dump())
    return ProcessOut(submission_id=payload.submission_id, status="succeeded", created=created)


@router.get("/submissions/{submission_id}")
def get_submission(survey_id: int, submission_id: int, db: Session = Depends(get_db)) -> SubmissionOut:
    sub = db.get(ObservationSubmission, submission_id)
    if not sub or sub.survey_id != survey_id:
        raise HTTPException(status_code=404, detail="submission not found")
    return SubmissionOut(
        id=sub.id,
        survey_id=sub.survey_id,
        original_filename=sub.original_filename,
        status=sub.status,
        options=sub.options,
        errors=sub.errors or [],
        created_at=sub.created_at,
        processed_at=sub.processed_at,
    )

# backend/obsgrid/schemas/submission.py
from pydantic import BaseModel
from datetime import datetime
from typing import Literal, Optional

from .commons import RowError

SubmissionStatus = Literal["uploaded", "processing", "succeeded", "failed"]


class ProcessOptions(BaseModel):
    # 全行を同一の調査期間に紐付ける場合に指定
    survey_sample_period_id: Optional[int] = None


class UploadOut(BaseModel):
    submission_id: int


class ProcessIn(BaseModel):
    submission_id: int
    options: Optional[ProcessOptions] = None


class ProcessOut(BaseModel):
    submission_id: int
    status: SubmissionStatus
    created: int


class SubmissionOut(BaseModel):
    id: int
    survey_id: int
    original_filename: str
    status: SubmissionStatus
    options: Optional[ProcessOptions] = None
    errors: list[RowError] = []
    created_at: datetime
    processed_at: Optional[datetime] = None

# backend/obsgrid/schemas/survey.py
from pydantic import BaseModel, model_validator
from typing import Optional
import datetime as dt


class SurveyIn(BaseModel):
    name: str
    start_date: Optional[dt.date] = None  # 省略時は当日
    end_date: Optional[dt.date] = None
    observers: str = ""

    @model_validator(mode="after")
    def _check_period(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SurveyOut(BaseModel):
    id: int
    name: str
    start_date: dt.date
    end_date: Optional[dt.date] = None
    observers: str
    observation_count: int = 0


class SurveyUpdate(BaseModel):
    name: Optional[str] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    observers: Optional[str] = None

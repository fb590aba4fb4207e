# backend/obsgrid/schemas/sampling.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class SamplePeriodIn(BaseModel):
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


class SampleMethodIn(BaseModel):
    name: str
    periods: list[SamplePeriodIn] = []


class SampleSiteIn(BaseModel):
    name: str
    methods: list[SampleMethodIn] = []


class SamplePeriodOut(SamplePeriodIn):
    id: int


class SampleMethodOut(BaseModel):
    id: int
    name: str
    periods: list[SamplePeriodOut] = []


class SampleSiteOut(BaseModel):
    id: int
    name: str
    methods: list[SampleMethodOut] = []

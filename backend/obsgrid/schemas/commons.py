# backend/obsgrid/schemas/commons.py
from pydantic import BaseModel
from typing import Optional


class RowError(BaseModel):
    # row は CSV のデータ行番号（ヘッダ行を除き 1 始まり）、グリッドでは行 id
    row: Optional[int | str] = None
    field: Optional[str] = None
    message: str


class ErrorDetail(BaseModel):
    message: str
    errors: list[RowError] = []

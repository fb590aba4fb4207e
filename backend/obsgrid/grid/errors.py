# backend/obsgrid/grid/errors.py
from typing import Optional

from obsgrid.schemas.commons import RowError


class GridError(Exception):
    """Base class for observation grid errors. None of them is fatal to the host application."""


class ValidationRejected(GridError):
    """Input was rejected before it was stored (file checks, the upload step or a grid cell value)."""


class ProcessingFailed(GridError):
    def __init__(self, message: str, errors: Optional[list[RowError]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class PersistenceWriteFailed(GridError):
    """The session-scoped column store could not be written; in-memory state is still valid."""


class StaleColumnReference(GridError):
    def __init__(self, field_key: str):
        super().__init__(f"no measurement column registered for {field_key!r}")
        self.field_key = field_key


class ImportInProgress(GridError):
    pass


class GridApiError(GridError):
    def __init__(self, status_code: int, message: str, errors: Optional[list[RowError]] = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.errors = errors or []

# backend/obsgrid/grid/importer.py
"""
Two-phase CSV import as seen from the grid.

The file is uploaded first (creating a submission), then the submission is
processed server-side. Callers follow progress through hooks:

    on_start   entering UPLOADING
    on_success after processing succeeded (never after the upload alone)
    on_error   a failure in either phase, or a GridError raised by on_success
    on_finish  always, and always last

Client-side file checks happen in ``select_file`` and never fire hooks.
"""
import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Callable, Optional

from pydantic import BaseModel

from obsgrid.schemas.commons import RowError
from obsgrid.schemas.submission import ProcessOptions, SubmissionStatus
from obsgrid.grid.errors import GridError, ImportInProgress, ValidationRejected

logger = logging.getLogger(__name__)

ALLOWED_EXTENSION = ".csv"


class ImportStatus(str, enum.Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_IN_FLIGHT = (ImportStatus.UPLOADING, ImportStatus.UPLOADED, ImportStatus.PROCESSING)
_CANCELLABLE = (ImportStatus.UPLOADING, ImportStatus.UPLOADED)


class ImportSubmission(BaseModel):
    id: int
    status: SubmissionStatus = "uploaded"
    options: Optional[ProcessOptions] = None
    created: int = 0
    errors: list[RowError] = []


@dataclass
class ImportHooks:
    on_start: Optional[Callable[[], Any]] = None
    on_success: Optional[Callable[[ImportSubmission], Any]] = None
    on_error: Optional[Callable[[GridError], Any]] = None
    on_finish: Optional[Callable[[], Any]] = None


async def fire_hook(hook: Optional[Callable], *args) -> None:
    if hook is None:
        return
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class ImportPipeline:
    def __init__(self, api, survey_id: int):
        self.api = api
        self.survey_id = survey_id
        self.status = ImportStatus.IDLE
        self.submission: Optional[ImportSubmission] = None
        self.error: Optional[GridError] = None
        self._file: Optional[tuple[str, bytes]] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def in_progress(self) -> bool:
        return self.status in _IN_FLIGHT

    def _set_status(self, status: ImportStatus) -> None:
        logger.debug("survey %s import: %s -> %s", self.survey_id, self.status.value, status.value)
        self.status = status

    def select_file(self, filename: str, content: bytes) -> None:
        """Pick the file to import, replacing any pending one."""
        if self.in_progress:
            raise ImportInProgress("an import is already running")
        if PurePath(filename or "").suffix.lower() != ALLOWED_EXTENSION:
            raise ValidationRejected(f"only {ALLOWED_EXTENSION} files can be imported: {filename!r}")
        if not content:
            raise ValidationRejected(f"{filename} is empty")
        self._file = (filename, content)
        # 終了状態からの再取込は新しい submission から
        self.submission = None
        self.error = None
        self.status = ImportStatus.IDLE

    def cancel(self) -> bool:
        """Abort while uploading. Returns False once processing has started."""
        if self.status not in _CANCELLABLE or self._task is None:
            return False
        self._cancel_requested = True
        self._task.cancel()
        return True

    async def run(self, options: Optional[ProcessOptions] = None, hooks: Optional[ImportHooks] = None) -> Optional[ImportSubmission]:
        if self.in_progress:
            raise ImportInProgress("an import is already running")
        if self._file is None:
            raise ValidationRejected("no file selected")

        hooks = hooks or ImportHooks()
        filename, content = self._file
        self._task = asyncio.current_task()
        self._cancel_requested = False
        self.submission = None
        self.error = None

        self._set_status(ImportStatus.UPLOADING)
        try:
            await fire_hook(hooks.on_start)

            submission_id = await self.api.upload(self.survey_id, filename, content)
            self.submission = ImportSubmission(id=submission_id, options=options)
            self._set_status(ImportStatus.UPLOADED)
            logger.info("survey %s: uploaded %s as submission %s", self.survey_id, filename, submission_id)

            self._set_status(ImportStatus.PROCESSING)
            # 処理開始後は中断不可
            result = await asyncio.shield(self.api.process(self.survey_id, submission_id, options))
        except asyncio.CancelledError:
            if not self._cancel_requested:
                self._set_status(ImportStatus.FAILED)
                raise
            logger.info("survey %s: import of %s cancelled", self.survey_id, filename)
            task = asyncio.current_task()
            if hasattr(task, "uncancel"):
                task.uncancel()
            self.submission = None
            self._set_status(ImportStatus.IDLE)
        except GridError as e:
            self.error = e
            if self.submission is not None:
                self.submission = self.submission.model_copy(
                    update={"status": "failed", "errors": list(getattr(e, "errors", []))}
                )
            self._set_status(ImportStatus.FAILED)
            logger.warning("survey %s: import of %s failed: %s", self.survey_id, filename, e)
            await fire_hook(hooks.on_error, e)
        else:
            self.submission = self.submission.model_copy(update={"status": result.status, "created": result.created})
            self._set_status(ImportStatus.SUCCEEDED)
            logger.info("survey %s: submission %s created %d observation(s)", self.survey_id, result.submission_id, result.created)
            try:
                await fire_hook(hooks.on_success, self.submission)
            except GridError as e:
                # 取込後の一覧更新の失敗など
                self.error = e
                self._set_status(ImportStatus.FAILED)
                logger.warning("survey %s: after importing %s: %s", self.survey_id, filename, e)
                await fire_hook(hooks.on_error, e)
        finally:
            if self.status in _IN_FLIGHT:
                self._set_status(ImportStatus.FAILED)
            self._file = None
            self._task = None
            await fire_hook(hooks.on_finish)

        return self.submission

    async def import_file(self, filename: str, content: bytes, options: Optional[ProcessOptions] = None,
                          hooks: Optional[ImportHooks] = None) -> Optional[ImportSubmission]:
        self.select_file(filename, content)
        return await self.run(options, hooks)

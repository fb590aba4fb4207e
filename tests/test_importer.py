import asyncio

import pytest

from obsgrid.schemas.commons import RowError
from obsgrid.schemas.submission import ProcessOptions, ProcessOut
from obsgrid.grid.errors import GridApiError, ImportInProgress, ProcessingFailed, ValidationRejected
from obsgrid.grid.importer import ImportHooks, ImportPipeline, ImportStatus

CSV = b"ITIS_TSN,COUNT\n180703,2\n"


class FakeApi:
    def __init__(self, upload_error=None, process_error=None):
        self.upload_error = upload_error
        self.process_error = process_error
        self.uploads = []
        self.processed = []
        self.upload_gate = None
        self.process_gate = None
        self.upload_started = asyncio.Event()
        self.process_started = asyncio.Event()

    async def upload(self, survey_id, filename, content):
        self.uploads.append(filename)
        self.upload_started.set()
        if self.upload_gate is not None:
            await self.upload_gate.wait()
        if self.upload_error:
            raise self.upload_error
        return len(self.uploads) + 100

    async def process(self, survey_id, submission_id, options=None):
        self.processed.append((submission_id, options))
        self.process_started.set()
        if self.process_gate is not None:
            await self.process_gate.wait()
        if self.process_error:
            raise self.process_error
        return ProcessOut(submission_id=submission_id, status="succeeded", created=1)


def _recording_hooks(events):
    return ImportHooks(
        on_start=lambda: events.append("start"),
        on_success=lambda sub: events.append("success"),
        on_error=lambda err: events.append(("error", type(err).__name__)),
        on_finish=lambda: events.append("finish"),
    )


def test_success_fires_hooks_in_order():
    async def scenario():
        api = FakeApi()
        pipeline = ImportPipeline(api, 1)
        events = []
        sub = await pipeline.import_file("moose.csv", CSV, ProcessOptions(survey_sample_period_id=9),
                                         _recording_hooks(events))
        return api, pipeline, events, sub

    api, pipeline, events, sub = asyncio.run(scenario())

    assert events == ["start", "success", "finish"]
    assert pipeline.status is ImportStatus.SUCCEEDED
    assert sub.status == "succeeded" and sub.created == 1
    assert api.processed == [(101, ProcessOptions(survey_sample_period_id=9))]


def test_upload_failure_skips_processing():
    async def scenario():
        api = FakeApi(upload_error=ValidationRejected("Invalid content type"))
        pipeline = ImportPipeline(api, 1)
        events = []
        await pipeline.import_file("moose.csv", CSV, hooks=_recording_hooks(events))
        return api, pipeline, events

    api, pipeline, events = asyncio.run(scenario())

    assert events == ["start", ("error", "ValidationRejected"), "finish"]
    assert pipeline.status is ImportStatus.FAILED
    assert api.processed == []


def test_processing_failure_keeps_row_errors():
    errors = [RowError(row=1, field="COUNT", message="Missing count")]

    async def scenario():
        api = FakeApi(process_error=ProcessingFailed("Failed to process file", errors))
        pipeline = ImportPipeline(api, 1)
        events = []
        sub = await pipeline.import_file("moose.csv", CSV, hooks=_recording_hooks(events))
        return pipeline, events, sub

    pipeline, events, sub = asyncio.run(scenario())

    assert events == ["start", ("error", "ProcessingFailed"), "finish"]
    assert sub.status == "failed"
    assert sub.errors == errors
    assert pipeline.error.errors == errors


def test_network_error_during_upload_reaches_on_error():
    async def scenario():
        pipeline = ImportPipeline(FakeApi(upload_error=GridApiError(0, "connection refused")), 1)
        events = []
        await pipeline.import_file("moose.csv", CSV, hooks=_recording_hooks(events))
        return events

    assert asyncio.run(scenario()) == ["start", ("error", "GridApiError"), "finish"]


@pytest.mark.parametrize("filename, content", [("moose.xlsx", CSV), ("moose", CSV), ("moose.csv", b"")])
def test_client_side_rejection_fires_no_hooks(filename, content):
    pipeline = ImportPipeline(FakeApi(), 1)

    with pytest.raises(ValidationRejected):
        pipeline.select_file(filename, content)

    assert pipeline.status is ImportStatus.IDLE


def test_uppercase_extension_is_accepted():
    pipeline = ImportPipeline(FakeApi(), 1)

    pipeline.select_file("MOOSE.CSV", CSV)

    assert pipeline.status is ImportStatus.IDLE


def test_cancel_while_uploading_returns_to_idle():
    async def scenario():
        api = FakeApi()
        api.upload_gate = asyncio.Event()
        pipeline = ImportPipeline(api, 1)
        events = []
        task = asyncio.create_task(pipeline.import_file("moose.csv", CSV, hooks=_recording_hooks(events)))
        await api.upload_started.wait()
        assert pipeline.status is ImportStatus.UPLOADING
        cancelled = pipeline.cancel()
        result = await task
        return api, pipeline, events, cancelled, result

    api, pipeline, events, cancelled, result = asyncio.run(scenario())

    assert cancelled is True
    assert result is None
    assert events == ["start", "finish"]
    assert pipeline.status is ImportStatus.IDLE
    assert api.processed == []


def test_cancel_is_refused_once_processing():
    async def scenario():
        api = FakeApi()
        api.process_gate = asyncio.Event()
        pipeline = ImportPipeline(api, 1)
        task = asyncio.create_task(pipeline.import_file("moose.csv", CSV))
        await api.process_started.wait()
        refused = pipeline.cancel()
        api.process_gate.set()
        await task
        return pipeline, refused

    pipeline, refused = asyncio.run(scenario())

    assert refused is False
    assert pipeline.status is ImportStatus.SUCCEEDED


def test_second_run_while_in_flight_is_rejected():
    async def scenario():
        api = FakeApi()
        api.upload_gate = asyncio.Event()
        pipeline = ImportPipeline(api, 1)
        task = asyncio.create_task(pipeline.import_file("moose.csv", CSV))
        await api.upload_started.wait()
        with pytest.raises(ImportInProgress):
            await pipeline.import_file("other.csv", CSV)
        api.upload_gate.set()
        await task
        return api

    api = asyncio.run(scenario())

    assert api.uploads == ["moose.csv"]


def test_async_hooks_are_awaited_and_each_import_gets_a_new_submission():
    async def scenario():
        api = FakeApi()
        pipeline = ImportPipeline(api, 1)
        events = []

        async def on_success(sub):
            await asyncio.sleep(0)
            events.append(sub.id)

        async def on_finish():
            events.append("finish")

        hooks = ImportHooks(on_success=on_success, on_finish=on_finish)
        await pipeline.import_file("a.csv", CSV, hooks=hooks)
        await pipeline.import_file("b.csv", CSV, hooks=hooks)
        return events

    assert asyncio.run(scenario()) == [101, "finish", 102, "finish"]


def test_grid_error_from_on_success_is_reported_through_on_error():
    async def scenario():
        pipeline = ImportPipeline(FakeApi(), 1)
        events = []

        def on_success(sub):
            raise GridApiError(503, "service unavailable")

        hooks = ImportHooks(
            on_start=lambda: events.append("start"),
            on_success=on_success,
            on_error=lambda err: events.append(("error", type(err).__name__)),
            on_finish=lambda: events.append("finish"),
        )
        await pipeline.import_file("moose.csv", CSV, hooks=hooks)
        return pipeline, events

    pipeline, events = asyncio.run(scenario())

    assert events == ["start", ("error", "GridApiError"), "finish"]
    assert pipeline.status is ImportStatus.FAILED


def test_cancelled_import_leaves_the_running_task_usable():
    async def scenario():
        api = FakeApi()
        api.upload_gate = asyncio.Event()
        pipeline = ImportPipeline(api, 1)

        async def cancel_once_uploading():
            await api.upload_started.wait()
            pipeline.cancel()

        canceller = asyncio.create_task(cancel_once_uploading())
        result = await pipeline.import_file("moose.csv", CSV)
        await canceller
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(asyncio.Event().wait(), timeout=0.01)
        task = asyncio.current_task()
        cancelling = task.cancelling() if hasattr(task, "cancelling") else 0
        return pipeline, result, cancelling

    pipeline, result, cancelling = asyncio.run(scenario())

    assert result is None
    assert pipeline.status is ImportStatus.IDLE
    assert cancelling == 0

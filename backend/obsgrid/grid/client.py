# backend/obsgrid/grid/client.py
"""
Async client for the observation API, used by the grid controller and the
import pipeline. HTTP failures are translated into the grid error types.
"""
import logging
from typing import Optional

import httpx
from pydantic import TypeAdapter

from obsgrid.schemas.commons import RowError
from obsgrid.schemas.measurement import MeasurementDefinition
from obsgrid.schemas.observation import ObservationsOut, ObservationsSaveIn
from obsgrid.schemas.submission import ProcessOptions, ProcessOut, SubmissionOut
from obsgrid.grid.errors import GridApiError, ProcessingFailed, ValidationRejected

logger = logging.getLogger(__name__)

_definitions_adapter = TypeAdapter(list[MeasurementDefinition])


def _error_parts(resp: httpx.Response) -> tuple[str, list[RowError]]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase, []
    detail = body.get("detail") if isinstance(body, dict) else body
    if isinstance(detail, dict):
        errors = [RowError.model_validate(e) for e in detail.get("errors") or []]
        return detail.get("message") or resp.reason_phrase, errors
    if isinstance(detail, list):
        # FastAPI のリクエスト検証エラー
        return "Request validation failed", [
            RowError(field=".".join(str(p) for p in e.get("loc", [])), message=e.get("msg", "")) for e in detail
        ]
    return str(detail or resp.reason_phrase), []


class ObservationApiClient:
    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise GridApiError(0, f"request to {path} failed: {e}") from e
        if resp.status_code >= 400:
            message, errors = _error_parts(resp)
            raise GridApiError(resp.status_code, message, errors)
        return resp

    # --- 取込（2段階） ---

    async def upload(self, survey_id: int, filename: str, content: bytes) -> int:
        try:
            resp = await self._request(
                "POST",
                f"/surveys/{survey_id}/observations/upload",
                files={"media": (filename, content, "text/csv")},
            )
        except GridApiError as e:
            if e.status_code == 400:
                raise ValidationRejected(e.message) from e
            raise
        return int(resp.json()["submission_id"])

    async def process(self, survey_id: int, submission_id: int, options: Optional[ProcessOptions] = None) -> ProcessOut:
        body = {"submission_id": submission_id, "options": options.model_dump() if options else None}
        try:
            resp = await self._request("POST", f"/surveys/{survey_id}/observations/process", json=body)
        except GridApiError as e:
            raise ProcessingFailed(e.message, e.errors) from e
        return ProcessOut.model_validate(resp.json())

    async def get_submission(self, survey_id: int, submission_id: int) -> SubmissionOut:
        resp = await self._request("GET", f"/surveys/{survey_id}/observations/submissions/{submission_id}")
        return SubmissionOut.model_validate(resp.json())

    # --- 観察記録 ---

    async def list_observations(self, survey_id: int) -> ObservationsOut:
        resp = await self._request("GET", f"/surveys/{survey_id}/observations")
        return ObservationsOut.model_validate(resp.json())

    async def save_observations(self, survey_id: int, payload: ObservationsSaveIn) -> list[int]:
        resp = await self._request("PUT", f"/surveys/{survey_id}/observations", json=payload.model_dump(mode="json"))
        return resp.json()["survey_observation_ids"]

    async def delete_observations(self, survey_id: int, observation_ids: list[int]) -> int:
        resp = await self._request(
            "POST", f"/surveys/{survey_id}/observations/delete", json={"observation_ids": observation_ids}
        )
        return resp.json()["deleted"]

    async def delete_measurements(self, survey_id: int, measurement_ids: list[str]) -> int:
        resp = await self._request(
            "POST", f"/surveys/{survey_id}/observations/measurements/delete", json={"measurement_ids": measurement_ids}
        )
        return resp.json()["deleted"]

    # --- 計測項目カタログ ---

    async def taxon_measurements(self, tsn: int, keyword: Optional[str] = None) -> list:
        params = {"keyword": keyword} if keyword else None
        resp = await self._request("GET", f"/taxa/{tsn}/measurements", params=params)
        return _definitions_adapter.validate_python(resp.json())


class HttpMeasurementCatalog:
    """MeasurementCatalog backed by the API's taxon measurement endpoint."""

    def __init__(self, api: ObservationApiClient):
        self.api = api

    async def search(self, taxon_id: int, keyword: Optional[str] = None) -> list:
        return await self.api.taxon_measurements(taxon_id, keyword)

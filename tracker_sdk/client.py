import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from photogen.api.schemas import (
    ExecuteResponse,
    GenerationOut,
    MergeResponse,
    ProgressResponse,
    PromptsResponse,
    UpdatePromptsResponse,
    prompts_by_type,
)
from photogen.domain.errors import ApiError
from photogen.domain.models import JobProgress, VisualItem

logger = logging.getLogger(__name__)

CONNECTION_ERROR = "Network error. Please check your connection and try again."

class JobApiClient:
    """
    Async client for the generation service's /api/generations endpoints.

    Every method raises ApiError on a non-2xx response, a transport failure
    or an unparseable body; callers decide what that means for the job.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/generations",
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "JobApiClient":
        return cls(settings.API_URL, token=settings.API_TOKEN or None, timeout=settings.HTTP_TIMEOUT_SECONDS)

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def _error_messages(resp: httpx.Response, fallback: str) -> tuple[list[str], Any]:
        try:
            data = resp.json()
        except ValueError:
            return [fallback], None
        if not isinstance(data, dict):
            return [fallback], data
        # Nest-style {"message": str | [str]} or FastAPI-style {"detail": ...}
        message = data.get("message") or data.get("detail") or fallback
        if isinstance(message, list):
            return [str(m) for m in message], data
        return [str(message)], data

    async def _request(self, method: str, path: str, fallback: str, json_body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, json=json_body, headers=self._build_headers())
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise ApiError(None, [CONNECTION_ERROR]) from e

        if resp.is_error:
            messages, payload = self._error_messages(resp, fallback)
            log_fn = logger.info if resp.status_code in (401, 403, 404, 422) else logger.warning
            log_fn("%s %s rejected status=%s: %s", method, path, resp.status_code, messages)
            raise ApiError(resp.status_code, messages, payload)
        return resp

    async def _json(self, method: str, path: str, fallback: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._request(method, path, fallback, json_body)
        try:
            return resp.json()
        except ValueError as e:
            raise ApiError(resp.status_code, [f"{fallback}: invalid JSON"]) from e

    @staticmethod
    def _parse(model, data: Any, fallback: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ApiError(None, [f"{fallback}: unexpected response"], data) from e

    async def create_job(
        self,
        product_id: str,
        collection_id: str,
        generation_type: str = "product_visuals",
        resolution: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        """Creates a generation and returns its id."""
        body: Dict[str, Any] = {
            "product_id": product_id,
            "collection_id": collection_id,
            "generation_type": generation_type,
        }
        if resolution:
            body["resolution"] = resolution
        if aspect_ratio:
            body["aspect_ratio"] = aspect_ratio
        fallback = "Failed to create generation"
        data = await self._json("POST", "/createGeneration", fallback, body)
        return self._parse(GenerationOut, data, fallback).id

    async def merge_prompts(self, job_id: str, options: Optional[Dict[str, Any]] = None) -> dict[str, str]:
        """Merges product + DA prompts. Returns the ordered {type: prompt} set."""
        fallback = "Failed to merge prompts"
        data = await self._json("POST", f"/{job_id}/merge", fallback, options or {})
        merged = self._parse(MergeResponse, data, fallback)
        return prompts_by_type(merged.merged_prompts)

    async def execute_job(self, job_id: str) -> list[VisualItem]:
        fallback = "Failed to execute generation"
        data = await self._json("POST", f"/{job_id}/execute", fallback)
        return self._parse(ExecuteResponse, data, fallback).generation.items()

    async def get_job_snapshot(self, job_id: str) -> JobProgress:
        fallback = "Failed to get progress"
        data = await self._json("GET", f"/getProgress/{job_id}", fallback)
        return self._parse(ProgressResponse, data, fallback).to_domain()

    async def retry_item(self, job_id: str, index: int, model: Optional[str] = None) -> list[VisualItem]:
        """Retries one visual, addressed by its position. Returns the job's items."""
        fallback = "Failed to retry visual"
        data = await self._json("POST", f"/{job_id}/visual/{index}/retry", fallback, {"model": model})
        return self._parse(GenerationOut, data, fallback).items()

    async def get_job(self, job_id: str) -> GenerationOut:
        fallback = "Failed to get generation"
        data = await self._json("GET", f"/getGeneration/{job_id}", fallback)
        return self._parse(GenerationOut, data, fallback)

    async def reset_job(self, job_id: str) -> GenerationOut:
        fallback = "Failed to reset generation"
        data = await self._json("POST", f"/reset/{job_id}", fallback)
        return self._parse(GenerationOut, data, fallback)

    async def get_prompts(self, job_id: str) -> PromptsResponse:
        fallback = "Failed to get prompts"
        data = await self._json("GET", f"/getPrompts/{job_id}", fallback)
        return self._parse(PromptsResponse, data, fallback)

    async def update_merged_prompts(self, job_id: str, prompts: Dict[str, Any]) -> UpdatePromptsResponse:
        fallback = "Failed to update prompts"
        data = await self._json("POST", f"/updateMergedPrompts/{job_id}", fallback, {"prompts": prompts})
        return self._parse(UpdatePromptsResponse, data, fallback)

    async def download_archive(self, job_id: str) -> bytes:
        """Returns the zip of all generated images."""
        resp = await self._request("GET", f"/download/{job_id}", "Failed to download")
        return resp.content

    async def close(self):
        await self.client.aclose()

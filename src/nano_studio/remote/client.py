"""HTTP implementation of RemoteJobClient talking to the nano-studio proxy.

The proxy keeps the API credential server-side; this client only knows the
proxy's base URL. Request and response bodies use the proxy's camelCase names.

Error mapping:
- Transport failures (connection refused, timeouts) -> RemoteJobError
- Non-2xx answers -> RemoteJobError carrying the proxy's ``error`` text
- 2xx answers with an unexpected body -> RemoteResultError
"""

import logging
from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from ..exceptions import RemoteJobError, RemoteResultError
from ..queue.backends import RemoteJobClient
from ..queue.models import (
    BatchResults,
    BatchStatus,
    BatchSubmission,
    EditRequest,
    GenerateRequest,
    OperationStatus,
    SegmentRequest,
    SegmentResult,
    VideoGenerateRequest,
    VideoResult,
    VideoSubmission,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3001"
DEFAULT_TIMEOUT_S = 60.0

ModelT = TypeVar("ModelT", bound=BaseModel)


class HttpRemoteJobClient(RemoteJobClient):
    """Remote job client over httpx.AsyncClient.

    Args:
        base_url: Proxy root, e.g. ``http://localhost:3001``
        timeout_s: Per-request timeout (not a job-completion timeout)
        client: Pre-built AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)

    @classmethod
    def from_config(cls, config) -> "HttpRemoteJobClient":
        return cls(base_url=config.remote.base_url, timeout_s=config.remote.timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        response_model: Type[ModelT],
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> ModelT:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise RemoteJobError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            raise RemoteJobError(self._error_text(response), status_code=response.status_code)

        try:
            return response_model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RemoteResultError(
                f"Unexpected response from {method} {path}: {e}", status_code=response.status_code
            ) from e

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"Proxy returned HTTP {response.status_code}"

    async def submit_batch_generate(self, request: GenerateRequest) -> BatchSubmission:
        logger.debug(f"Submitting batch generate ({request.variant_count or 1} variant(s))")
        return await self._request("POST", "/api/batch/generate", BatchSubmission, json=request.to_wire())

    async def submit_batch_edit(self, request: EditRequest) -> BatchSubmission:
        logger.debug(f"Submitting batch edit ({request.variant_count or 1} variant(s))")
        return await self._request("POST", "/api/batch/edit", BatchSubmission, json=request.to_wire())

    async def get_batch_status(self, batch_name: str) -> BatchStatus:
        return await self._request("GET", f"/api/batch/{quote(batch_name, safe='')}", BatchStatus)

    async def get_batch_results(self, batch_name: str) -> BatchResults:
        return await self._request("GET", f"/api/batch/{quote(batch_name, safe='')}/results", BatchResults)

    async def start_video_generation(self, request: VideoGenerateRequest) -> VideoSubmission:
        return await self._request("POST", "/api/video/generate", VideoSubmission, json=request.to_wire())

    async def get_operation_status(self, operation_name: str) -> OperationStatus:
        return await self._request(
            "GET", "/api/video/operation/status", OperationStatus, params={"name": operation_name}
        )

    async def get_operation_result(self, operation_name: str) -> VideoResult:
        return await self._request(
            "GET", "/api/video/operation/result", VideoResult, params={"name": operation_name}
        )

    async def generate_image(self, request: GenerateRequest) -> BatchResults:
        logger.debug(f"Generating immediately ({request.variant_count or 1} variant(s))")
        return await self._request("POST", "/api/generate", BatchResults, json=request.to_wire())

    async def edit_image(self, request: EditRequest) -> BatchResults:
        return await self._request("POST", "/api/edit", BatchResults, json=request.to_wire())

    async def segment_image(self, request: SegmentRequest) -> SegmentResult:
        return await self._request("POST", "/api/segment", SegmentResult, json=request.to_wire())

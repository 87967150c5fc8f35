"""
Storage API client

Speaks the ``{code, message, data}`` envelope protocol over httpx and turns
every failure into one of the classified errors in ``core.errors``. It does
no retrying of its own; the scheduler and merge coordinator decide that.
"""
import json
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import (
    ApiError,
    BusinessError,
    ResultCode,
    ServerError,
    StateMismatchError,
    TransportError,
)
from ..schemas import (
    ApiResponse,
    ChunkUploadResponse,
    DirectUploadDto,
    FileCheckRequest,
    FileExistsResponse,
    InitSessionRequest,
    LegacyMergeRequest,
    MergeRequest,
    SessionStatusResponse,
)

logger = logging.getLogger(__name__)


class StorageApiClient:
    """Async client for the chunked upload endpoints under ``api_prefix``."""

    def __init__(
        self,
        base_url: str = None,
        api_prefix: str = None,
        timeout: float = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_prefix = (api_prefix if api_prefix is not None else settings.API_PREFIX).rstrip("/")
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url or settings.API_BASE_URL,
                timeout=timeout if timeout is not None else settings.REQUEST_TIMEOUT,
            )
            self._owns_client = True

    async def __aenter__(self) -> "StorageApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ==================== Endpoints ====================

    async def check_file(self, file_hash: str) -> FileExistsResponse:
        data = await self._request(
            "POST", "/check", json=FileCheckRequest(file_hash=file_hash).to_wire()
        )
        return self._parse(FileExistsResponse, data or {"exists": False})

    async def init_session(self, request: InitSessionRequest) -> SessionStatusResponse:
        data = await self._request("POST", "/upload/init", json=request.to_wire())
        return self._parse(SessionStatusResponse, data)

    async def get_status(self, session_id: str) -> SessionStatusResponse:
        data = await self._request("GET", f"/upload/status/{session_id}")
        return self._parse(SessionStatusResponse, data)

    async def upload_chunk(
        self,
        chunk_number: int,
        content: bytes,
        session_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> ChunkUploadResponse:
        """Upload one chunk, keyed by ``session_id`` (session protocol) or ``batch_id`` (legacy)."""
        form = {"chunkNumber": str(chunk_number)}
        if session_id is not None:
            form["sessionId"] = session_id
        if batch_id is not None:
            form["batchId"] = batch_id
        data = await self._request(
            "POST",
            "/upload/chunk",
            data=form,
            files={"file": (f"chunk_{chunk_number}", content, "application/octet-stream")},
        )
        if not data:
            return ChunkUploadResponse(chunk_number=chunk_number)
        return self._parse(ChunkUploadResponse, data)

    async def merge(self, request: MergeRequest) -> Any:
        return await self._request("POST", "/upload/merge-v2", json=request.to_wire())

    async def merge_legacy(self, request: LegacyMergeRequest) -> Any:
        return await self._request("POST", "/upload/merge", json=request.to_wire())

    async def upload_file(self, content: bytes, dto: DirectUploadDto) -> Any:
        """Single-request upload for files smaller than one chunk."""
        return await self._request(
            "POST",
            "/upload/file",
            files={
                "file": (dto.file_name, content, dto.content_type),
                "dto": ("dto.json", json.dumps(dto.to_wire()), "application/json"),
            },
        )

    # ==================== Envelope handling ====================

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.api_prefix}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.debug(f"{method} {url} got no response: {e!r}")
            raise TransportError(f"{method} {url} failed: {e}", cause=e) from e
        except httpx.HTTPError as e:
            # decoding errors, redirect loops: a response arrived but is unusable
            raise ApiError(f"{method} {url} failed: {e!r}", cause=e) from e

        if response.status_code >= 500:
            envelope = self._parse_envelope(response)
            raise ServerError(
                envelope.message if envelope and envelope.message else f"Server error on {method} {url}",
                code=envelope.code if envelope else None,
                http_status=response.status_code,
                data=envelope.data if envelope else None,
            )

        envelope = self._parse_envelope(response)
        if envelope is None:
            if response.status_code >= 400:
                raise BusinessError(
                    f"{method} {url} rejected: {response.text[:200]}",
                    code=response.status_code,
                    http_status=response.status_code,
                )
            raise ServerError(
                f"{method} {url} returned a malformed body",
                http_status=response.status_code,
            )

        if envelope.code != ResultCode.SUCCESS:
            error_cls = (
                StateMismatchError
                if envelope.code == ResultCode.UPLOAD_SESSION_STATE_MISMATCH
                else BusinessError
            )
            raise error_cls(
                envelope.message or "Request rejected",
                code=envelope.code,
                http_status=response.status_code,
                data=envelope.data,
            )
        return envelope.data

    @staticmethod
    def _parse(model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ServerError(f"Unexpected {model.__name__} payload: {e}", data=data, cause=e) from e

    @staticmethod
    def _parse_envelope(response: httpx.Response) -> Optional[ApiResponse]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict) or "code" not in body:
            return None
        try:
            return ApiResponse.model_validate(body)
        except ValueError:
            return None

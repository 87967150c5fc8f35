"""
FastAPI endpoints for the chunked upload protocol

Every response is a ``{code, message, data}`` envelope. Business failures
are raised as ``StorageRejection`` and rendered by the app's exception
handler.
"""
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import Response
from pydantic import ValidationError

from ..core.errors import ResultCode
from ..schemas import (
    ApiResponse,
    ChunkUploadResponse,
    DirectUploadDto,
    FileCheckRequest,
    FileExistsResponse,
    InitSessionRequest,
    LegacyMergeRequest,
    MergeRequest,
)
from .storage import StorageRejection, UploadStorage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["upload"])
objects_router = APIRouter(tags=["objects"])


def get_storage(request: Request) -> UploadStorage:
    return request.app.state.storage


StorageDep = Annotated[UploadStorage, Depends(get_storage)]


def success(data=None) -> dict:
    return ApiResponse(code=ResultCode.SUCCESS, message="success", data=data).model_dump()


@router.post("/check")
async def check_file(request: FileCheckRequest, storage: StorageDep):
    """Existence check by content fingerprint"""
    stored = storage.find_object(request.file_hash)
    logger.info(f"🔍 Check {request.file_hash[:8]}: {'exists' if stored else 'missing'}")
    return success(FileExistsResponse(exists=stored is not None, url=stored.url if stored else None).to_wire())


@router.post("/upload/init")
async def init_upload(request: InitSessionRequest, storage: StorageDep):
    """Open a session, or hand back the existing one for this fingerprint"""
    record = storage.init_session(request)
    return success(record.to_response().to_wire())


@router.get("/upload/status/{session_id}")
async def get_upload_status(session_id: str, storage: StorageDep):
    return success(storage.get_session(session_id).to_response().to_wire())


@router.post("/upload/chunk")
async def upload_chunk(
    storage: StorageDep,
    file: Annotated[UploadFile, File(description="Chunk bytes")],
    chunk_number: Annotated[int, Form(alias="chunkNumber")],
    session_id: Annotated[Optional[str], Form(alias="sessionId")] = None,
    batch_id: Annotated[Optional[str], Form(alias="batchId")] = None,
):
    """
    Store one chunk. Idempotent: re-sending a chunk overwrites it.

    Keyed by ``sessionId`` (session protocol) or ``batchId`` (legacy).
    """
    content = await file.read()
    if session_id:
        chunk_path = storage.store_chunk(session_id, chunk_number, content)
    elif batch_id:
        chunk_path = storage.store_batch_chunk(batch_id, chunk_number, content)
    else:
        raise StorageRejection(ResultCode.BAD_REQUEST, "Either sessionId or batchId is required")
    return success(ChunkUploadResponse(chunk_number=chunk_number, chunk_path=chunk_path).to_wire())


@router.post("/upload/merge-v2")
async def merge_session(request: MergeRequest, storage: StorageDep):
    """Assemble a session's chunks into the final object"""
    logger.info(f"📦 Merge requested for session {request.session_id[:8]}")
    stored = storage.merge_session(request)
    return success({"url": stored.url, "storageKey": stored.storage_key})


@router.post("/upload/merge")
async def merge_batch(request: LegacyMergeRequest, storage: StorageDep):
    """Assemble explicitly listed chunk paths into the final object"""
    logger.info(f"📦 Legacy merge requested for batch {request.batch_id[:8]} ({len(request.chunk_paths)} chunks)")
    stored = storage.merge_batch(request)
    return success({"url": stored.url, "storageKey": stored.storage_key})


@router.post("/upload/file")
async def upload_file(
    storage: StorageDep,
    file: Annotated[UploadFile, File(description="File bytes")],
    dto: Annotated[UploadFile, File(description="JSON metadata")],
):
    """Single-request upload for small files"""
    try:
        metadata = DirectUploadDto.model_validate_json(await dto.read())
    except ValidationError as e:
        raise StorageRejection(ResultCode.BAD_REQUEST, f"Invalid dto: {e.error_count()} error(s)")
    content = await file.read()
    logger.info(f"📤 Direct upload: {metadata.file_name} ({len(content)} bytes)")
    stored = storage.store_file(content, metadata)
    return success({"url": stored.url, "storageKey": stored.storage_key})


@objects_router.get("/objects/{storage_key:path}")
async def download_object(storage_key: str, storage: StorageDep):
    stored = storage.objects.get(storage_key)
    if stored is None:
        raise StorageRejection(ResultCode.FILE_NOT_EXIST, f"Object {storage_key} not found", http_status=404)
    return Response(content=stored.content, media_type=stored.content_type)

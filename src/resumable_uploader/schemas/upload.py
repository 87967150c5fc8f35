"""
Pydantic schemas for the storage API wire format.

All bodies use camelCase on the wire; Python code uses snake_case field
names (``populate_by_name``). Serialize with ``model_dump(by_alias=True)``.
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for camelCase request/response bodies"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class SessionStatus(str, Enum):
    """Server-side upload session lifecycle"""
    INIT = "INIT"
    UPLOADING = "UPLOADING"
    READY_TO_MERGE = "READY_TO_MERGE"
    MERGING = "MERGING"
    MERGED = "MERGED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_finalized(self) -> bool:
        return self in (SessionStatus.MERGED, SessionStatus.COMPLETED)


class ApiResponse(BaseModel):
    """Unified response envelope ``{code, message, data}``"""
    code: int
    message: Optional[str] = None
    data: Any = None


# ==================== Requests ====================

class FileCheckRequest(WireModel):
    """Existence check by content fingerprint"""
    file_hash: str


class InitSessionRequest(WireModel):
    """Open or resume an upload session for a fingerprint"""
    file_name: str = Field(..., min_length=1)
    file_hash: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    content_type: str = "application/octet-stream"
    total_chunks: int = Field(..., ge=1)
    folder_path: str = ""


class MergeRequest(WireModel):
    """Session-based finalize (merge-v2)"""
    session_id: str
    file_name: str
    file_hash: str
    folder_path: str = ""
    expected_chunk_count: int


class LegacyMergeRequest(WireModel):
    """Batch-id based finalize with explicit chunk object paths"""
    batch_id: str
    file_name: str
    file_hash: str
    file_size: int
    content_type: str = "application/octet-stream"
    folder_path: str = ""
    chunk_paths: List[str] = Field(default_factory=list)


class DirectUploadDto(WireModel):
    """JSON part of a small-file direct upload"""
    file_name: str
    file_hash: str
    file_size: int
    content_type: str = "application/octet-stream"
    folder_path: str = ""


# ==================== Responses ====================

class FileExistsResponse(WireModel):
    exists: bool
    url: Optional[str] = None


class SessionStatusResponse(WireModel):
    """Session snapshot returned by init and status calls"""
    session_id: Optional[str] = None
    status: SessionStatus
    total_chunks: Optional[int] = None
    uploaded_chunks: int = 0
    uploaded_chunk_numbers: List[int] = Field(default_factory=list)
    url: Optional[str] = None


class ChunkUploadResponse(WireModel):
    chunk_number: int
    chunk_path: Optional[str] = None

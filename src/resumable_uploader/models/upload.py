"""
Domain models for one upload invocation (Data Contract).

These are plain dataclasses owned by the orchestrator; the server-side
session record is only ever mirrored here, never mutated locally.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Optional, Tuple

from ..schemas import SessionStatus
from .source import ChunkSource


class UploadState(str, Enum):
    """Orchestrator state machine"""
    IDLE = "IDLE"
    HASHING = "HASHING"
    NEGOTIATING = "NEGOTIATING"
    FAST_PATH_DONE = "FAST_PATH_DONE"
    UPLOADING = "UPLOADING"
    VERIFYING = "VERIFYING"
    MERGING = "MERGING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_success(self) -> bool:
        return self in (UploadState.DONE, UploadState.FAST_PATH_DONE)


TERMINAL_STATES = frozenset({
    UploadState.FAST_PATH_DONE,
    UploadState.DONE,
    UploadState.FAILED,
    UploadState.CANCELLED,
})


class ChunkState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadTask:
    """Immutable descriptor of one upload attempt."""
    source: ChunkSource
    file_name: str
    size: int
    chunk_size: int
    folder_path: str = ""
    content_type: str = "application/octet-stream"

    @property
    def total_chunks(self) -> int:
        # 0 for an empty source; those always go through direct upload
        return math.ceil(self.size / self.chunk_size)

    def chunk_bounds(self, chunk_number: int) -> Tuple[int, int]:
        """(offset, length) of a 1-based chunk."""
        if not 1 <= chunk_number <= self.total_chunks:
            raise ValueError(f"Chunk {chunk_number} outside 1..{self.total_chunks}")
        offset = (chunk_number - 1) * self.chunk_size
        return offset, max(0, min(self.chunk_size, self.size - offset))

    def chunk_length(self, chunk_number: int) -> int:
        return self.chunk_bounds(chunk_number)[1]

    def bytes_for(self, chunk_numbers) -> int:
        return sum(self.chunk_length(n) for n in chunk_numbers)

    def all_chunks(self) -> FrozenSet[int]:
        return frozenset(range(1, self.total_chunks + 1))

    @classmethod
    def from_source(
        cls,
        source: ChunkSource,
        chunk_size: int,
        file_name: Optional[str] = None,
        folder_path: str = "",
        content_type: Optional[str] = None,
    ) -> "UploadTask":
        return cls(
            source=source,
            file_name=file_name or getattr(source, "name", None) or "upload.bin",
            size=source.size,
            chunk_size=chunk_size,
            folder_path=folder_path,
            content_type=content_type or getattr(source, "content_type", None) or "application/octet-stream",
        )


@dataclass
class ChunkJob:
    """Transient work item held by exactly one scheduler worker at a time."""
    index: int
    attempt_count: int = 0
    state: ChunkState = ChunkState.PENDING


@dataclass(frozen=True)
class Session:
    """Client-side mirror of the server's session record."""
    session_id: str
    fingerprint: str
    status: SessionStatus = SessionStatus.INIT
    uploaded_chunk_numbers: FrozenSet[int] = frozenset()

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "fileHash": self.fingerprint,
            "status": self.status.value,
            "uploadedChunkNumbers": sorted(self.uploaded_chunk_numbers),
        }


@dataclass(frozen=True)
class NegotiationResult:
    session: Optional[Session]
    fast_path_complete: bool = False
    needs_merge: bool = False
    file_url: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    @property
    def uploaded_chunk_numbers(self) -> FrozenSet[int]:
        return self.session.uploaded_chunk_numbers if self.session else frozenset()


@dataclass(frozen=True)
class ProgressEvent:
    """Raw event published by components while they work."""
    status: str
    bytes_transferred: Optional[int] = None
    completed_chunks: Optional[int] = None


@dataclass(frozen=True)
class ProgressSnapshot:
    """What subscribers see: recomputed on every event."""
    percentage: int
    status: str
    bytes_transferred: int
    total_bytes: int
    speed: float = 0.0              # bytes/s, EMA smoothed
    eta_seconds: float = 0.0
    elapsed_seconds: int = 0
    state: UploadState = UploadState.IDLE
    fingerprint: Optional[str] = None


@dataclass
class UploadResult:
    """Outcome of one ``UploadOrchestrator.upload`` call."""
    state: UploadState
    file_name: str
    fingerprint: Optional[str] = None
    session_id: Optional[str] = None
    file_url: Optional[str] = None
    message: str = ""
    error: Optional[Exception] = None
    completed_chunks: FrozenSet[int] = field(default_factory=frozenset)
    total_chunks: int = 0
    fast_path: bool = False

    @property
    def is_success(self) -> bool:
        return self.state.is_success

    def to_dict(self) -> dict:
        return {
            "success": self.is_success,
            "state": self.state.value,
            "file_name": self.file_name,
            "fingerprint": self.fingerprint,
            "session_id": self.session_id,
            "file_url": self.file_url,
            "message": self.message,
            "error": str(self.error) if self.error else None,
            "completed_chunks": sorted(self.completed_chunks),
            "total_chunks": self.total_chunks,
            "fast_path": self.fast_path,
        }


def location_from(data: Any) -> Optional[str]:
    """Pull a file location out of a finalize/direct-upload response body."""
    if data is None:
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in ("url", "fileUrl", "filePath", "path", "objectName"):
            if data.get(key):
                return str(data[key])
    return None

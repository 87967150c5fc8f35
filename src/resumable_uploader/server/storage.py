"""
In-memory storage backend for the reference server

Purpose: Hold upload sessions, legacy chunk batches and finished objects
for local demos and end-to-end tests. Nothing survives a restart.

Objects are content-addressed: the storage key is derived from the
content hash, so two uploads of the same bytes land on the same key and
the fingerprint index answers existence checks.
"""
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..core.errors import ResultCode
from ..schemas import (
    DirectUploadDto,
    InitSessionRequest,
    LegacyMergeRequest,
    MergeRequest,
    SessionStatus,
    SessionStatusResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 24 * 60 * 60  # seconds

_ALGORITHMS_BY_LENGTH = {32: "md5", 40: "sha1", 64: "sha256"}


class StorageRejection(Exception):
    """Business failure the endpoints turn into a ``{code, message}`` envelope."""

    def __init__(self, code: int, message: str, http_status: int = 200):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


@dataclass
class UploadSessionRecord:
    session_id: str
    file_name: str
    file_hash: str
    file_size: int
    content_type: str
    total_chunks: int
    folder_path: str = ""
    status: SessionStatus = SessionStatus.INIT
    chunks: Dict[int, bytes] = field(default_factory=dict)
    url: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_response(self) -> SessionStatusResponse:
        return SessionStatusResponse(
            session_id=self.session_id,
            status=self.status,
            total_chunks=self.total_chunks,
            uploaded_chunks=len(self.chunks),
            uploaded_chunk_numbers=sorted(self.chunks),
            url=self.url,
        )


@dataclass
class StoredObject:
    storage_key: str
    file_name: str
    content_type: str
    content: bytes
    folder_path: str = ""

    @property
    def url(self) -> str:
        return f"/objects/{self.storage_key}"


def hash_content(content: bytes, expected_hash: str) -> str:
    """Hash ``content`` with whichever algorithm produces digests shaped like ``expected_hash``."""
    algorithm = _ALGORITHMS_BY_LENGTH.get(len(expected_hash), "md5")
    return hashlib.new(algorithm, content).hexdigest()


def generate_storage_key(content_hash: str) -> str:
    """Bucketed content-addressed key: v1/contents/ab/cd/abcd..."""
    return f"v1/contents/{content_hash[:2]}/{content_hash[2:4]}/{content_hash}"


class UploadStorage:
    """
    Session, batch and object bookkeeping.

    All methods are synchronous and run on the event loop thread, so each
    call is atomic with respect to other requests.
    """

    def __init__(self, session_ttl: float = DEFAULT_SESSION_TTL):
        self.session_ttl = session_ttl
        self.sessions: Dict[str, UploadSessionRecord] = {}
        self.batches: Dict[str, Dict[int, bytes]] = {}
        self.objects: Dict[str, StoredObject] = {}
        self.index: Dict[str, str] = {}  # fingerprint -> storage key

        # fault injection for demos/tests: chunk number -> failures left
        self.chunk_faults: Dict[int, int] = {}
        self.merge_faults = 0

    # ==================== Existence ====================

    def find_object(self, file_hash: str) -> Optional[StoredObject]:
        key = self.index.get(file_hash)
        return self.objects.get(key) if key else None

    # ==================== Session protocol ====================

    def init_session(self, request: InitSessionRequest) -> UploadSessionRecord:
        for record in self.sessions.values():
            self._refresh(record)
            if record.file_hash != request.file_hash or record.total_chunks != request.total_chunks:
                continue
            if record.status.is_finalized or record.status in (SessionStatus.INIT, SessionStatus.UPLOADING):
                logger.info(
                    f"[{record.session_id[:8]}] Reusing session for {request.file_hash[:8]} "
                    f"({record.status.value}, {len(record.chunks)}/{record.total_chunks} chunks)"
                )
                return record

        record = UploadSessionRecord(
            session_id=uuid.uuid4().hex,
            file_name=request.file_name,
            file_hash=request.file_hash,
            file_size=request.file_size,
            content_type=request.content_type,
            total_chunks=request.total_chunks,
            folder_path=request.folder_path,
        )
        existing = self.find_object(request.file_hash)
        if existing is not None:
            record.status = SessionStatus.MERGED
            record.url = existing.url
        self.sessions[record.session_id] = record
        logger.info(
            f"[{record.session_id[:8]}] Session created for {record.file_name} "
            f"({record.total_chunks} chunks, {record.status.value})"
        )
        return record

    def get_session(self, session_id: str) -> UploadSessionRecord:
        record = self.sessions.get(session_id)
        if record is None:
            raise StorageRejection(ResultCode.NOT_FOUND, f"Upload session {session_id} not found")
        self._refresh(record)
        return record

    def store_chunk(self, session_id: str, chunk_number: int, content: bytes) -> str:
        record = self.get_session(session_id)
        if record.status not in (SessionStatus.INIT, SessionStatus.UPLOADING):
            raise StorageRejection(
                ResultCode.UPLOAD_SESSION_STATE_MISMATCH,
                f"Session is {record.status.value}, chunks are no longer accepted",
            )
        if not 1 <= chunk_number <= record.total_chunks:
            raise StorageRejection(
                ResultCode.BAD_REQUEST,
                f"Invalid chunk number {chunk_number}, must be between 1 and {record.total_chunks}",
            )
        self._consume_chunk_fault(chunk_number)
        record.chunks[chunk_number] = content
        record.status = SessionStatus.UPLOADING
        logger.debug(f"[{session_id[:8]}] Chunk {chunk_number}/{record.total_chunks} stored ({len(content)} bytes)")
        return f"sessions/{session_id}/chunk_{chunk_number}"

    def merge_session(self, request: MergeRequest) -> StoredObject:
        record = self.get_session(request.session_id)
        if record.status.is_finalized or record.status in (SessionStatus.EXPIRED, SessionStatus.MERGING):
            raise StorageRejection(
                ResultCode.UPLOAD_SESSION_STATE_MISMATCH,
                f"Session is {record.status.value}, cannot merge",
            )
        self._consume_merge_fault()

        expected = request.expected_chunk_count or record.total_chunks
        missing = sorted(set(range(1, expected + 1)) - set(record.chunks))
        if expected != record.total_chunks or missing:
            raise StorageRejection(
                ResultCode.MERGE_FAILED,
                f"Cannot merge: missing chunks {missing[:20]} of {record.total_chunks}",
            )

        record.status = SessionStatus.MERGING
        content = b"".join(record.chunks[n] for n in range(1, record.total_chunks + 1))
        try:
            stored = self._store_object(
                content,
                request.file_hash or record.file_hash,
                request.file_name or record.file_name,
                record.content_type,
                request.folder_path or record.folder_path,
            )
        except StorageRejection:
            record.status = SessionStatus.FAILED
            raise

        record.status = SessionStatus.MERGED
        record.url = stored.url
        record.chunks = {n: b"" for n in record.chunks}
        logger.info(f"[{record.session_id[:8]}] ✅ Merged {record.total_chunks} chunks into {stored.storage_key}")
        return stored

    def expire(self, session_id: str) -> None:
        self.get_session(session_id).status = SessionStatus.EXPIRED

    # ==================== Legacy batch protocol ====================

    def store_batch_chunk(self, batch_id: str, chunk_number: int, content: bytes) -> str:
        if chunk_number < 1:
            raise StorageRejection(ResultCode.BAD_REQUEST, f"Invalid chunk number {chunk_number}")
        self._consume_chunk_fault(chunk_number)
        self.batches.setdefault(batch_id, {})[chunk_number] = content
        return f"batches/{batch_id}/chunk_{chunk_number}"

    def merge_batch(self, request: LegacyMergeRequest) -> StoredObject:
        self._consume_merge_fault()
        existing = self.find_object(request.file_hash)
        if existing is not None:
            self.batches.pop(request.batch_id, None)
            return existing

        parts: List[bytes] = []
        for path in request.chunk_paths:
            # batches/{batchId}/chunk_{n}
            prefix, _, name = path.rpartition("/")
            chunks = self.batches.get(prefix.split("/", 1)[-1], {})
            try:
                parts.append(chunks[int(name.rsplit("_", 1)[-1])])
            except (KeyError, ValueError):
                raise StorageRejection(ResultCode.FILE_NOT_EXIST, f"Chunk {path} does not exist")

        stored = self._store_object(
            b"".join(parts),
            request.file_hash,
            request.file_name,
            request.content_type,
            request.folder_path,
        )
        self.batches.pop(request.batch_id, None)
        logger.info(f"[{request.batch_id[:8]}] ✅ Merged {len(parts)} batch chunks into {stored.storage_key}")
        return stored

    # ==================== Direct upload ====================

    def store_file(self, content: bytes, dto: DirectUploadDto) -> StoredObject:
        if dto.file_size and dto.file_size != len(content):
            raise StorageRejection(
                ResultCode.FILE_UPLOAD_FAILED,
                f"Size mismatch: declared {dto.file_size}, received {len(content)}",
            )
        return self._store_object(content, dto.file_hash, dto.file_name, dto.content_type, dto.folder_path)

    # ==================== Helpers ====================

    def _store_object(
        self,
        content: bytes,
        file_hash: str,
        file_name: str,
        content_type: str,
        folder_path: str,
    ) -> StoredObject:
        actual = hash_content(content, file_hash)
        if file_hash and actual != file_hash.lower():
            logger.error(f"Hash mismatch for {file_name}: expected {file_hash}, got {actual}")
            raise StorageRejection(
                ResultCode.MERGE_FAILED,
                f"Hash verification failed for {file_name}",
            )

        storage_key = generate_storage_key(actual)
        if storage_key in self.objects:
            logger.info(f"⚡ Deduplication: {storage_key} already exists")
            return self.objects[storage_key]

        stored = StoredObject(
            storage_key=storage_key,
            file_name=file_name,
            content_type=content_type,
            content=content,
            folder_path=folder_path,
        )
        self.objects[storage_key] = stored
        self.index[actual] = storage_key
        logger.info(f"✅ Stored {len(content)} bytes as {storage_key}")
        return stored

    def _refresh(self, record: UploadSessionRecord) -> None:
        if record.status.is_finalized or record.status == SessionStatus.EXPIRED:
            return
        if time.time() - record.created_at > self.session_ttl:
            record.status = SessionStatus.EXPIRED

    def _consume_chunk_fault(self, chunk_number: int) -> None:
        remaining = self.chunk_faults.get(chunk_number, 0)
        if remaining > 0:
            self.chunk_faults[chunk_number] = remaining - 1
            raise StorageRejection(
                ResultCode.INTERNAL_SERVER_ERROR,
                f"Injected failure for chunk {chunk_number}",
                http_status=500,
            )

    def _consume_merge_fault(self) -> None:
        if self.merge_faults > 0:
            self.merge_faults -= 1
            raise StorageRejection(ResultCode.INTERNAL_SERVER_ERROR, "Injected merge failure", http_status=500)

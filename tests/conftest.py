"""
Pytest configuration and shared fixtures

FakeStorageApi stands in for StorageApiClient: it keeps sessions in
memory the way the server does, records every call, injects scripted
failures and measures how many chunk transfers overlap.
"""
import asyncio
from typing import Dict, List, Optional, Set

import pytest

from resumable_uploader.core.config import UploaderConfig
from resumable_uploader.core.errors import BusinessError, ResultCode, StateMismatchError
from resumable_uploader.schemas import (
    ChunkUploadResponse,
    FileExistsResponse,
    SessionStatus,
    SessionStatusResponse,
)

MIB = 1024 * 1024


class FakeSession:
    def __init__(self, session_id: str, file_hash: str, total_chunks: int):
        self.session_id = session_id
        self.file_hash = file_hash
        self.total_chunks = total_chunks
        self.status = SessionStatus.INIT
        self.uploaded: Set[int] = set()
        self.url: Optional[str] = None

    def to_response(self) -> SessionStatusResponse:
        return SessionStatusResponse(
            session_id=self.session_id,
            status=self.status,
            total_chunks=self.total_chunks,
            uploaded_chunks=len(self.uploaded),
            uploaded_chunk_numbers=sorted(self.uploaded),
            url=self.url,
        )


class FakeStorageApi:

    def __init__(self):
        self.calls: List[tuple] = []
        self.sessions: Dict[str, FakeSession] = {}
        self.existing: Dict[str, str] = {}  # fingerprint -> url

        # scripting
        self.preset_uploaded: Set[int] = set()
        self.preset_status = SessionStatus.INIT
        self.init_error: Optional[Exception] = None
        self.init_response: Optional[SessionStatusResponse] = None
        self.status_script: List[object] = []  # responses or exceptions, consumed first
        self.chunk_failures: Dict[int, List[Exception]] = {}
        self.merge_errors: List[Exception] = []
        self.merge_lands_on_failure = False
        self.chunk_delay = 0.0

        # measurements
        self.in_flight = 0
        self.max_in_flight = 0
        self.active_chunks: Set[int] = set()
        self.double_scheduled: List[int] = []
        self.legacy_merges: List[object] = []
        self.direct_uploads: List[object] = []

    # ==================== Helpers ====================

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    @property
    def uploaded_chunk_numbers(self) -> List[int]:
        return [call[1] for call in self.calls_named("upload_chunk")]

    def only_session(self) -> FakeSession:
        assert len(self.sessions) == 1
        return next(iter(self.sessions.values()))

    def add_session(self, session_id, file_hash, total_chunks, uploaded=(), status=SessionStatus.INIT) -> FakeSession:
        session = FakeSession(session_id, file_hash, total_chunks)
        session.uploaded = set(uploaded)
        session.status = status
        self.sessions[session_id] = session
        return session

    # ==================== API surface ====================

    async def check_file(self, file_hash: str) -> FileExistsResponse:
        self.calls.append(("check_file", file_hash))
        url = self.existing.get(file_hash)
        return FileExistsResponse(exists=url is not None, url=url)

    async def init_session(self, request) -> SessionStatusResponse:
        self.calls.append(("init_session", request))
        if self.init_error is not None:
            raise self.init_error
        if self.init_response is not None:
            return self.init_response

        for session in self.sessions.values():
            if session.file_hash == request.file_hash:
                return session.to_response()

        session = FakeSession(f"session-{len(self.sessions) + 1}", request.file_hash, request.total_chunks)
        session.uploaded = {n for n in self.preset_uploaded if n <= request.total_chunks}
        session.status = self.preset_status
        if session.status.is_finalized:
            session.url = f"/objects/{request.file_hash}"
        self.sessions[session.session_id] = session
        return session.to_response()

    async def get_status(self, session_id: str) -> SessionStatusResponse:
        self.calls.append(("get_status", session_id))
        if self.status_script:
            scripted = self.status_script.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            return scripted
        return self.sessions[session_id].to_response()

    async def upload_chunk(self, chunk_number, content, session_id=None, batch_id=None) -> ChunkUploadResponse:
        self.calls.append(("upload_chunk", chunk_number, len(content), session_id, batch_id))
        if chunk_number in self.active_chunks:
            self.double_scheduled.append(chunk_number)
        self.active_chunks.add(chunk_number)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.chunk_delay)
        finally:
            self.in_flight -= 1
            self.active_chunks.discard(chunk_number)

        failures = self.chunk_failures.get(chunk_number)
        if failures:
            raise failures.pop(0)
        if session_id is not None:
            self.sessions[session_id].uploaded.add(chunk_number)
            self.sessions[session_id].status = SessionStatus.UPLOADING
        key = session_id or batch_id
        return ChunkUploadResponse(chunk_number=chunk_number, chunk_path=f"chunks/{key}/{chunk_number}")

    async def merge(self, request):
        self.calls.append(("merge", request))
        session = self.sessions[request.session_id]
        if session.status.is_finalized or session.status == SessionStatus.EXPIRED:
            raise StateMismatchError(
                f"Session is {session.status.value}",
                code=ResultCode.UPLOAD_SESSION_STATE_MISMATCH,
            )
        if self.merge_errors:
            error = self.merge_errors.pop(0)
            if self.merge_lands_on_failure:
                self._finalize(session)
            raise error
        if len(session.uploaded) != session.total_chunks:
            raise BusinessError("Missing chunks", code=ResultCode.MERGE_FAILED)
        self._finalize(session)
        return {"url": session.url}

    async def merge_legacy(self, request):
        self.calls.append(("merge_legacy", request))
        if self.merge_errors:
            raise self.merge_errors.pop(0)
        self.legacy_merges.append(request)
        self.existing[request.file_hash] = f"/objects/{request.file_hash}"
        return {"url": self.existing[request.file_hash]}

    async def upload_file(self, content, dto):
        self.calls.append(("upload_file", len(content), dto))
        self.direct_uploads.append(dto)
        self.existing[dto.file_hash] = f"/objects/{dto.file_hash}"
        return {"url": self.existing[dto.file_hash]}

    def _finalize(self, session: FakeSession) -> None:
        session.status = SessionStatus.MERGED
        session.url = f"/objects/{session.file_hash}"
        self.existing[session.file_hash] = session.url


@pytest.fixture
def fake_api():
    return FakeStorageApi()


@pytest.fixture
def make_config():
    """UploaderConfig with zero retry/poll delays; override anything per test."""

    def factory(**overrides) -> UploaderConfig:
        values = dict(
            api_prefix="/api/assets",
            folder_path="",
            chunk_size=5 * MIB,
            hash_window_size=5 * MIB,
            hash_algorithm="md5",
            max_concurrency=4,
            max_chunk_retries=3,
            max_merge_retries=3,
            retry_base_delay=0.0,
            status_poll_attempts=5,
            status_poll_interval=0.0,
            check_existence=False,
            direct_upload=True,
            protocol="session",
        )
        values.update(overrides)
        return UploaderConfig(**values)

    return factory


@pytest.fixture
def payload_12mib():
    """12 MiB of non-repeating-per-chunk bytes (3 chunks at 5 MiB)."""
    block = bytes(range(256)) * 4096  # 1 MiB
    return b"".join(bytes([i]) + block[1:] for i in range(12))

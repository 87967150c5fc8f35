"""
Session negotiation

Purpose: Open or resume the server-side session for a fingerprint.
Logic:
  1. (optional) Existence check -> fast path if the object is already stored
  2. Session init -> fast path if MERGED; merge-only fast path if every
     chunk is already present (no bytes move, the session still gets merged)
  3. Status re-read right before scheduling -> fast path if MERGED by now
     (e.g. another client finished the same content meanwhile)
  4. Otherwise hand back the server's uploaded chunk set for resume
"""
import logging
from typing import Callable, Iterable, Optional

from ..core.errors import ServerError
from ..models import NegotiationResult, ProgressEvent, Session, UploadTask
from ..schemas import InitSessionRequest, SessionStatusResponse
from .api_client import StorageApiClient

logger = logging.getLogger(__name__)


def valid_chunk_numbers(numbers: Iterable[int], total_chunks: int) -> frozenset:
    """Drop anything outside 1..total_chunks the server might report."""
    return frozenset(n for n in numbers if 1 <= n <= total_chunks)


class SessionNegotiator:

    def __init__(self, api: StorageApiClient, check_existence: bool = False):
        self.api = api
        self.check_existence = check_existence

    async def negotiate(
        self,
        task: UploadTask,
        fingerprint: str,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> NegotiationResult:
        tag = fingerprint[:8]
        emit = emit or (lambda event: None)

        if self.check_existence:
            existing = await self.api.check_file(fingerprint)
            if existing.exists:
                logger.info(f"[{tag}] ⚡ Content already stored, skipping transfer")
                emit(ProgressEvent(status="File already exists, instant upload", bytes_transferred=task.size))
                return NegotiationResult(session=None, fast_path_complete=True, file_url=existing.url)

        emit(ProgressEvent(status="Initializing upload session..."))
        init = await self.api.init_session(InitSessionRequest(
            file_name=task.file_name,
            file_hash=fingerprint,
            file_size=task.size,
            content_type=task.content_type,
            total_chunks=task.total_chunks,
            folder_path=task.folder_path,
        ))
        if not init.session_id:
            raise ServerError("Session init response carried no sessionId", data=init.model_dump())
        session = self._session_from(init, fingerprint, task.total_chunks, init.session_id)

        if init.status.is_finalized:
            logger.info(f"[{tag}] ⚡ Session {session.session_id} already {init.status.value}")
            emit(ProgressEvent(status="Instant upload: content already on server", bytes_transferred=task.size))
            return NegotiationResult(session=session, fast_path_complete=True, file_url=init.url)
        if self._all_chunks_present(init, session, task.total_chunks):
            return self._merge_only(task, session, tag, emit)

        logger.info(
            f"[{tag}] Session {session.session_id} initialized, "
            f"{len(session.uploaded_chunk_numbers)}/{task.total_chunks} chunks on server"
        )

        # status may have moved between init and now
        current = await self.api.get_status(session.session_id)
        session = self._session_from(current, fingerprint, task.total_chunks, session.session_id)
        if current.status.is_finalized:
            logger.info(f"[{tag}] ⚡ Session {session.session_id} merged meanwhile, nothing to upload")
            emit(ProgressEvent(status="File already merged, no chunks to upload", bytes_transferred=task.size))
            return NegotiationResult(session=session, fast_path_complete=True, file_url=current.url)
        if self._all_chunks_present(current, session, task.total_chunks):
            return self._merge_only(task, session, tag, emit)

        resumed = session.uploaded_chunk_numbers
        emit(ProgressEvent(
            status=f"Session ready, {len(resumed)}/{task.total_chunks} chunks already uploaded",
            bytes_transferred=task.bytes_for(resumed),
            completed_chunks=len(resumed),
        ))
        return NegotiationResult(session=session, fast_path_complete=False)

    @staticmethod
    def _merge_only(task: UploadTask, session: Session, tag: str, emit) -> NegotiationResult:
        logger.info(f"[{tag}] ⚡ All {task.total_chunks} chunks already on server, merge only")
        emit(ProgressEvent(
            status="All chunks already uploaded, finalizing",
            bytes_transferred=task.size,
            completed_chunks=task.total_chunks,
        ))
        return NegotiationResult(session=session, fast_path_complete=True, needs_merge=True)

    @staticmethod
    def _session_from(
        response: SessionStatusResponse, fingerprint: str, total_chunks: int, session_id: str
    ) -> Session:
        return Session(
            session_id=response.session_id or session_id,
            fingerprint=fingerprint,
            status=response.status,
            uploaded_chunk_numbers=valid_chunk_numbers(response.uploaded_chunk_numbers, total_chunks),
        )

    @staticmethod
    def _all_chunks_present(response: SessionStatusResponse, session: Session, total_chunks: int) -> bool:
        return (
            response.uploaded_chunks >= total_chunks
            or len(session.uploaded_chunk_numbers) == total_chunks
        )

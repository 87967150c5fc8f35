"""
Upload orchestration

Purpose: The one entry point callers use. Composes hashing, negotiation,
chunk scheduling and merging into a single ``upload()`` call and publishes
progress snapshots to subscribers.

State machine:
    IDLE -> HASHING -> NEGOTIATING -> (FAST_PATH_DONE | UPLOADING)
         -> VERIFYING -> MERGING -> DONE
    FAILED and CANCELLED are reachable from every non-terminal state.

Protocols:
  - direct:  files smaller than one chunk (and empty files) go up in a
             single request
  - session: init/status/chunk/merge-v2, server-side session keyed by
             fingerprint
  - legacy:  batch id = fingerprint, chunk paths kept in the session store
             and sent back with the merge request
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.cancellation import CancellationToken
from ..core.config import UploaderConfig
from ..core.errors import (
    ApiError,
    ChunkUploadError,
    MergeError,
    ReadError,
    UploadCancelled,
    UploadError,
    UploadInProgressError,
    is_retryable_chunk_error,
)
from ..core.retry import get_retry_policy, retry_async
from ..models import (
    ChunkSource,
    ProgressEvent,
    ProgressSnapshot,
    Session,
    UploadResult,
    UploadState,
    UploadTask,
    location_from,
)
from ..schemas import ChunkUploadResponse, DirectUploadDto
from .api_client import StorageApiClient
from .hasher import ContentHasher
from .merge import MergeCoordinator
from .negotiator import SessionNegotiator
from .persistence import InMemorySessionStore, SessionStore
from .progress import ProgressEstimator
from .scheduler import ChunkScheduler

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressSnapshot], None]


class UploadOrchestrator:
    """
    Runs one upload at a time.

    ``upload()`` never raises for upload failures; it returns an
    ``UploadResult`` whose state is DONE, FAST_PATH_DONE, FAILED or
    CANCELLED. A second call while one is running raises
    ``UploadInProgressError`` and changes nothing.
    """

    def __init__(
        self,
        api: StorageApiClient,
        config: Optional[UploaderConfig] = None,
        store: Optional[SessionStore] = None,
    ):
        self.api = api
        self.config = config or UploaderConfig.from_settings()
        self.store = store if store is not None else InMemorySessionStore()

        self.hasher = ContentHasher(self.config.hash_window_size, self.config.hash_algorithm)
        self.negotiator = SessionNegotiator(api, check_existence=self.config.check_existence)
        self.scheduler = ChunkScheduler(
            api,
            get_retry_policy(self.config.max_chunk_retries, self.config.retry_base_delay),
            concurrency=self.config.max_concurrency,
        )
        self.merger = MergeCoordinator(
            api,
            get_retry_policy(self.config.max_merge_retries, self.config.retry_base_delay),
            poll_attempts=self.config.status_poll_attempts,
            poll_interval=self.config.status_poll_interval,
        )

        self._listeners: List[Listener] = []
        self._state = UploadState.IDLE
        self._status = ""
        self._token: Optional[CancellationToken] = None
        self._estimator: Optional[ProgressEstimator] = None
        self._fingerprint: Optional[str] = None
        self._last_snapshot: Optional[ProgressSnapshot] = None
        self._store_lock = asyncio.Lock()

    # ==================== Public surface ====================

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def is_uploading(self) -> bool:
        return self._token is not None

    @property
    def last_snapshot(self) -> Optional[ProgressSnapshot]:
        return self._last_snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a snapshot listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def cancel(self, reason: str = "Upload cancelled by user") -> bool:
        """Cancel the active upload. Returns False when nothing is running."""
        if self._token is None:
            return False
        logger.info(f"[{self._tag}] Cancellation requested: {reason}")
        self._token.cancel(reason)
        return True

    async def upload(
        self,
        source: ChunkSource,
        file_name: Optional[str] = None,
        folder_path: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> UploadResult:
        if self.is_uploading:
            raise UploadInProgressError("An upload is already in progress")

        task = UploadTask.from_source(
            source,
            self.config.chunk_size,
            file_name=file_name,
            folder_path=folder_path if folder_path is not None else self.config.folder_path,
            content_type=content_type,
        )
        token = CancellationToken()
        self._token = token
        self._state = UploadState.IDLE
        self._status = ""
        self._fingerprint = None
        self._estimator = ProgressEstimator(task.size)
        self._estimator.start_timer()
        result = UploadResult(
            state=UploadState.IDLE,
            file_name=task.file_name,
            total_chunks=task.total_chunks,
        )

        try:
            await self._run(task, token, result)
        except UploadCancelled as e:
            result.state = UploadState.CANCELLED
            result.message = f"Upload cancelled: {e.message}"
            result.error = e
            self._estimator.finish()
            self._transition(UploadState.CANCELLED, result.message)
        except UploadError as e:
            result.state = UploadState.FAILED
            result.message = self._failure_message(e)
            result.error = e
            logger.error(f"[{self._tag}] {result.message}")
            self._estimator.finish()
            self._transition(UploadState.FAILED, result.message)
        except Exception as e:
            result.state = UploadState.FAILED
            result.message = f"Upload failed: {type(e).__name__}: {e}"
            result.error = e
            logger.exception(f"[{self._tag}] Unexpected error during {self._state.value}")
            self._estimator.finish()
            self._transition(UploadState.FAILED, result.message)
        finally:
            self._estimator.stop_timer()
            self._token = None

        return result

    # ==================== Flow ====================

    async def _run(self, task: UploadTask, token: CancellationToken, result: UploadResult) -> None:
        self._transition(UploadState.HASHING, "Calculating file hash...")
        fingerprint = await self.hasher.hash(task.source, token)
        self._fingerprint = fingerprint
        result.fingerprint = fingerprint
        logger.info(
            f"[{self._tag}] Hashed {task.file_name}: {task.size} bytes, "
            f"{task.total_chunks} chunk(s) of {task.chunk_size}"
        )

        if task.total_chunks == 0 or (self.config.direct_upload and task.size < task.chunk_size):
            await self._upload_direct(task, fingerprint, token, result)
        elif self.config.protocol == "legacy":
            await self._upload_legacy(task, fingerprint, token, result)
        else:
            await self._upload_session(task, fingerprint, token, result)

    async def _upload_direct(
        self, task: UploadTask, fingerprint: str, token: CancellationToken, result: UploadResult
    ) -> None:
        self._transition(UploadState.UPLOADING, "Uploading file...")
        token.raise_if_cancelled()
        try:
            content = await task.source.slice(0, task.size)
        except Exception as e:
            raise ReadError(f"Failed to read {task.file_name}: {e}", cause=e) from e
        if len(content) != task.size:
            raise ReadError(f"Short read: expected {task.size} bytes, got {len(content)}")

        dto = DirectUploadDto(
            file_name=task.file_name,
            file_hash=fingerprint,
            file_size=task.size,
            content_type=task.content_type,
            folder_path=task.folder_path,
        )

        async def attempt(number: int):
            return await self.api.upload_file(content, dto)

        data = await retry_async(
            attempt,
            self.scheduler.retry_policy,
            should_retry=is_retryable_chunk_error,
            token=token,
            description=f"[{self._tag}] Direct upload",
        )
        result.file_url = location_from(data)
        result.completed_chunks = task.all_chunks()
        self._emit(ProgressEvent(status="File uploaded", bytes_transferred=task.size))
        self._complete(result, UploadState.DONE, "Upload complete")

    async def _upload_session(
        self, task: UploadTask, fingerprint: str, token: CancellationToken, result: UploadResult
    ) -> None:
        self._transition(UploadState.NEGOTIATING, "Initializing upload session...")
        token.raise_if_cancelled()
        negotiation = await self.negotiator.negotiate(task, fingerprint, emit=self._emit)
        result.session_id = negotiation.session_id

        if negotiation.fast_path_complete and not negotiation.needs_merge:
            result.fast_path = True
            result.file_url = negotiation.file_url
            result.completed_chunks = task.all_chunks()
            self._complete(result, UploadState.FAST_PATH_DONE, "Instant upload complete")
            return

        session = negotiation.session
        uploaded = set(session.uploaded_chunk_numbers)
        await self._remember_session(task, session, uploaded)

        if negotiation.needs_merge:
            result.fast_path = True
            completed = task.all_chunks()
        else:
            self._transition(
                UploadState.UPLOADING,
                f"Uploading chunks: {len(uploaded)} / {task.total_chunks}",
            )
            self._estimator.start(task.bytes_for(uploaded))

            async def on_chunk_uploaded(ack: ChunkUploadResponse) -> None:
                uploaded.add(ack.chunk_number)
                await self._remember_session(task, session, uploaded)

            completed = await self.scheduler.upload(
                task,
                session.session_id,
                outstanding=task.all_chunks() - session.uploaded_chunk_numbers,
                already_completed=session.uploaded_chunk_numbers,
                token=token,
                emit=self._emit,
                on_chunk_uploaded=on_chunk_uploaded,
            )
        result.completed_chunks = completed

        self._transition(UploadState.VERIFYING, "Verifying upload status...")
        verified = await self.merger.verify(task, session.session_id, token, self._emit)
        if verified.already_merged:
            result.file_url = verified.file_url
        else:
            self._transition(UploadState.MERGING, "Merging file...")
            result.file_url = await self.merger.merge(
                task, session.session_id, fingerprint, token, self._emit
            )

        await self._offload(self.store.delete, fingerprint)
        self._complete(result, UploadState.DONE, "Upload complete")

    async def _upload_legacy(
        self, task: UploadTask, fingerprint: str, token: CancellationToken, result: UploadResult
    ) -> None:
        batch_id = fingerprint
        result.session_id = batch_id

        self._transition(UploadState.NEGOTIATING, "Checking file...")
        token.raise_if_cancelled()
        existing = await self.api.check_file(fingerprint)
        if existing.exists:
            logger.info(f"[{self._tag}] ⚡ Content already stored, skipping transfer")
            self._emit(ProgressEvent(status="File already exists, instant upload", bytes_transferred=task.size))
            result.fast_path = True
            result.file_url = existing.url
            result.completed_chunks = task.all_chunks()
            self._complete(result, UploadState.FAST_PATH_DONE, "Instant upload complete")
            return

        chunk_paths = await self._load_chunk_paths(task, batch_id)
        done = frozenset(chunk_paths)
        if done:
            logger.info(f"[{self._tag}] Resuming batch with {len(done)}/{task.total_chunks} chunks uploaded")
        self._emit(ProgressEvent(
            status=f"{len(done)}/{task.total_chunks} chunks already uploaded",
            bytes_transferred=task.bytes_for(done),
            completed_chunks=len(done),
        ))

        self._transition(UploadState.UPLOADING, f"Uploading chunks: {len(done)} / {task.total_chunks}")
        self._estimator.start(task.bytes_for(done))

        async def on_chunk_uploaded(ack: ChunkUploadResponse) -> None:
            if ack.chunk_path:
                chunk_paths[ack.chunk_number] = ack.chunk_path
                await self._save_chunk_paths(task, batch_id, chunk_paths)

        completed = await self.scheduler.upload(
            task,
            None,
            outstanding=task.all_chunks() - done,
            already_completed=done,
            token=token,
            emit=self._emit,
            on_chunk_uploaded=on_chunk_uploaded,
            batch_id=batch_id,
        )
        result.completed_chunks = completed

        self._transition(UploadState.VERIFYING, "Verifying chunk paths...")
        missing = sorted(task.all_chunks() - set(chunk_paths))
        if missing:
            raise MergeError(f"Chunk verification failed: no stored path for chunks {missing}")

        self._transition(UploadState.MERGING, "Merging file...")
        result.file_url = await self.merger.finalize_legacy(
            task,
            batch_id,
            fingerprint,
            [chunk_paths[n] for n in sorted(chunk_paths)],
            token,
            self._emit,
        )
        await self._offload(self.store.delete, batch_id)
        self._complete(result, UploadState.DONE, "Upload complete")

    # ==================== Session store ====================

    async def _remember_session(self, task: UploadTask, session: Session, uploaded) -> None:
        record = session.to_dict()
        record["totalChunks"] = task.total_chunks
        record["uploadedChunkNumbers"] = sorted(uploaded)
        await self._offload(self.store.save, session.fingerprint, record)

    async def _load_chunk_paths(self, task: UploadTask, batch_id: str) -> Dict[int, str]:
        record = await self._offload(self.store.load, batch_id)
        if not record:
            return {}
        if record.get("totalChunks") != task.total_chunks or record.get("chunkSize") != task.chunk_size:
            logger.info(f"[{self._tag}] Stored chunk paths belong to a different chunk layout, starting over")
            await self._offload(self.store.delete, batch_id)
            return {}
        paths = {}
        for key, path in (record.get("chunkPaths") or {}).items():
            try:
                number = int(key)
            except (TypeError, ValueError):
                continue
            if 1 <= number <= task.total_chunks and path:
                paths[number] = path
        return paths

    async def _save_chunk_paths(self, task: UploadTask, batch_id: str, chunk_paths: Dict[int, str]) -> None:
        await self._offload(self.store.save, batch_id, {
            "batchId": batch_id,
            "fileName": task.file_name,
            "totalChunks": task.total_chunks,
            "chunkSize": task.chunk_size,
            "chunkPaths": {str(n): p for n, p in sorted(chunk_paths.items())},
        })

    async def _offload(self, operation: Callable[..., Any], *args) -> Any:
        """
        Run a session store call in the default executor.

        Calls are serialized in arrival order, so a record snapshot taken
        later is never overwritten by an earlier one.
        """
        async with self._store_lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, operation, *args)

    # ==================== Progress ====================

    @property
    def _tag(self) -> str:
        return self._fingerprint[:8] if self._fingerprint else "--------"

    def _emit(self, event: ProgressEvent) -> None:
        self._status = event.status
        if event.bytes_transferred is not None and self._estimator is not None:
            self._estimator.update(event.bytes_transferred)
        self._publish()

    def _transition(self, state: UploadState, status: str) -> None:
        if state != self._state:
            logger.info(f"[{self._tag}] {self._state.value} -> {state.value}")
        self._state = state
        self._status = status
        self._publish()

    def _complete(self, result: UploadResult, state: UploadState, message: str) -> None:
        result.state = state
        result.message = message
        self._estimator.finish(success=True)
        logger.info(f"[{self._tag}] ✅ {message}: {result.file_name} -> {result.file_url or 'stored'}")
        self._transition(state, message)

    def _publish(self) -> None:
        if self._estimator is None:
            return
        snapshot = self._estimator.snapshot(self._status, self._state, self._fingerprint)
        self._last_snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener raised, ignoring")

    @staticmethod
    def _failure_message(error: UploadError) -> str:
        if isinstance(error, ChunkUploadError):
            return f"Chunk upload failed: {error}"
        if isinstance(error, MergeError):
            return str(error) if str(error).startswith("File merge failed") else f"File merge failed: {error}"
        if isinstance(error, ReadError):
            return f"Could not read file: {error}"
        if isinstance(error, ApiError):
            return f"Upload failed: {error}"
        return str(error)

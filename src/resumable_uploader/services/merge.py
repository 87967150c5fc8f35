"""
Merge coordination

Purpose: Turn a fully uploaded session into a stored object, idempotently.
Logic:
  1. VERIFY: poll session status (bounded) until the server's chunk counter
     catches up with totalChunks; a session already MERGED short-circuits
  2. MERGE: request finalize with bounded retry; before every retry the
     status is re-read so a merge that landed on a previous attempt is not
     repeated
  3. A state-mismatch rejection triggers a status re-read: MERGED means
     someone else finalized it (success), anything else is fatal
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..core.cancellation import CancellationToken
from ..core.errors import (
    ApiError,
    MergeError,
    StateMismatchError,
    is_retryable_merge_error,
)
from ..core.retry import RetryPolicy, retry_async
from ..models import ProgressEvent, UploadTask, location_from
from ..schemas import LegacyMergeRequest, MergeRequest, SessionStatusResponse
from .api_client import StorageApiClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifyResult:
    already_merged: bool
    uploaded_chunks: int
    file_url: Optional[str] = None


class MergeCoordinator:

    def __init__(
        self,
        api: StorageApiClient,
        retry_policy: Optional[RetryPolicy] = None,
        poll_attempts: int = 5,
        poll_interval: float = 1.0,
    ):
        self.api = api
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_attempts = max(1, poll_attempts)
        self.poll_interval = poll_interval

    async def finalize(
        self,
        task: UploadTask,
        session_id: str,
        fingerprint: str,
        token: Optional[CancellationToken] = None,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> Optional[str]:
        """Verify then merge; returns the stored file location if the server gave one."""
        verified = await self.verify(task, session_id, token, emit)
        if verified.already_merged:
            return verified.file_url
        return await self.merge(task, session_id, fingerprint, token, emit)

    async def verify(
        self,
        task: UploadTask,
        session_id: str,
        token: Optional[CancellationToken] = None,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> VerifyResult:
        """
        Wait for the server's chunk counter to reach ``task.total_chunks``.

        Raises:
            MergeError: counter still short after ``poll_attempts`` reads,
                or the status call itself failed
        """
        token = token or CancellationToken()
        emit = emit or (lambda event: None)
        emit(ProgressEvent(status="Verifying upload status..."))

        status: Optional[SessionStatusResponse] = None
        for attempt in range(1, self.poll_attempts + 1):
            token.raise_if_cancelled()
            try:
                status = await self.api.get_status(session_id)
            except ApiError as e:
                if attempt == self.poll_attempts or not is_retryable_merge_error(e):
                    raise MergeError(f"Could not read session status: {e}", cause=e) from e
                logger.warning(f"[{session_id}] Status poll {attempt}/{self.poll_attempts} failed: {e}")
                await token.sleep(self.poll_interval)
                continue
            if status.status.is_finalized:
                logger.info(f"[{session_id}] Session already {status.status.value}, skipping merge")
                emit(ProgressEvent(status="File already merged", bytes_transferred=task.size))
                return VerifyResult(True, status.uploaded_chunks, status.url)
            if status.uploaded_chunks == task.total_chunks:
                return VerifyResult(False, status.uploaded_chunks)
            logger.debug(
                f"[{session_id}] Waiting for session sync {attempt}/{self.poll_attempts}: "
                f"{status.uploaded_chunks}/{task.total_chunks}"
            )
            if attempt < self.poll_attempts:
                emit(ProgressEvent(
                    status=f"Waiting for session sync, {status.uploaded_chunks}/{task.total_chunks} chunks..."
                ))
                await token.sleep(self.poll_interval)

        raise MergeError(
            f"Chunk verification failed: server reports {status.uploaded_chunks}/{task.total_chunks} chunks"
        )

    async def merge(
        self,
        task: UploadTask,
        session_id: str,
        fingerprint: str,
        token: Optional[CancellationToken] = None,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> Optional[str]:
        """
        Request finalize with bounded retry; MERGED at any point is success.

        Raises:
            MergeError: non-retryable rejection or retries exhausted
        """
        emit = emit or (lambda event: None)
        request = MergeRequest(
            session_id=session_id,
            file_name=task.file_name,
            file_hash=fingerprint,
            folder_path=task.folder_path,
            expected_chunk_count=task.total_chunks,
        )

        async def attempt(number: int) -> Optional[str]:
            if number > 1:
                status = await self.api.get_status(session_id)
                if status.status.is_finalized:
                    logger.info(f"[{session_id}] Merge landed on an earlier attempt")
                    return status.url
            try:
                return location_from(await self.api.merge(request))
            except StateMismatchError as e:
                return await self._resolve_mismatch(session_id, e)

        def on_retry(retry_number: int, error: BaseException, delay: float) -> None:
            emit(ProgressEvent(
                status=f"Merge failed, retrying ({retry_number}/{self.retry_policy.max_retries})..."
            ))

        emit(ProgressEvent(status="Merging file..."))
        try:
            location = await retry_async(
                attempt,
                self.retry_policy,
                should_retry=is_retryable_merge_error,
                token=token,
                on_retry=on_retry,
                description=f"[{session_id}] Merge",
            )
        except ApiError as e:
            raise MergeError(f"File merge failed: {e}", cause=e) from e

        logger.info(f"[{session_id}] ✅ Merged {task.total_chunks} chunks into {task.file_name}")
        return location

    async def finalize_legacy(
        self,
        task: UploadTask,
        batch_id: str,
        fingerprint: str,
        chunk_paths: List[str],
        token: Optional[CancellationToken] = None,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> Optional[str]:
        """Batch-id based finalize; same retry policy, no session to reconcile."""
        emit = emit or (lambda event: None)
        request = LegacyMergeRequest(
            batch_id=batch_id,
            file_name=task.file_name,
            file_hash=fingerprint,
            file_size=task.size,
            content_type=task.content_type,
            folder_path=task.folder_path,
            chunk_paths=chunk_paths,
        )

        async def attempt(number: int) -> Any:
            return await self.api.merge_legacy(request)

        emit(ProgressEvent(status="Merging file..."))
        try:
            data = await retry_async(
                attempt,
                self.retry_policy,
                should_retry=is_retryable_merge_error,
                token=token,
                description=f"[{batch_id[:8]}] Legacy merge",
            )
        except ApiError as e:
            raise MergeError(f"File merge failed: {e}", cause=e) from e
        return location_from(data)

    async def _resolve_mismatch(self, session_id: str, error: StateMismatchError) -> Optional[str]:
        status = await self.api.get_status(session_id)
        if status.status.is_finalized:
            logger.info(f"[{session_id}] Merge rejected but session is {status.status.value}, treating as success")
            return status.url
        raise MergeError(
            f"Session state mismatch: server reports {status.status.value}",
            cause=error,
        ) from error

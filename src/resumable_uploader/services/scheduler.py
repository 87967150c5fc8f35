"""
Chunk scheduling

Purpose: Transfer every outstanding chunk of a task through a bounded pool
of concurrent workers.
Logic:
  1. Queue outstanding chunk numbers in ascending order (FIFO)
  2. Start min(concurrency, queue length) workers
  3. Each worker: dequeue -> slice -> upload with bounded retry -> record
  4. A non-retryable failure (or exhausted retries) stops every worker from
     taking more chunks; attempts already on the wire finish on their own
  5. Join all workers, then require completed == {1..total_chunks}. No
     worker outlives ``upload``: if the join is interrupted the remaining
     workers are cancelled and awaited before the error propagates

Invariants:
  - a chunk number is held by at most one worker at a time
  - at most ``concurrency`` transfers are in flight
  - the completed set and byte counter only change at a worker's
    completion point, never mid-transfer
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Set, Union

from ..core.cancellation import CancellationToken
from ..core.config import HARD_MAX_CONCURRENCY
from ..core.errors import (
    ChunkUploadError,
    ReadError,
    UploadCancelled,
    UploadError,
    is_retryable_chunk_error,
)
from ..core.retry import RetryPolicy, retry_async
from ..models import ChunkJob, ChunkState, ProgressEvent, UploadTask
from ..schemas import ChunkUploadResponse
from .api_client import StorageApiClient

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4

AckCallback = Callable[[ChunkUploadResponse], Union[None, Awaitable[None]]]


@dataclass
class _Run:
    """Mutable state of one ``upload`` call, shared by its workers."""
    task: UploadTask
    queue: "asyncio.Queue[int]"
    token: CancellationToken
    completed: Set[int]
    bytes_transferred: int
    in_flight: Dict[int, ChunkJob] = field(default_factory=dict)
    failure: Optional[ChunkUploadError] = None


class ChunkScheduler:
    """Bounded worker pool uploading the outstanding chunks of one task."""

    def __init__(
        self,
        api: StorageApiClient,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.api = api
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = max(1, min(HARD_MAX_CONCURRENCY, concurrency))

    async def upload(
        self,
        task: UploadTask,
        session_id: Optional[str],
        outstanding: Iterable[int],
        already_completed: Iterable[int] = (),
        token: Optional[CancellationToken] = None,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
        on_chunk_uploaded: Optional[AckCallback] = None,
        batch_id: Optional[str] = None,
    ) -> FrozenSet[int]:
        """
        Upload ``outstanding`` chunks and return the full completed set.

        Args:
            task: What to upload
            session_id: Session the chunks belong to (session protocol)
            outstanding: Chunk numbers the server does not hold yet
            already_completed: Chunk numbers the server already holds
            token: External cancellation
            emit: Progress listener, called once per completed chunk
            on_chunk_uploaded: Called with each server acknowledgement;
                a coroutine function is awaited before the worker moves on
            batch_id: Batch the chunks belong to (legacy protocol)

        Raises:
            ChunkUploadError: a chunk failed fatally or ran out of retries,
                or ``on_chunk_uploaded`` raised
            UploadCancelled: the token fired before every chunk was done
        """
        parent = token or CancellationToken()
        completed = set(already_completed) & task.all_chunks()
        pending = sorted(set(outstanding) - completed)

        queue: "asyncio.Queue[int]" = asyncio.Queue()
        for chunk_number in pending:
            queue.put_nowait(chunk_number)

        run = _Run(
            task=task,
            queue=queue,
            token=parent.child(),
            completed=completed,
            bytes_transferred=task.bytes_for(completed),
        )

        worker_count = min(self.concurrency, len(pending))
        logger.info(
            f"Uploading {len(pending)}/{task.total_chunks} chunks of {task.file_name} "
            f"with {worker_count} workers"
        )

        workers = [
            asyncio.create_task(
                self._worker(worker_id, run, session_id, batch_id, emit, on_chunk_uploaded)
            )
            for worker_id in range(1, worker_count + 1)
        ]
        try:
            if workers:
                await asyncio.gather(*workers)
        finally:
            unfinished = [worker for worker in workers if not worker.done()]
            if unfinished:
                run.token.cancel("Chunk upload interrupted")
                for worker in unfinished:
                    worker.cancel()
                await asyncio.gather(*unfinished, return_exceptions=True)

        if run.failure is not None:
            raise run.failure
        if parent.cancelled:
            raise UploadCancelled(
                f"Cancelled with {len(run.completed)}/{task.total_chunks} chunks uploaded"
            )

        missing = task.all_chunks() - run.completed
        if missing:
            raise ChunkUploadError(
                f"Chunk upload incomplete: {len(run.completed)}/{task.total_chunks}, "
                f"missing {sorted(missing)}"
            )
        return frozenset(run.completed)

    async def _worker(
        self,
        worker_id: int,
        run: _Run,
        session_id: Optional[str],
        batch_id: Optional[str],
        emit: Optional[Callable[[ProgressEvent], None]],
        on_chunk_uploaded: Optional[AckCallback],
    ) -> None:
        while not run.token.cancelled:
            try:
                chunk_number = run.queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            job = ChunkJob(index=chunk_number, state=ChunkState.IN_FLIGHT)
            run.in_flight[chunk_number] = job
            try:
                ack = await self._transfer(job, run, session_id, batch_id, emit)
            except UploadCancelled:
                job.state = ChunkState.PENDING
                return
            except Exception as e:
                job.state = ChunkState.FAILED
                self._fail(run, job, e)
                return
            finally:
                run.in_flight.pop(chunk_number, None)

            # completion point: the only place shared progress changes
            job.state = ChunkState.DONE
            run.completed.add(chunk_number)
            run.bytes_transferred = min(
                run.task.size, run.bytes_transferred + run.task.chunk_length(chunk_number)
            )
            logger.debug(
                f"[worker {worker_id}] chunk {chunk_number} done "
                f"({len(run.completed)}/{run.task.total_chunks}) after {job.attempt_count} attempt(s)"
            )
            if on_chunk_uploaded is not None:
                try:
                    outcome = on_chunk_uploaded(ack)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception as e:
                    self._fail(run, job, e)
                    return
            if emit is not None:
                emit(ProgressEvent(
                    status=f"Uploading chunks: {len(run.completed)} / {run.task.total_chunks}",
                    bytes_transferred=run.bytes_transferred,
                    completed_chunks=len(run.completed),
                ))

    async def _transfer(
        self,
        job: ChunkJob,
        run: _Run,
        session_id: Optional[str],
        batch_id: Optional[str],
        emit: Optional[Callable[[ProgressEvent], None]],
    ) -> ChunkUploadResponse:
        offset, length = run.task.chunk_bounds(job.index)
        try:
            content = await run.task.source.slice(offset, length)
        except Exception as e:
            raise ReadError(f"Failed to read chunk {job.index}: {e}", cause=e) from e
        if len(content) != length:
            raise ReadError(f"Short read for chunk {job.index}: expected {length} bytes, got {len(content)}")

        async def attempt(number: int) -> ChunkUploadResponse:
            job.attempt_count = number
            return await self.api.upload_chunk(
                job.index, content, session_id=session_id, batch_id=batch_id
            )

        def on_retry(retry_number: int, error: BaseException, delay: float) -> None:
            if emit is not None:
                emit(ProgressEvent(
                    status=f"Chunk {job.index} failed, retrying ({retry_number}/{self.retry_policy.max_retries})..."
                ))

        return await retry_async(
            attempt,
            self.retry_policy,
            should_retry=is_retryable_chunk_error,
            token=run.token,
            on_retry=on_retry,
            description=f"Chunk {job.index}",
        )

    @staticmethod
    def _fail(run: _Run, job: ChunkJob, error: Exception) -> None:
        if run.failure is None:
            expected = isinstance(error, UploadError)
            detail = str(error) if expected else f"{type(error).__name__}: {error}"
            run.failure = ChunkUploadError(
                f"Chunk {job.index} failed after {job.attempt_count} attempt(s): {detail}",
                chunk_number=job.index,
                attempts=job.attempt_count,
                cause=error,
            )
            logger.error(run.failure.message, exc_info=not expected)
        # stop the other workers from dequeuing further chunks
        run.token.cancel(f"Aborted after chunk {job.index} failed")

"""
End-to-end orchestrator tests against the in-process fake storage API
"""
import asyncio
import hashlib
import logging
import threading

import pytest

from resumable_uploader.core.errors import (
    BusinessError,
    ChunkUploadError,
    ResultCode,
    ServerError,
    UploadInProgressError,
)
from resumable_uploader.models import BytesSource, UploadState
from resumable_uploader.schemas import SessionStatus
from resumable_uploader.services import InMemorySessionStore, UploadOrchestrator

MIB = 1024 * 1024


def collapse(states):
    """Consecutive duplicates removed."""
    result = []
    for state in states:
        if not result or result[-1] != state:
            result.append(state)
    return result


def record_states(orchestrator):
    seen = []
    orchestrator.subscribe(lambda snapshot: seen.append(snapshot.state))
    return seen


# ==================== Session protocol ====================

@pytest.mark.asyncio
async def test_fresh_upload_of_three_chunks(fake_api, make_config, payload_12mib):
    orchestrator = UploadOrchestrator(fake_api, make_config())
    states = record_states(orchestrator)

    result = await orchestrator.upload(BytesSource(payload_12mib, name="big.bin"))

    assert result.state == UploadState.DONE
    assert result.is_success
    assert result.total_chunks == 3
    assert result.completed_chunks == {1, 2, 3}
    assert result.fingerprint == hashlib.md5(payload_12mib).hexdigest()
    assert sorted(fake_api.uploaded_chunk_numbers) == [1, 2, 3]
    assert fake_api.only_session().status == SessionStatus.MERGED
    assert result.file_url == f"/objects/{result.fingerprint}"
    assert collapse(states) == [
        UploadState.HASHING,
        UploadState.NEGOTIATING,
        UploadState.UPLOADING,
        UploadState.VERIFYING,
        UploadState.MERGING,
        UploadState.DONE,
    ]
    assert orchestrator.last_snapshot.percentage == 100
    assert not orchestrator.is_uploading


@pytest.mark.asyncio
async def test_resume_uploads_only_missing_chunks(fake_api, make_config, payload_12mib):
    fake_api.preset_uploaded = {1}
    fake_api.preset_status = SessionStatus.UPLOADING
    orchestrator = UploadOrchestrator(fake_api, make_config())

    result = await orchestrator.upload(BytesSource(payload_12mib, name="big.bin"))

    assert result.state == UploadState.DONE
    assert sorted(fake_api.uploaded_chunk_numbers) == [2, 3]
    assert result.completed_chunks == {1, 2, 3}


@pytest.mark.asyncio
async def test_init_rejection_fails_without_chunk_uploads(fake_api, make_config, payload_12mib):
    fake_api.init_error = BusinessError("Invalid fileName", code=ResultCode.BAD_REQUEST)
    orchestrator = UploadOrchestrator(fake_api, make_config())
    states = record_states(orchestrator)

    result = await orchestrator.upload(BytesSource(payload_12mib, name="big.bin"))

    assert result.state == UploadState.FAILED
    assert "Invalid fileName" in result.message
    assert isinstance(result.error, BusinessError)
    assert fake_api.uploaded_chunk_numbers == []
    assert collapse(states) == [UploadState.HASHING, UploadState.NEGOTIATING, UploadState.FAILED]


@pytest.mark.asyncio
async def test_merged_session_is_instant(fake_api, make_config, payload_12mib):
    fake_api.preset_status = SessionStatus.MERGED
    orchestrator = UploadOrchestrator(fake_api, make_config())

    result = await orchestrator.upload(BytesSource(payload_12mib, name="big.bin"))

    assert result.state == UploadState.FAST_PATH_DONE
    assert result.fast_path
    assert fake_api.uploaded_chunk_numbers == []
    assert fake_api.calls_named("merge") == []
    assert orchestrator.last_snapshot.percentage == 100


@pytest.mark.asyncio
async def test_all_chunks_present_only_merges(fake_api, make_config, payload_12mib):
    fake_api.preset_uploaded = {1, 2, 3}
    fake_api.preset_status = SessionStatus.UPLOADING
    orchestrator = UploadOrchestrator(fake_api, make_config())
    states = record_states(orchestrator)

    result = await orchestrator.upload(BytesSource(payload_12mib, name="big.bin"))

    assert result.state == UploadState.DONE
    assert result.fast_path
    assert fake_api.uploaded_chunk_numbers == []
    assert len(fake_api.calls_named("merge")) == 1
    assert UploadState.UPLOADING not in states


@pytest.mark.asyncio
async def test_transient_chunk_failure_still_succeeds(fake_api, make_config):
    fake_api.chunk_failures[2] = [ServerError("busy"), ServerError("busy")]
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10))

    result = await orchestrator.upload(BytesSource(b"q" * 30, name="small-chunks.bin"))

    assert result.state == UploadState.DONE
    assert fake_api.uploaded_chunk_numbers.count(2) == 3
    assert fake_api.double_scheduled == []


@pytest.mark.asyncio
async def test_exhausted_chunk_retries_fail_the_upload(fake_api, make_config):
    fake_api.chunk_failures[1] = [ServerError("down") for _ in range(3)]
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_chunk_retries=2))

    result = await orchestrator.upload(BytesSource(b"q" * 30, name="x.bin"))

    assert result.state == UploadState.FAILED
    assert result.message.startswith("Chunk upload failed")
    assert isinstance(result.error, ChunkUploadError)
    assert fake_api.calls_named("merge") == []


@pytest.mark.asyncio
async def test_merge_failure_message(fake_api, make_config):
    fake_api.merge_errors = [BusinessError("Hash mismatch", code=ResultCode.MERGE_FAILED)]
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10))

    result = await orchestrator.upload(BytesSource(b"q" * 30, name="x.bin"))

    assert result.state == UploadState.FAILED
    assert result.message.startswith("File merge failed")
    assert "Hash mismatch" in result.message


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(fake_api, make_config):
    fake_api.chunk_delay = 0.005
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_concurrency=2))

    result = await orchestrator.upload(BytesSource(bytes(200), name="x.bin"))

    assert result.state == UploadState.DONE
    assert fake_api.max_in_flight == 2


# ==================== Single active upload, cancellation ====================

@pytest.mark.asyncio
async def test_second_upload_is_rejected_while_busy(fake_api, make_config):
    fake_api.chunk_delay = 0.02
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_concurrency=1))
    first = asyncio.create_task(orchestrator.upload(BytesSource(b"a" * 50, name="a.bin")))
    await asyncio.sleep(0.01)

    assert orchestrator.is_uploading
    calls_before = len(fake_api.calls)
    with pytest.raises(UploadInProgressError):
        await orchestrator.upload(BytesSource(b"b" * 50, name="b.bin"))
    assert len(fake_api.calls) == calls_before

    result = await first
    assert result.state == UploadState.DONE
    assert len(fake_api.sessions) == 1
    assert all(call[1].file_name == "a.bin" for call in fake_api.calls_named("init_session"))


@pytest.mark.asyncio
async def test_cancel_stops_the_upload(fake_api, make_config):
    fake_api.chunk_delay = 0.02
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_concurrency=1))
    task = asyncio.create_task(orchestrator.upload(BytesSource(b"c" * 100, name="c.bin")))
    await asyncio.sleep(0.05)

    assert orchestrator.cancel()
    result = await task

    assert result.state == UploadState.CANCELLED
    assert "cancelled" in result.message.lower()
    assert 0 < len(fake_api.uploaded_chunk_numbers) < 10
    assert fake_api.calls_named("merge") == []
    assert fake_api.only_session().status == SessionStatus.UPLOADING
    assert not orchestrator.is_uploading
    assert not orchestrator.cancel()


@pytest.mark.asyncio
async def test_cancelled_upload_resumes_later(fake_api, make_config):
    fake_api.chunk_delay = 0.02
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_concurrency=1))
    source = BytesSource(b"r" * 100, name="r.bin")
    task = asyncio.create_task(orchestrator.upload(source))
    await asyncio.sleep(0.05)
    orchestrator.cancel()
    await task
    first_run = list(fake_api.uploaded_chunk_numbers)

    fake_api.chunk_delay = 0
    result = await orchestrator.upload(source)

    assert result.state == UploadState.DONE
    second_run = fake_api.uploaded_chunk_numbers[len(first_run):]
    assert set(first_run).isdisjoint(second_run)
    assert set(first_run) | set(second_run) == set(range(1, 11))


# ==================== Observers ====================

@pytest.mark.asyncio
async def test_failing_listener_does_not_break_upload(fake_api, make_config):
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10))

    def broken(snapshot):
        raise RuntimeError("ui went away")

    orchestrator.subscribe(broken)
    result = await orchestrator.upload(BytesSource(b"d" * 30, name="d.bin"))

    assert result.state == UploadState.DONE


@pytest.mark.asyncio
async def test_unsubscribe(fake_api, make_config):
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10))
    seen = []
    unsubscribe = orchestrator.subscribe(seen.append)
    unsubscribe()

    await orchestrator.upload(BytesSource(b"d" * 30, name="d.bin"))

    assert seen == []


@pytest.mark.asyncio
async def test_snapshot_bytes_never_decrease(fake_api, make_config):
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10))
    seen = []
    orchestrator.subscribe(lambda snapshot: seen.append(snapshot.bytes_transferred))

    await orchestrator.upload(BytesSource(b"e" * 95, name="e.bin"))

    assert seen == sorted(seen)
    assert seen[-1] == 95


# ==================== Direct upload ====================

@pytest.mark.asyncio
async def test_small_file_goes_direct(fake_api, make_config):
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=1 * MIB))

    result = await orchestrator.upload(BytesSource(b"tiny", name="note.txt"), folder_path="notes")

    assert result.state == UploadState.DONE
    assert fake_api.calls_named("init_session") == []
    dto = fake_api.direct_uploads[0]
    assert dto.file_name == "note.txt"
    assert dto.file_size == 4
    assert dto.folder_path == "notes"
    assert dto.content_type == "text/plain"
    assert result.file_url == f"/objects/{hashlib.md5(b'tiny').hexdigest()}"


@pytest.mark.asyncio
async def test_empty_file_always_goes_direct(fake_api, make_config):
    orchestrator = UploadOrchestrator(fake_api, make_config(direct_upload=False))

    result = await orchestrator.upload(BytesSource(b"", name="empty.txt"))

    assert result.state == UploadState.DONE
    assert result.total_chunks == 0
    assert len(fake_api.direct_uploads) == 1
    assert orchestrator.last_snapshot.percentage == 100


@pytest.mark.asyncio
async def test_small_file_uses_session_when_direct_disabled(fake_api, make_config):
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=1 * MIB, direct_upload=False))

    result = await orchestrator.upload(BytesSource(b"tiny", name="note.txt"))

    assert result.state == UploadState.DONE
    assert fake_api.uploaded_chunk_numbers == [1]
    assert fake_api.direct_uploads == []


# ==================== Session store ====================

@pytest.mark.asyncio
async def test_session_record_is_cleared_on_success(fake_api, make_config):
    store = InMemorySessionStore()
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10), store=store)

    await orchestrator.upload(BytesSource(b"s" * 30, name="s.bin"))

    assert len(store) == 0


@pytest.mark.asyncio
async def test_session_record_is_kept_on_failure(fake_api, make_config):
    fake_api.chunk_failures[3] = [BusinessError("rejected", code=ResultCode.BAD_REQUEST)]
    store = InMemorySessionStore()
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_concurrency=1), store=store)

    result = await orchestrator.upload(BytesSource(b"s" * 30, name="s.bin"))

    record = store.load(result.fingerprint)
    assert result.state == UploadState.FAILED
    assert record["sessionId"] == "session-1"
    assert record["totalChunks"] == 3
    assert record["uploadedChunkNumbers"] == [1, 2]


# ==================== Legacy protocol ====================

@pytest.mark.asyncio
async def test_legacy_upload(fake_api, make_config):
    store = InMemorySessionStore()
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, protocol="legacy"), store=store)

    result = await orchestrator.upload(BytesSource(b"L" * 25, name="legacy.bin"))

    assert result.state == UploadState.DONE
    assert result.session_id == result.fingerprint
    assert fake_api.calls[0][0] == "check_file"
    assert fake_api.calls_named("init_session") == []
    assert {call[4] for call in fake_api.calls_named("upload_chunk")} == {result.fingerprint}
    merge = fake_api.legacy_merges[0]
    assert merge.batch_id == result.fingerprint
    assert merge.chunk_paths == [f"chunks/{result.fingerprint}/{n}" for n in (1, 2, 3)]
    assert len(store) == 0


@pytest.mark.asyncio
async def test_legacy_resume_uses_stored_chunk_paths(fake_api, make_config):
    data = b"L" * 25
    fingerprint = hashlib.md5(data).hexdigest()
    store = InMemorySessionStore()
    store.save(fingerprint, {
        "batchId": fingerprint,
        "totalChunks": 3,
        "chunkSize": 10,
        "chunkPaths": {"1": "stored/path/1"},
    })
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, protocol="legacy"), store=store)

    result = await orchestrator.upload(BytesSource(data, name="legacy.bin"))

    assert result.state == UploadState.DONE
    assert sorted(fake_api.uploaded_chunk_numbers) == [2, 3]
    assert fake_api.legacy_merges[0].chunk_paths[0] == "stored/path/1"


@pytest.mark.asyncio
async def test_legacy_ignores_paths_from_other_chunk_layout(fake_api, make_config):
    data = b"L" * 25
    fingerprint = hashlib.md5(data).hexdigest()
    store = InMemorySessionStore()
    store.save(fingerprint, {"totalChunks": 5, "chunkSize": 5, "chunkPaths": {"1": "old/1"}})
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, protocol="legacy"), store=store)

    await orchestrator.upload(BytesSource(data, name="legacy.bin"))

    assert sorted(fake_api.uploaded_chunk_numbers) == [1, 2, 3]


@pytest.mark.asyncio
async def test_legacy_existing_file_is_instant(fake_api, make_config):
    data = b"L" * 25
    fake_api.existing[hashlib.md5(data).hexdigest()] = "/objects/old"
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, protocol="legacy"))

    result = await orchestrator.upload(BytesSource(data, name="legacy.bin"))

    assert result.state == UploadState.FAST_PATH_DONE
    assert result.file_url == "/objects/old"
    assert fake_api.uploaded_chunk_numbers == []


def test_invalid_config_is_rejected(make_config):
    with pytest.raises(ValueError):
        make_config(chunk_size=0)
    with pytest.raises(ValueError):
        make_config(protocol="ftp")
    assert make_config(max_concurrency=50).max_concurrency == 8


# ==================== Unexpected failures ====================

class FailingStore(InMemorySessionStore):
    """Accepts ``fail_after`` saves, then every save raises like a full disk."""

    def __init__(self, fail_after=1):
        super().__init__()
        self.fail_after = fail_after
        self.saves = 0
        self.save_threads = set()

    def save(self, key, record):
        self.save_threads.add(threading.get_ident())
        self.saves += 1
        if self.saves > self.fail_after:
            raise OSError("No space left on device")
        super().save(key, record)


@pytest.mark.asyncio
async def test_store_failure_fails_the_upload_and_stops_workers(fake_api, make_config):
    fake_api.chunk_delay = 0.01
    store = FailingStore(fail_after=1)
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10, max_concurrency=2), store=store)
    states = record_states(orchestrator)

    result = await orchestrator.upload(BytesSource(bytes(100), name="full.bin"))

    assert result.state == UploadState.FAILED
    assert orchestrator.state == UploadState.FAILED
    assert states[-1] == UploadState.FAILED
    assert isinstance(result.error, ChunkUploadError)
    assert isinstance(result.error.cause, OSError)
    assert result.message.startswith("Chunk upload failed")
    assert not orchestrator.is_uploading

    calls_at_return = len(fake_api.uploaded_chunk_numbers)
    await asyncio.sleep(0.05)
    assert len(fake_api.uploaded_chunk_numbers) == calls_at_return < 10
    assert fake_api.calls_named("merge") == []


@pytest.mark.asyncio
async def test_store_failure_outside_chunk_phase_fails_the_upload(fake_api, make_config):
    store = FailingStore(fail_after=0)
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10), store=store)

    result = await orchestrator.upload(BytesSource(bytes(30), name="full.bin"))

    assert result.state == UploadState.FAILED
    assert isinstance(result.error, OSError)
    assert "OSError" in result.message
    assert fake_api.uploaded_chunk_numbers == []


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop_thread(fake_api, make_config):
    store = FailingStore(fail_after=100)
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10), store=store)

    result = await orchestrator.upload(BytesSource(bytes(30), name="t.bin"))

    assert result.state == UploadState.DONE
    assert store.saves == 4
    assert threading.get_ident() not in store.save_threads


@pytest.mark.asyncio
async def test_each_upload_starts_from_idle(fake_api, make_config, caplog):
    orchestrator = UploadOrchestrator(fake_api, make_config(chunk_size=10))
    fake_api.init_error = BusinessError("Invalid fileName", code=ResultCode.BAD_REQUEST)
    failed = await orchestrator.upload(BytesSource(b"i" * 30, name="i.bin"))
    assert failed.state == UploadState.FAILED

    fake_api.init_error = None
    with caplog.at_level(logging.INFO, logger="resumable_uploader.services.orchestrator"):
        result = await orchestrator.upload(BytesSource(b"i" * 30, name="i.bin"))

    assert result.state == UploadState.DONE
    assert "IDLE -> HASHING" in caplog.text
    assert "FAILED -> HASHING" not in caplog.text

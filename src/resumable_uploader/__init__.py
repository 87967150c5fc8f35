"""
Resumable chunked uploads to an object-storage backend.

    async with StorageApiClient() as api:
        orchestrator = UploadOrchestrator(api)
        result = await orchestrator.upload(FileSource("video.mp4"))
"""
from .core import CancellationToken, RetryPolicy, UploaderConfig, settings
from .core.errors import (
    ApiError,
    BusinessError,
    ChunkUploadError,
    MergeError,
    ReadError,
    ServerError,
    StateMismatchError,
    TransportError,
    UploadCancelled,
    UploadError,
    UploadInProgressError,
)
from .models import (
    BytesSource,
    ChunkSource,
    FileSource,
    ProgressSnapshot,
    UploadResult,
    UploadState,
    UploadTask,
)
from .services import (
    InMemorySessionStore,
    JsonFileSessionStore,
    StorageApiClient,
    UploadOrchestrator,
    format_duration,
    format_speed,
)

__version__ = "1.0.0"

__all__ = [
    "CancellationToken",
    "RetryPolicy",
    "UploaderConfig",
    "settings",
    "ApiError",
    "BusinessError",
    "ChunkUploadError",
    "MergeError",
    "ReadError",
    "ServerError",
    "StateMismatchError",
    "TransportError",
    "UploadCancelled",
    "UploadError",
    "UploadInProgressError",
    "BytesSource",
    "ChunkSource",
    "FileSource",
    "ProgressSnapshot",
    "UploadResult",
    "UploadState",
    "UploadTask",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "StorageApiClient",
    "UploadOrchestrator",
    "format_duration",
    "format_speed",
]

"""Models module exports"""
from .source import BytesSource, ChunkSource, FileSource, guess_content_type
from .upload import (
    ChunkJob,
    ChunkState,
    NegotiationResult,
    ProgressEvent,
    ProgressSnapshot,
    Session,
    UploadResult,
    UploadState,
    UploadTask,
    location_from,
)

__all__ = [
    "BytesSource",
    "ChunkSource",
    "FileSource",
    "guess_content_type",
    "ChunkJob",
    "ChunkState",
    "NegotiationResult",
    "ProgressEvent",
    "ProgressSnapshot",
    "Session",
    "UploadResult",
    "UploadState",
    "UploadTask",
    "location_from",
]

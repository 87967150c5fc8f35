"""Schemas module exports"""
from .upload import (
    ApiResponse,
    ChunkUploadResponse,
    DirectUploadDto,
    FileCheckRequest,
    FileExistsResponse,
    InitSessionRequest,
    LegacyMergeRequest,
    MergeRequest,
    SessionStatus,
    SessionStatusResponse,
)

__all__ = [
    "ApiResponse",
    "ChunkUploadResponse",
    "DirectUploadDto",
    "FileCheckRequest",
    "FileExistsResponse",
    "InitSessionRequest",
    "LegacyMergeRequest",
    "MergeRequest",
    "SessionStatus",
    "SessionStatusResponse",
]

"""
Error taxonomy for the upload engine.

Classification happens once, where a response (or the lack of one) is
turned into an exception by the storage API client. Everything above it
decides retry vs. abort from the exception type alone.
"""
from typing import Any, Optional


class ResultCode:
    """Business codes carried in the ``{code, message, data}`` envelope."""
    SUCCESS = 200
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    INTERNAL_SERVER_ERROR = 500

    FILE_UPLOAD_FAILED = 1001
    FILE_DOWNLOAD_FAILED = 1002
    FILE_DELETE_FAILED = 1003
    FILE_EXISTS = 1004
    BUCKET_CREATION_FAILED = 1005
    MERGE_FAILED = 1006
    FILE_NOT_EXIST = 1007
    UPLOAD_SESSION_STATE_MISMATCH = 1010


class UploadError(Exception):
    """Base class for every failure surfaced by the engine."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ReadError(UploadError):
    """The chunk source could not be read. Never retried."""


class UploadInProgressError(UploadError):
    """An orchestrator was asked to start a second upload while busy."""


class UploadCancelled(UploadError):
    """The upload was cancelled from outside."""


# ==================== Request errors ====================

class ApiError(UploadError):
    """A storage API request failed."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        http_status: Optional[int] = None,
        data: Any = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.code = code
        self.http_status = http_status
        self.data = data

    def __str__(self):
        details = []
        if self.code is not None:
            details.append(f"code={self.code}")
        if self.http_status is not None:
            details.append(f"http={self.http_status}")
        return f"{self.message} ({', '.join(details)})" if details else self.message


class TransportError(ApiError):
    """No response was received (connect failure, timeout, reset)."""


class ServerError(ApiError):
    """HTTP 5xx."""


class BusinessError(ApiError):
    """Envelope carried ``code != 200``."""


class StateMismatchError(BusinessError):
    """The server-side session no longer matches what the client assumed."""


# ==================== Component failures ====================

class ChunkUploadError(UploadError):
    """A chunk could not be transferred (non-retryable error or retries exhausted)."""

    def __init__(
        self,
        message: str,
        chunk_number: Optional[int] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.chunk_number = chunk_number
        self.attempts = attempts


class MergeError(UploadError):
    """Verification or finalization of the uploaded chunks failed."""


# ==================== Retry predicates ====================

def _is_transient(error: BaseException) -> bool:
    if isinstance(error, (TransportError, ServerError)):
        return True
    if isinstance(error, StateMismatchError):
        return False
    if isinstance(error, BusinessError):
        return error.code == ResultCode.FILE_UPLOAD_FAILED
    return False


def is_retryable_chunk_error(error: BaseException) -> bool:
    """Transport, 5xx and FILE_UPLOAD_FAILED are worth another chunk attempt."""
    return _is_transient(error)


def is_retryable_merge_error(error: BaseException) -> bool:
    """Same classes as chunk uploads; state mismatches are resolved by a status re-read instead."""
    return _is_transient(error)

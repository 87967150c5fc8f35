"""Core module exports"""
from .config import settings, Settings, UploaderConfig
from .cancellation import CancellationToken
from .retry import RetryPolicy, get_retry_policy, retry_async

__all__ = [
    "settings",
    "Settings",
    "UploaderConfig",
    "CancellationToken",
    "RetryPolicy",
    "get_retry_policy",
    "retry_async",
]

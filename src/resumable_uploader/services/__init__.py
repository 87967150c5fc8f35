"""Services module exports"""
from .api_client import StorageApiClient
from .hasher import ContentHasher, compute_hash
from .merge import MergeCoordinator, VerifyResult
from .negotiator import SessionNegotiator, valid_chunk_numbers
from .orchestrator import UploadOrchestrator
from .persistence import InMemorySessionStore, JsonFileSessionStore, SessionStore
from .progress import ProgressEstimator, format_duration, format_speed
from .scheduler import ChunkScheduler

__all__ = [
    "StorageApiClient",
    "ContentHasher",
    "compute_hash",
    "MergeCoordinator",
    "VerifyResult",
    "SessionNegotiator",
    "valid_chunk_numbers",
    "UploadOrchestrator",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "SessionStore",
    "ProgressEstimator",
    "format_duration",
    "format_speed",
    "ChunkScheduler",
]

"""
Content fingerprinting

Streams a chunk source through fixed-size windows into one incremental
hash. The digest depends only on the bytes, so the window size only
bounds memory and never changes the fingerprint.
"""
import hashlib
import logging
from typing import Optional

from ..core.cancellation import CancellationToken
from ..core.config import MIB
from ..core.errors import ReadError
from ..models import ChunkSource

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 5 * MIB


def compute_hash(content: bytes, algorithm: str = "md5") -> str:
    """Hash of an in-memory payload (small payloads, tests, server side)."""
    return hashlib.new(algorithm, content).hexdigest()


class ContentHasher:
    """Deterministic fingerprint of a ``ChunkSource``."""

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE, algorithm: str = "md5"):
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        hashlib.new(algorithm)  # fail fast on unknown algorithms
        self.window_size = window_size
        self.algorithm = algorithm

    async def hash(self, source: ChunkSource, token: Optional[CancellationToken] = None) -> str:
        """
        Read the source window by window and return the hex digest.

        Raises:
            ReadError: a window could not be read or came back short
            UploadCancelled: the token fired between windows
        """
        hasher = hashlib.new(self.algorithm)
        size = source.size
        offset = 0

        while offset < size:
            if token is not None:
                token.raise_if_cancelled()
            length = min(self.window_size, size - offset)
            try:
                window = await source.slice(offset, length)
            except Exception as e:
                raise ReadError(f"Failed to read bytes {offset}-{offset + length}: {e}", cause=e) from e
            if len(window) != length:
                raise ReadError(
                    f"Short read at offset {offset}: expected {length} bytes, got {len(window)}"
                )
            hasher.update(window)
            offset += length

        fingerprint = hasher.hexdigest()
        logger.debug(f"Hashed {size} bytes ({self.algorithm}): {fingerprint}")
        return fingerprint

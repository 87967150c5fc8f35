"""
Chunk sources: anything with a size and an async ``slice(offset, length)``.
"""
import asyncio
import mimetypes
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class ChunkSource(Protocol):
    """Byte source the engine reads windows and chunks from."""

    @property
    def size(self) -> int:
        ...

    async def slice(self, offset: int, length: int) -> bytes:
        ...


def guess_content_type(name: Optional[str]) -> str:
    if not name:
        return "application/octet-stream"
    content_type, _ = mimetypes.guess_type(name)
    return content_type or "application/octet-stream"


class BytesSource:
    """In-memory source, mostly for tests and small payloads."""

    def __init__(self, data: bytes, name: str = "upload.bin", content_type: Optional[str] = None):
        self._data = bytes(data)
        self.name = name
        self.content_type = content_type or guess_content_type(name)

    @property
    def size(self) -> int:
        return len(self._data)

    async def slice(self, offset: int, length: int) -> bytes:
        return self._data[offset:offset + length]


class FileSource:
    """
    File on local disk.

    Reads are blocking, so each slice runs in the default executor to keep
    the event loop free for concurrent chunk transfers.
    """

    def __init__(self, path, content_type: Optional[str] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"File not found: {self.path}")
        self.name = self.path.name
        self.content_type = content_type or guess_content_type(self.name)
        self._size = self.path.stat().st_size

    @property
    def size(self) -> int:
        return self._size

    async def slice(self, offset: int, length: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, offset, length)

    def _read(self, offset: int, length: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(offset)
            return f.read(length)

"""
Cooperative cancellation for upload tasks.

A token is checked at every suspension point the engine owns: before a
window read, before dequeuing a chunk, before each attempt and during
each backoff or poll delay. Requests already on the wire are never
interrupted; they complete or fail on their own.
"""
import asyncio
from typing import List, Optional

from .errors import UploadCancelled


class CancellationToken:
    """asyncio-event backed token; cancelling a token cancels its children."""

    def __init__(self):
        self._event = asyncio.Event()
        self._children: List["CancellationToken"] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Upload cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        """New token cancelled together with this one, but cancellable on its own."""
        token = CancellationToken()
        self._children.append(token)
        if self.cancelled:
            token.cancel(self.reason)
        return token

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise UploadCancelled(self.reason or "Upload cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising ``UploadCancelled`` as soon as the token fires."""
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()

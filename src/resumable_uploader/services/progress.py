"""
Progress, throughput and ETA estimation

Consumes (timestamp, bytes_transferred) samples and derives percentage,
EMA-smoothed speed, ETA and elapsed time for progress snapshots.
"""
import asyncio
import logging
import math
import time
from typing import Callable, Optional

from ..models import ProgressSnapshot, UploadState

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.3
MIN_SAMPLE_INTERVAL = 0.5  # seconds


def format_speed(bytes_per_second: float) -> str:
    """e.g. '512.0 KB/s' or '3.2 MB/s'"""
    if bytes_per_second <= 0:
        return "0 KB/s"
    if bytes_per_second < 1024 * 1024:
        return f"{bytes_per_second / 1024:.1f} KB/s"
    return f"{bytes_per_second / (1024 * 1024):.1f} MB/s"


def format_duration(seconds: float) -> str:
    """MM:SS, or HH:MM:SS from one hour up"""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class ProgressEstimator:
    """
    Speed is only re-estimated once at least ``min_interval`` seconds have
    passed since the last accepted sample, which absorbs bursts of chunks
    completing together. ``bytes_transferred`` never decreases.
    """

    def __init__(
        self,
        total_bytes: int,
        alpha: float = EMA_ALPHA,
        min_interval: float = MIN_SAMPLE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_bytes = total_bytes
        self.alpha = alpha
        self.min_interval = min_interval
        self._clock = clock

        self.bytes_transferred = 0
        self.speed = 0.0
        self.eta_seconds = 0.0
        self.elapsed_seconds = 0

        self._last_time: Optional[float] = None
        self._last_bytes = 0
        self._timer: Optional[asyncio.Task] = None
        self._done = False

    @property
    def percentage(self) -> int:
        if self.total_bytes <= 0:
            return 100 if self._done else 0
        return min(100, math.floor(self.bytes_transferred * 100 / self.total_bytes))

    def start(self, initial_bytes: int = 0) -> None:
        """Set the baseline (bytes already on the server count as done, not as speed)."""
        self.bytes_transferred = max(self.bytes_transferred, initial_bytes)
        self._last_bytes = self.bytes_transferred
        self._last_time = self._clock()

    def update(self, bytes_transferred: int, timestamp: Optional[float] = None) -> None:
        now = self._clock() if timestamp is None else timestamp
        self.bytes_transferred = max(self.bytes_transferred, min(bytes_transferred, self.total_bytes))

        if self._last_time is None:
            self._last_time = now
            self._last_bytes = self.bytes_transferred
            return

        elapsed = now - self._last_time
        if elapsed < self.min_interval:
            return

        instant = (self.bytes_transferred - self._last_bytes) / elapsed
        if self.speed == 0:
            self.speed = instant
        else:
            self.speed = self.alpha * instant + (1 - self.alpha) * self.speed

        remaining = max(0, self.total_bytes - self.bytes_transferred)
        self.eta_seconds = remaining / self.speed if self.speed > 0 else 0.0
        self._last_time = now
        self._last_bytes = self.bytes_transferred

    def finish(self, success: bool = False) -> None:
        """Terminal state: speed and ETA drop to zero, the clock stops."""
        if success:
            self._done = True
            self.bytes_transferred = self.total_bytes
        self.speed = 0.0
        self.eta_seconds = 0.0
        self.stop_timer()

    # ==================== Elapsed time ====================

    def start_timer(self) -> None:
        """Tick ``elapsed_seconds`` once per second until ``stop_timer``."""
        self.stop_timer()
        self.elapsed_seconds = 0
        self._timer = asyncio.get_running_loop().create_task(self._tick())

    def stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(1)
            self.elapsed_seconds += 1

    def snapshot(
        self,
        status: str,
        state: UploadState,
        fingerprint: Optional[str] = None,
    ) -> ProgressSnapshot:
        return ProgressSnapshot(
            percentage=self.percentage,
            status=status,
            bytes_transferred=self.bytes_transferred,
            total_bytes=self.total_bytes,
            speed=self.speed,
            eta_seconds=self.eta_seconds,
            elapsed_seconds=self.elapsed_seconds,
            state=state,
            fingerprint=fingerprint,
        )

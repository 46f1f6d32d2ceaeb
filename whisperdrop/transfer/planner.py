"""
Transfer planning: chunk sizing and ETA estimation.

Everything here is pure and synchronous apart from :class:`SpeedTracker`,
which each transfer owns privately.
"""

import math
import time

from whisperdrop.config import (
    DEFAULT_BANDWIDTH_MBPS,
    LARGE_CHUNK_SIZE,
    MEDIUM_CHUNK_SIZE,
    MEDIUM_FILE_LIMIT,
    SMALL_CHUNK_SIZE,
    SMALL_FILE_LIMIT,
)
from whisperdrop.errors import InvalidInput
from whisperdrop.transfer.models import TransferPlan


def _check_size(file_size_bytes: int) -> int:
    if isinstance(file_size_bytes, bool) or not isinstance(file_size_bytes, int):
        raise InvalidInput(
            "file size must be an integer",
            data={"file_size_bytes": repr(file_size_bytes)},
        )
    if file_size_bytes < 0:
        raise InvalidInput(
            "file size must be >= 0", data={"file_size_bytes": file_size_bytes}
        )
    return file_size_bytes


def chunk_size_for(file_size_bytes: int) -> int:
    """Small files favour latency, large files favour fewer round trips."""
    _check_size(file_size_bytes)
    if file_size_bytes < SMALL_FILE_LIMIT:
        return SMALL_CHUNK_SIZE
    if file_size_bytes < MEDIUM_FILE_LIMIT:
        return MEDIUM_CHUNK_SIZE
    return LARGE_CHUNK_SIZE


def estimate(file_size_bytes: int, bandwidth_mbps: float = DEFAULT_BANDWIDTH_MBPS) -> int:
    """Whole seconds needed to move ``file_size_bytes`` at ``bandwidth_mbps``."""
    _check_size(file_size_bytes)
    if (
        not isinstance(bandwidth_mbps, (int, float))
        or not math.isfinite(bandwidth_mbps)
        or bandwidth_mbps <= 0
    ):
        raise InvalidInput(
            "bandwidth must be a finite number > 0",
            data={"bandwidth_mbps": repr(bandwidth_mbps)},
        )
    # Integer arithmetic when possible so 10 MB at 100 Mbps is exactly 0.8s -> 1
    bits = file_size_bytes * 8
    bits_per_second = bandwidth_mbps * 1_000_000
    if float(bits_per_second).is_integer():
        return -(-bits // int(bits_per_second))
    return math.ceil(bits / bits_per_second)


def plan(file_size_bytes: int, bandwidth_mbps: float = DEFAULT_BANDWIDTH_MBPS) -> TransferPlan:
    """Build the full chunking and timing plan for one file."""
    chunk_size = chunk_size_for(file_size_bytes)
    return TransferPlan(
        file_size_bytes=file_size_bytes,
        chunk_size_bytes=chunk_size,
        chunk_count=-(-file_size_bytes // chunk_size),
        eta_seconds=estimate(file_size_bytes, bandwidth_mbps),
    )


def iter_chunks(plan: TransferPlan):
    """Yield ``(index, offset, length)`` for each chunk of ``plan``."""
    for index in range(plan.chunk_count):
        offset = index * plan.chunk_size_bytes
        yield index, offset, min(plan.chunk_size_bytes, plan.file_size_bytes - offset)


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0, clock=time.monotonic):
        self._window = window
        self._clock = clock
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = self._clock()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed

    def bandwidth_mbps(self, fallback: float = DEFAULT_BANDWIDTH_MBPS) -> float:
        """Measured throughput in Mbps, or ``fallback`` before enough samples."""
        speed = self.get_speed()
        if speed <= 0:
            return fallback
        return speed * 8 / 1_000_000

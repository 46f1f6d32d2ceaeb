import math

import pytest
from pydantic import ValidationError

from whisperdrop.errors import InvalidInput
from whisperdrop.formatting import format_duration, format_file_size
from whisperdrop.transfer.planner import SpeedTracker, estimate, iter_chunks, plan


@pytest.mark.parametrize(
    "size, chunk",
    [
        (0, 65536),
        (1, 65536),
        (1048575, 65536),
        (1048576, 262144),
        (10485759, 262144),
        (10485760, 1048576),
        (10**10, 1048576),
    ],
)
def test_chunk_size_breakpoints(size, chunk):
    assert plan(size).chunk_size_bytes == chunk


@pytest.mark.parametrize("size", [0, 1, 65536, 65537, 1048576, 5000001, 10485760, 123456789])
def test_chunk_count_is_ceiling(size):
    p = plan(size)
    assert p.chunk_count == math.ceil(size / p.chunk_size_bytes)
    assert (p.chunk_count == 0) == (size == 0)


def test_known_plans():
    small = plan(500000)
    assert (small.chunk_size_bytes, small.chunk_count) == (65536, 8)

    medium = plan(5000000)
    assert (medium.chunk_size_bytes, medium.chunk_count) == (262144, 20)


def test_chunk_size_never_decreases():
    sizes = [0, 1024, 1048575, 1048576, 2 * 1048576, 10485759, 10485760, 10**9]
    chunks = [plan(s).chunk_size_bytes for s in sizes]
    assert chunks == sorted(chunks)


def test_estimate():
    assert estimate(10000000, 100) == 1
    assert estimate(12500000, 100) == 1
    assert estimate(12500001, 100) == 2
    assert estimate(0) == 0
    assert estimate(1000000, 2.5) == 4


def test_plan_includes_eta_at_given_bandwidth():
    p = plan(100 * 1024 * 1024, bandwidth_mbps=10)
    assert p.eta_seconds == estimate(100 * 1024 * 1024, 10) == 84
    assert p.eta_display == "1m 24s"


@pytest.mark.parametrize("bad", [-1, -1048576])
def test_negative_size_is_rejected(bad):
    with pytest.raises(InvalidInput):
        plan(bad)
    # InvalidInput is also a ValueError for generic callers
    with pytest.raises(ValueError):
        estimate(bad)


@pytest.mark.parametrize("bandwidth", [0, -5, float("nan"), float("inf"), float("-inf")])
def test_non_positive_or_non_finite_bandwidth_is_rejected(bandwidth):
    with pytest.raises(InvalidInput):
        estimate(1000, bandwidth)


def test_plan_is_immutable():
    p = plan(1000)
    with pytest.raises(ValidationError):
        p.chunk_count = 99


def test_iter_chunks_covers_file_exactly():
    p = plan(200000)
    chunks = list(iter_chunks(p))
    assert len(chunks) == p.chunk_count == 4
    assert chunks[0] == (0, 0, 65536)
    assert chunks[-1] == (3, 196608, 200000 - 196608)
    assert sum(length for _, _, length in chunks) == 200000


def test_speed_tracker_reports_bandwidth():
    now = [0.0]
    tracker = SpeedTracker(window=5.0, clock=lambda: now[0])
    assert tracker.bandwidth_mbps(fallback=42) == 42

    tracker.record(100)
    now[0] = 1.0
    tracker.record(1_250_000)
    assert tracker.get_speed() == pytest.approx(1_250_000)
    assert tracker.bandwidth_mbps() == pytest.approx(10.0)


def test_speed_tracker_drops_old_samples():
    now = [0.0]
    tracker = SpeedTracker(window=2.0, clock=lambda: now[0])
    tracker.record(10_000_000)
    now[0] = 10.0
    tracker.record(1000)
    # Only one sample left inside the window
    assert tracker.get_speed() == 0.0


@pytest.mark.parametrize(
    "seconds, text",
    [(0, "0s"), (1, "1s"), (59, "59s"), (60, "1m 0s"), (125, "2m 5s"), (3600, "60m 0s")],
)
def test_format_duration(seconds, text):
    assert format_duration(seconds) == text


@pytest.mark.parametrize(
    "size, text",
    [(0, "0 Bytes"), (512, "512 Bytes"), (1024, "1 KB"), (1536, "1.5 KB"), (1048576, "1 MB")],
)
def test_format_file_size(size, text):
    assert format_file_size(size) == text

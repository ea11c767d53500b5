"""
Unit tests for the arena allocator.

Tests verify:
1. Allocation sizes, alignment and block growth
2. Cheap reset rewinds and reuses blocks
3. Aggressive reset releases blocks above the floor
4. The configured byte ceiling fails loudly and allocates nothing
"""

import numpy as np
import pytest

from tapegrad.arena import ALIGNMENT
from tapegrad.arena import Arena
from tapegrad.errors import ArenaExhaustedError


class TestAllocation:
    """Bump allocation inside and across blocks."""

    def test_allocate_returns_exact_size(self):
        arena = Arena(chunk_size=1024)
        buf = arena.allocate(100)
        assert buf.dtype == np.uint8
        assert buf.shape == (100,)

    def test_cursor_is_aligned(self):
        arena = Arena(chunk_size=1024)
        arena.allocate(3)
        assert arena.used_bytes == ALIGNMENT
        arena.allocate(9)
        assert arena.used_bytes == 3 * ALIGNMENT

    def test_allocations_do_not_overlap(self):
        arena = Arena(chunk_size=1024)
        a = arena.allocate_array((4,))
        b = arena.allocate_array((4,))
        a[...] = 1.0
        b[...] = 2.0
        np.testing.assert_array_equal(a, np.ones(4))
        np.testing.assert_array_equal(b, np.full(4, 2.0))

    def test_allocate_array_shape_and_dtype(self):
        arena = Arena(chunk_size=1024)
        arr = arena.allocate_array((3, 5))
        assert arr.shape == (3, 5)
        assert arr.dtype == np.float64
        assert arena.used_bytes == 3 * 5 * 8

    def test_grows_when_block_exhausted(self):
        arena = Arena(chunk_size=1024)
        arena.allocate(100)
        arena.allocate(1000)
        assert arena.num_blocks == 2
        assert arena.allocated_bytes == 2048

    def test_oversized_request_gets_double_sized_block(self):
        arena = Arena(chunk_size=1024)
        arena.allocate(5000)
        assert arena.num_blocks == 2
        assert arena.allocated_bytes == 1024 + 10000

    def test_rejects_non_positive_size(self):
        arena = Arena(chunk_size=1024)
        with pytest.raises(ValueError):
            arena.allocate(0)

    def test_peak_tracks_high_water_mark(self):
        arena = Arena(chunk_size=1024)
        arena.allocate(512)
        arena.reset()
        arena.allocate(64)
        assert arena.peak_used_bytes == 512
        assert arena.used_bytes == 64


class TestReset:
    """Cheap and aggressive reset."""

    def test_reset_rewinds_and_bumps_generation(self):
        arena = Arena(chunk_size=1024)
        arena.allocate(100)
        gen = arena.generation
        arena.reset()
        assert arena.used_bytes == 0
        assert arena.generation == gen + 1

    def test_reset_keeps_blocks(self):
        arena = Arena(chunk_size=1024)
        for _ in range(3):
            arena.allocate(1000)
        assert arena.num_blocks == 3
        arena.reset()
        assert arena.num_blocks == 3
        assert arena.allocated_bytes == 3 * 1024

    def test_retained_blocks_are_reused(self):
        """Repeating the same allocation pattern after cheap resets never grows the chain."""
        arena = Arena(chunk_size=1024)
        for _ in range(20):
            for _ in range(3):
                arena.allocate(1000)
            arena.reset()
        assert arena.num_blocks == 3

    def test_reset_aggressive_releases_above_floor(self):
        arena = Arena(chunk_size=1024, keep_blocks=2)
        for _ in range(5):
            arena.allocate(1000)
        assert arena.num_blocks == 5
        arena.reset_aggressive()
        assert arena.num_blocks == 2
        assert arena.allocated_bytes == 2048
        assert arena.used_bytes == 0

    def test_reset_aggressive_bumps_generation(self):
        arena = Arena(chunk_size=1024)
        gen = arena.generation
        arena.reset_aggressive()
        assert arena.generation == gen + 1


class TestLimits:
    """Out-of-memory policy and argument validation."""

    def test_ceiling_raises_before_allocating(self):
        arena = Arena(chunk_size=1024, max_bytes=2048)
        arena.allocate(1024)
        arena.allocate(1024)
        used = arena.used_bytes
        with pytest.raises(ArenaExhaustedError):
            arena.allocate(8)
        assert arena.used_bytes == used
        assert arena.allocated_bytes == 2048

    def test_exhausted_error_is_memory_error(self):
        arena = Arena(chunk_size=1024, max_bytes=1024)
        with pytest.raises(MemoryError):
            arena.allocate(4096)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"chunk_size": 0},
            {"chunk_size": 1024, "keep_blocks": 0},
            {"chunk_size": 1024, "max_bytes": 512},
        ],
    )
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            Arena(**kwargs)

"""
Bump allocator for per-iteration (ephemeral) memory.

The arena is a chain of fixed-capacity byte blocks. Allocation bumps a cursor inside the
current block and moves on to the next block (reusing a retained one or appending a new one)
when the request does not fit. Everything handed out in one generation is reclaimed together:

    arena = Arena(chunk_size=1 << 20)
    buf = arena.allocate_array((4, 8))   # float64 view into block memory
    ...
    arena.reset()                        # rewind, keep blocks, bump generation
    arena.reset_aggressive()             # rewind and release blocks above keep_blocks

Out-of-memory policy: with `max_bytes=None` the arena keeps appending blocks until numpy raises
`MemoryError`; with a ceiling, a growth that would pass it raises `ArenaExhaustedError` before
anything is allocated.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from tapegrad.config import DEFAULT_CHUNK_SIZE
from tapegrad.errors import ArenaExhaustedError
from tapegrad.logging import get_logger


logger = get_logger(__name__)

ALIGNMENT = 8


def _align(size: int) -> int:
    return (size + ALIGNMENT - 1) & ~(ALIGNMENT - 1)


class ArenaBlock:
    """One fixed-capacity chunk of arena memory."""

    __slots__ = ("memory", "size", "used")

    def __init__(self, size: int) -> None:
        self.memory = np.empty(size, dtype=np.uint8)
        self.size = size
        self.used = 0

    @property
    def available(self) -> int:
        return self.size - self.used


class Arena:
    """Growable chain of blocks with cheap and aggressive reset."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        keep_blocks: int = 1,
        max_bytes: Optional[int] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if keep_blocks < 1:
            raise ValueError(f"keep_blocks must be >= 1, got {keep_blocks}")
        if max_bytes is not None and max_bytes < chunk_size:
            raise ValueError("max_bytes must be >= chunk_size")

        self.chunk_size = chunk_size
        self.keep_blocks = keep_blocks
        self.max_bytes = max_bytes

        self._blocks: list[ArenaBlock] = [ArenaBlock(chunk_size)]
        self._current = 0
        self._generation = 0
        self._total_allocated = chunk_size
        self._total_used = 0
        self._peak_used = 0

    @property
    def generation(self) -> int:
        """Incremented by every reset; allocations from older generations are invalid."""
        return self._generation

    @property
    def used_bytes(self) -> int:
        return self._total_used

    @property
    def allocated_bytes(self) -> int:
        return self._total_allocated

    @property
    def peak_used_bytes(self) -> int:
        return self._peak_used

    @property
    def num_blocks(self) -> int:
        return len(self._blocks)

    def allocate(self, size: int) -> np.ndarray:
        """
        Return a uint8 view of `size` bytes valid until the next reset.

        Args:
            size: Requested bytes (rounded up to 8-byte alignment).

        Returns:
            1-D uint8 array of exactly `size` bytes backed by block memory.
        """
        if size <= 0:
            raise ValueError(f"allocation size must be positive, got {size}")

        aligned = _align(size)
        block = self._blocks[self._current]
        if aligned > block.available:
            block = self._advance(aligned)

        start = block.used
        block.used += aligned
        self._total_used += aligned
        self._peak_used = max(self._peak_used, self._total_used)
        return block.memory[start:start + size]

    def allocate_array(self, shape: tuple[int, ...], dtype=np.float64) -> np.ndarray:
        """Typed, shaped view over `allocate`. Contents are uninitialized."""
        dt = np.dtype(dtype)
        count = math.prod(shape)
        raw = self.allocate(count * dt.itemsize)
        return raw.view(dt).reshape(shape)

    def _advance(self, size: int) -> ArenaBlock:
        # Blocks retained by a cheap reset are reused in order before growing the chain.
        while self._current + 1 < len(self._blocks):
            self._current += 1
            block = self._blocks[self._current]
            if size <= block.available:
                return block

        new_size = self.chunk_size if size <= self.chunk_size else size * 2
        if self.max_bytes is not None and self._total_allocated + new_size > self.max_bytes:
            raise ArenaExhaustedError(
                f"arena growth to {self._total_allocated + new_size} bytes exceeds "
                f"max_bytes={self.max_bytes} (request: {size} bytes)"
            )

        block = ArenaBlock(new_size)
        self._blocks.append(block)
        self._current = len(self._blocks) - 1
        self._total_allocated += new_size
        logger.debug(
            "Arena grew to %d blocks (%d bytes allocated)",
            len(self._blocks),
            self._total_allocated,
        )
        return block

    def reset(self) -> None:
        """Rewind every block; keep capacity."""
        for block in self._blocks:
            block.used = 0
        self._current = 0
        self._total_used = 0
        self._generation += 1

    def reset_aggressive(self) -> None:
        """Rewind and release every block beyond `keep_blocks`."""
        released = self._blocks[self.keep_blocks:]
        if released:
            del self._blocks[self.keep_blocks:]
            freed = sum(block.size for block in released)
            self._total_allocated -= freed
            logger.debug("Arena released %d blocks (%d bytes)", len(released), freed)
        self.reset()

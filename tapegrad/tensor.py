"""
Tensor: a shaped float64 buffer tagged with an ownership class.

PERSISTENT tensors own an independent numpy buffer. They back parameters, their gradients and
optimizer state, live across iterations and are released explicitly.

EPHEMERAL tensors view memory handed out by an `Arena` and remember the generation they were
allocated in. The arena's next reset invalidates them; any later read or write raises
`LifetimeError` instead of silently touching memory that now belongs to someone else.
"""

from __future__ import annotations

import enum
import math
from typing import Optional
from typing import Sequence

import numpy as np

from tapegrad.arena import Arena
from tapegrad.errors import LifetimeError
from tapegrad.errors import ShapeError


DTYPE = np.float64


class Ownership(enum.Enum):
    PERSISTENT = "persistent"
    EPHEMERAL = "ephemeral"


def normalize_shape(shape: Sequence[int], op: str = "tensor") -> tuple[int, ...]:
    """Validate a shape (non-empty, positive integer dims) and return it as a tuple."""
    dims = tuple(shape)
    if not dims:
        raise ShapeError(op, [dims], "shape must have at least one dimension")
    for dim in dims:
        if isinstance(dim, bool) or not isinstance(dim, (int, np.integer)) or dim <= 0:
            raise ShapeError(op, [dims], "dimensions must be positive integers")
    return tuple(int(d) for d in dims)


class Tensor:
    """Shaped numeric buffer with an explicit ownership class."""

    __slots__ = ("shape", "size", "ownership", "_buffer", "_arena", "_generation")

    def __init__(
        self,
        buffer: np.ndarray,
        ownership: Ownership,
        arena: Optional[Arena] = None,
    ) -> None:
        if ownership is Ownership.EPHEMERAL and arena is None:
            raise ValueError("ephemeral tensors need the arena that owns their memory")
        self.shape = tuple(buffer.shape)
        self.size = int(buffer.size)
        self.ownership = ownership
        self._buffer: Optional[np.ndarray] = buffer
        self._arena = arena
        self._generation = arena.generation if arena is not None else None

    # --- Constructors ---

    @classmethod
    def persistent(cls, shape: Sequence[int]) -> "Tensor":
        """Zero-initialized, independently owned tensor."""
        return cls(np.zeros(normalize_shape(shape), dtype=DTYPE), Ownership.PERSISTENT)

    @classmethod
    def ephemeral(cls, arena: Arena, shape: Sequence[int]) -> "Tensor":
        """Uninitialized arena-backed tensor valid until the arena's next reset."""
        return cls(arena.allocate_array(normalize_shape(shape), DTYPE), Ownership.EPHEMERAL, arena)

    # --- Properties ---

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def is_persistent(self) -> bool:
        return self.ownership is Ownership.PERSISTENT

    @property
    def arena(self) -> Optional[Arena]:
        return self._arena

    @property
    def generation(self) -> Optional[int]:
        return self._generation

    @property
    def is_valid(self) -> bool:
        if self._buffer is None:
            return False
        if self._arena is not None:
            return self._arena.generation == self._generation
        return True

    @property
    def data(self) -> np.ndarray:
        """The live numpy view. Raises LifetimeError once the memory has been reclaimed."""
        if self._buffer is None:
            raise LifetimeError(f"persistent tensor {self.shape} was released")
        if self._arena is not None and self._arena.generation != self._generation:
            raise LifetimeError(
                f"ephemeral tensor {self.shape} from arena generation {self._generation} "
                f"used after reset (current generation {self._arena.generation})"
            )
        return self._buffer

    # --- Helpers ---

    def numpy(self) -> np.ndarray:
        """Independent copy of the contents."""
        return self.data.copy()

    def item(self) -> float:
        if self.size != 1:
            raise ShapeError("item", [self.shape], "only single-element tensors convert to a scalar")
        return float(self.data.reshape(-1)[0])

    def fill(self, value: float) -> None:
        self.data.fill(value)

    def release(self) -> None:
        """Free a persistent tensor's buffer. Ephemeral memory is reclaimed by arena resets only."""
        if self.ownership is Ownership.EPHEMERAL:
            raise LifetimeError("ephemeral tensors are reclaimed by arena reset, not released")
        self._buffer = None

    def __repr__(self) -> str:
        state = "" if self.is_valid else ", invalid"
        return f"Tensor(shape={self.shape}, {self.ownership.value}{state})"


def create_persistent(shape: Sequence[int]) -> Tensor:
    return Tensor.persistent(shape)


def create_ephemeral(arena: Arena, shape: Sequence[int]) -> Tensor:
    return Tensor.ephemeral(arena, shape)


def zeros_persistent(shape: Sequence[int]) -> Tensor:
    return Tensor.persistent(shape)


def randn_persistent(
    shape: Sequence[int],
    scale: float = 1.0,
    rng: Optional[np.random.Generator] = None,
) -> Tensor:
    """Persistent tensor drawn from N(0, scale^2)."""
    rng = rng if rng is not None else np.random.default_rng()
    t = Tensor.persistent(shape)
    t.data[...] = rng.standard_normal(t.shape) * scale
    return t


def from_array_persistent(values) -> Tensor:
    """Persistent copy of array-like `values` (scalars become shape (1,))."""
    arr = np.array(values, dtype=DTYPE)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    t = Tensor.persistent(arr.shape)
    t.data[...] = arr
    return t


def zeros_ephemeral(arena: Arena, shape: Sequence[int]) -> Tensor:
    t = Tensor.ephemeral(arena, shape)
    t.data.fill(0.0)
    return t


def from_array_ephemeral(arena: Arena, values) -> Tensor:
    """Ephemeral copy of array-like `values` (scalars become shape (1,))."""
    arr = np.asarray(values, dtype=DTYPE)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    t = Tensor.ephemeral(arena, arr.shape)
    t.data[...] = arr
    return t


def clone_ephemeral(arena: Arena, src: Tensor) -> Tensor:
    """Copy `src` (of either ownership class) into fresh arena memory."""
    t = Tensor.ephemeral(arena, src.shape)
    np.copyto(t.data, src.data)
    return t


def element_count(shape: Sequence[int]) -> int:
    return math.prod(shape)

"""
Training context: the explicit owner of one Arena, one Tape and one matmul kernel.

Every operation takes the context as its first argument, so there is no process-wide state and
independent contexts can coexist (tests, one context per thread). A context is used by a single
thread at a time.

Iteration lifecycle:

    optimizer.zero_grad()
    loss = build_forward(ctx, ...)      # ops append to ctx.tape
    ctx.backward(loss)                  # seed d(loss)=1, replay the tape
    optimizer.step()
    ctx.reset_iteration()               # clear tape, then reset arena
"""

from __future__ import annotations

from typing import Optional
from typing import Sequence

import numpy as np

from tapegrad.arena import Arena
from tapegrad.config import ArenaConfig
from tapegrad.config import Config
from tapegrad.config import TapeConfig
from tapegrad.errors import ShapeError
from tapegrad.errors import TapeStateError
from tapegrad.kernels import MatmulKernel
from tapegrad.kernels import get_kernel
from tapegrad.logging import get_logger
from tapegrad.tape import ReverseRule
from tapegrad.tape import Tape
from tapegrad.tensor import Tensor
from tapegrad.tensor import clone_ephemeral
from tapegrad.tensor import from_array_ephemeral
from tapegrad.tensor import zeros_ephemeral
from tapegrad.variable import Variable


logger = get_logger(__name__)


class TrainingContext:
    """Owns the per-iteration memory domain and the operation trace."""

    def __init__(
        self,
        arena_config: Optional[ArenaConfig] = None,
        tape_config: Optional[TapeConfig] = None,
        kernel: str | MatmulKernel = "blas",
    ) -> None:
        arena_config = arena_config or ArenaConfig()
        tape_config = tape_config or TapeConfig()

        self.arena = Arena(
            chunk_size=arena_config.chunk_size,
            keep_blocks=arena_config.keep_blocks,
            max_bytes=arena_config.max_bytes,
        )
        self.tape = Tape(
            self.arena,
            initial_capacity=tape_config.initial_capacity,
            max_capacity=tape_config.max_capacity,
        )
        self.kernel = kernel if isinstance(kernel, MatmulKernel) else get_kernel(kernel)
        self.aggressive_reset_every = arena_config.aggressive_reset_every
        self._iteration = 0

    @classmethod
    def from_config(cls, config: Config) -> "TrainingContext":
        return cls(config.arena, config.tape, kernel=config.training.kernel)

    @property
    def iteration(self) -> int:
        """Number of completed reset_iteration() calls."""
        return self._iteration

    # --- Ephemeral allocation ---

    def empty(self, shape: Sequence[int]) -> Tensor:
        return Tensor.ephemeral(self.arena, shape)

    def zeros(self, shape: Sequence[int]) -> Tensor:
        return zeros_ephemeral(self.arena, shape)

    def tensor(self, values) -> Tensor:
        return from_array_ephemeral(self.arena, values)

    def clone(self, tensor: Tensor) -> Tensor:
        return clone_ephemeral(self.arena, tensor)

    def scratch(self, shape: tuple[int, ...]) -> np.ndarray:
        """Uninitialized arena buffer for temporaries inside reverse rules."""
        return self.arena.allocate_array(shape)

    def variable(self, values, requires_grad: bool = False) -> Variable:
        """
        Wrap input data as an ephemeral Variable.

        Args:
            values: A Tensor from this arena (used as-is) or anything numpy can convert (copied
                into the arena).
            requires_grad: Track gradients for this input.
        """
        if isinstance(values, Tensor) and not values.is_persistent and values.arena is self.arena:
            data = values
        else:
            data = self.tensor(values.data if isinstance(values, Tensor) else values)
        return Variable.ephemeral(self.arena, data, requires_grad=requires_grad)

    # --- Recording ---

    def output(self, data: Tensor, inputs: Sequence[Variable]) -> Variable:
        """Wrap an op result; it requires grad iff any input does."""
        requires_grad = any(v.requires_grad for v in inputs)
        return Variable.ephemeral(self.arena, data, requires_grad=requires_grad)

    def record(self, inputs: Sequence[Variable], output: Variable, rule: ReverseRule) -> None:
        self.tape.append(inputs, output, rule)

    # --- Lifecycle ---

    def backward(self, loss: Variable) -> None:
        """Seed d(loss)/d(loss) = 1 and replay the tape."""
        if loss.data.size != 1:
            raise ShapeError("backward", [loss.shape], "loss must be a single-element tensor")
        if not loss.requires_grad:
            raise TapeStateError("backward called on a loss that does not require grad")
        loss.grad.fill(1.0)
        self.tape.backward(self)

    def reset_iteration(self) -> None:
        """Clear the tape, then reclaim every ephemeral tensor and variable."""
        self.tape.clear()
        self._iteration += 1
        if self._iteration % self.aggressive_reset_every == 0:
            self.arena.reset_aggressive()
        else:
            self.arena.reset()

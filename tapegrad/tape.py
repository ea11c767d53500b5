"""
Operation trace ("tape") for reverse-mode differentiation.

Every gradient-tracked operation appends one entry: its input Variables, its output Variable,
and a reverse rule. A reverse rule is a small frozen dataclass, one class per operation kind,
whose fields hold exactly the values that operation's backward step needs. Captured tensors
are copies allocated from the same arena generation as the entry (or persistent tensors), so
nothing an entry references can be reclaimed before the tape is cleared. `append` checks this
and raises `LifetimeError` for anything else.

State machine:

    RECORDING --backward()--> REPLAYING --(all entries visited)--> CLEARED
    CLEARED --append()--> RECORDING

Because the trace is a straight-line program, every output is produced strictly after its
inputs, so walking the log from last to first visits the dependency graph in reverse
topological order without building the graph.
"""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass
from typing import ClassVar
from typing import Iterator
from typing import Optional
from typing import Protocol
from typing import Sequence

import numpy as np

from tapegrad.arena import Arena
from tapegrad.errors import LifetimeError
from tapegrad.errors import TapeStateError
from tapegrad.kernels import MatmulKernel
from tapegrad.logging import get_logger
from tapegrad.tensor import Tensor
from tapegrad.variable import Variable


logger = get_logger(__name__)


class Workspace(Protocol):
    """What a reverse rule may use while it runs: scratch memory and the matmul kernel."""

    kernel: MatmulKernel

    def scratch(self, shape: tuple[int, ...]) -> np.ndarray:
        ...


class ReverseRule:
    """Base class for per-operation backward rules (subclasses are frozen dataclasses)."""

    kind: ClassVar[str] = "abstract"

    def apply(
        self,
        inputs: Sequence[Variable],
        grad_output: np.ndarray,
        workspace: Workspace,
    ) -> None:
        """Accumulate this operation's contribution into each tracked input gradient."""
        raise NotImplementedError

    def captured_tensors(self) -> Iterator[Tensor]:
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Tensor):
                yield value
            elif isinstance(value, tuple):
                for item in value:
                    if isinstance(item, Tensor):
                        yield item


def accumulate(variable: Variable, contribution: np.ndarray) -> None:
    """Add (never assign) a gradient contribution into a tracked variable."""
    if variable.requires_grad and variable.grad is not None:
        variable.grad.data[...] += contribution


@dataclass(frozen=True)
class TapeEntry:
    inputs: tuple[Variable, ...]
    output: Variable
    rule: ReverseRule


class TapeState(enum.Enum):
    RECORDING = "recording"
    REPLAYING = "replaying"
    CLEARED = "cleared"


class Tape:
    """Append-only log of recorded operations, replayed back-to-front."""

    def __init__(self, arena: Arena, initial_capacity: int = 1000, max_capacity: int = 10000) -> None:
        if initial_capacity <= 0:
            raise ValueError("initial_capacity must be > 0")
        if max_capacity < initial_capacity:
            raise ValueError("max_capacity must be >= initial_capacity")
        self._arena = arena
        self.initial_capacity = initial_capacity
        self.max_capacity = max_capacity
        self._slots: list[Optional[TapeEntry]] = [None] * initial_capacity
        self._count = 0
        self._generation: Optional[int] = None
        self._state = TapeState.RECORDING

    @property
    def state(self) -> TapeState:
        return self._state

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def __len__(self) -> int:
        return self._count

    @property
    def entries(self) -> tuple[TapeEntry, ...]:
        return tuple(self._slots[:self._count])

    def append(
        self,
        inputs: Sequence[Variable],
        output: Variable,
        rule: ReverseRule,
    ) -> Optional[TapeEntry]:
        """Record one operation. Untracked outputs are not recorded."""
        if self._state is TapeState.REPLAYING:
            raise TapeStateError(f"cannot record {rule.kind} while the tape is replaying")
        if not output.requires_grad:
            return None

        generation = self._arena.generation
        for variable in (*inputs, output):
            self._check_lifetime(variable.data, rule.kind)
        for tensor in rule.captured_tensors():
            self._check_lifetime(tensor, rule.kind)

        if self._count == 0:
            self._generation = generation
        if self._count == len(self._slots):
            self._slots.extend([None] * len(self._slots))

        entry = TapeEntry(tuple(inputs), output, rule)
        self._slots[self._count] = entry
        self._count += 1
        self._state = TapeState.RECORDING
        return entry

    def _check_lifetime(self, tensor: Tensor, kind: str) -> None:
        if tensor.is_persistent:
            if not tensor.is_valid:
                raise LifetimeError(f"{kind}: captured persistent tensor {tensor.shape} was released")
            return
        if tensor.arena is not self._arena:
            raise LifetimeError(f"{kind}: captured tensor {tensor.shape} belongs to a different arena")
        if tensor.generation != self._arena.generation:
            raise LifetimeError(
                f"{kind}: captured tensor {tensor.shape} is from arena generation "
                f"{tensor.generation}, current is {self._arena.generation}"
            )

    def backward(self, workspace: Workspace) -> None:
        """Replay entries last to first; leaves the tape CLEARED."""
        if self._state is TapeState.REPLAYING:
            raise TapeStateError("backward is already running")
        if self._count and self._generation != self._arena.generation:
            raise LifetimeError(
                f"tape recorded in arena generation {self._generation} cannot replay after "
                f"reset (current generation {self._arena.generation})"
            )

        self._state = TapeState.REPLAYING
        try:
            for i in range(self._count - 1, -1, -1):
                entry = self._slots[i]
                grad = entry.output.grad
                if grad is None:
                    continue
                grad_output = grad.data
                if not grad_output.any():
                    continue
                entry.rule.apply(entry.inputs, grad_output, workspace)
        finally:
            self._drop_entries()
            self._state = TapeState.CLEARED

    def clear(self) -> None:
        """Drop all entries; shrink slot capacity back to max_capacity if it grew past it."""
        if self._state is TapeState.REPLAYING:
            raise TapeStateError("cannot clear the tape while it is replaying")
        self._drop_entries()
        if len(self._slots) > self.max_capacity:
            logger.debug("Tape capacity shrunk from %d to %d", len(self._slots), self.max_capacity)
            self._slots = [None] * self.max_capacity
        self._state = TapeState.CLEARED

    def _drop_entries(self) -> None:
        for i in range(self._count):
            self._slots[i] = None
        self._count = 0
        self._generation = None

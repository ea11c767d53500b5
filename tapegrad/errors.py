"""
Error taxonomy for tapegrad.

Invariant violations (shapes, lifetimes, tape misuse) are programmer errors and are raised
immediately at the call that detects them. Only `CheckpointError` describes bad external input
and is meant to be caught by a harness.
"""

from __future__ import annotations

from typing import Sequence


class AutogradError(Exception):
    """Base class for every error raised by tapegrad."""


class ShapeError(AutogradError, ValueError):
    """Operand shapes or ranks are incompatible for an operation."""

    def __init__(self, op: str, shapes: Sequence[tuple[int, ...]], detail: str) -> None:
        self.op = op
        self.shapes = tuple(tuple(s) for s in shapes)
        rendered = ", ".join(str(s) for s in self.shapes)
        super().__init__(f"{op}: {detail} (operand shapes: {rendered})")


class InvalidIndexError(AutogradError, IndexError):
    """An index (token id, column range, reshape target) is out of bounds."""


class ArenaExhaustedError(AutogradError, MemoryError):
    """The arena would grow past its configured byte ceiling."""


class LifetimeError(AutogradError, RuntimeError):
    """Memory was used outside the lifetime of the allocation that owns it."""


class TapeStateError(AutogradError, RuntimeError):
    """The tape was driven through an invalid state transition."""


class CheckpointError(AutogradError, ValueError):
    """Externally supplied parameter state does not match the model."""

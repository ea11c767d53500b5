"""
Monitoring helpers.

Small, deterministic utilities used by `tapegrad/trainer.py`: memory snapshots of a training
context, gradient norms and clipping, parameter counts.
"""

from __future__ import annotations

import math
from dataclasses import asdict
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from tapegrad.variable import Variable


@dataclass(frozen=True)
class MemoryStats:
    """Point-in-time view of a context's arena and tape."""

    arena_used_bytes: int
    arena_allocated_bytes: int
    arena_peak_used_bytes: int
    arena_blocks: int
    arena_generation: int
    tape_entries: int
    tape_capacity: int

    @classmethod
    def from_context(cls, ctx) -> "MemoryStats":
        arena = ctx.arena
        return cls(
            arena_used_bytes=arena.used_bytes,
            arena_allocated_bytes=arena.allocated_bytes,
            arena_peak_used_bytes=arena.peak_used_bytes,
            arena_blocks=arena.num_blocks,
            arena_generation=arena.generation,
            tape_entries=len(ctx.tape),
            tape_capacity=ctx.tape.capacity,
        )

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def global_grad_norm(parameters: Iterable[Variable]) -> float:
    """L2 norm over every parameter gradient, as if concatenated into one vector."""
    total = 0.0
    for p in parameters:
        if p.grad is None:
            continue
        g = p.grad.data
        total += float(np.dot(g.ravel(), g.ravel()))
    return math.sqrt(total)


def clip_coef(grad_norm: float, max_norm: float, *, eps: float = 1e-6) -> float:
    """Compute the global gradient clipping coefficient."""
    grad_norm = float(grad_norm)
    max_norm = float(max_norm)
    if max_norm <= 0:
        return 1.0
    return min(1.0, max_norm / (grad_norm + float(eps)))


def clip_grad_norm(parameters: Iterable[Variable], max_norm: float) -> float:
    """
    Scale all gradients in place so their global norm is at most `max_norm`.

    Returns:
        The norm before clipping.
    """
    parameters = list(parameters)
    norm = global_grad_norm(parameters)
    coef = clip_coef(norm, max_norm)
    if coef < 1.0:
        for p in parameters:
            if p.grad is not None:
                p.grad.data[...] *= coef
    return norm


def parameter_count(parameters: Iterable[Variable]) -> int:
    return sum(p.data.size for p in parameters)


def update_ratio(
    lr: float,
    *,
    grad_norm: float,
    weight_norm: float,
    eps: float = 1e-12,
) -> float:
    """Compute a proxy update ratio scalar: lr * |g| / |w|."""
    lr = float(lr)
    grad_norm = float(grad_norm)
    weight_norm = float(weight_norm)
    if weight_norm <= 0:
        return 0.0
    return lr * grad_norm / (weight_norm + float(eps))

"""
Pytest fixtures and shared test helpers.

Some test modules import helpers via `from conftest import ...`, so this file lives at the
repository root (which pytest adds to `sys.path`) rather than only under `tests/`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable
from typing import Optional
from typing import Sequence

import numpy as np
import pytest

from tapegrad import ops
from tapegrad.config import ArenaConfig
from tapegrad.context import TrainingContext


@dataclass(frozen=True)
class Tolerances:
    """Numerical tolerances for array comparisons."""

    RTOL: float = 1e-5
    ATOL: float = 1e-6
    # Central finite differences
    FD_STEP: float = 1e-4
    FD_ATOL: float = 1e-4


# Small chunks so tests exercise block growth.
TEST_CHUNK_SIZE = 64 * 1024


def make_context(kernel: str = "blas", **arena_kwargs) -> TrainingContext:
    arena_kwargs.setdefault("chunk_size", TEST_CHUNK_SIZE)
    return TrainingContext(ArenaConfig(**arena_kwargs), kernel=kernel)


@pytest.fixture()
def ctx() -> TrainingContext:
    """Fresh training context with a small-chunk arena."""
    return make_context()


@pytest.fixture(params=["blas", "torch", "naive"])
def kernel_name(request) -> str:
    return request.param


@pytest.fixture()
def tolerances() -> Tolerances:
    """Default numerical tolerances used by accuracy tests."""
    return Tolerances()


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


def assert_array_close(
    actual,
    expected,
    rtol: float = 1e-5,
    atol: float = 1e-8,
    msg: Optional[str] = None,
) -> None:
    """
    Assert two arrays are close within tolerances.

    Args:
        actual: Array under test.
        expected: Reference array.
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        msg: Optional message prefix on failure.
    """
    actual = np.asarray(actual)
    expected = np.asarray(expected)
    if actual.shape != expected.shape:
        raise AssertionError(f"Shape mismatch: {actual.shape} vs {expected.shape}")

    if not np.allclose(actual, expected, rtol=rtol, atol=atol):
        diff = np.abs(actual - expected)
        max_diff = float(diff.max()) if diff.size > 0 else 0.0
        raise AssertionError(f"{msg or 'Arrays not close'}: max diff = {max_diff}")


def assert_grad_close(actual, expected, rtol: float = 1e-5, atol: float = 1e-8, msg=None) -> None:
    """Thin wrapper around `assert_array_close` for readability in tests."""
    assert_array_close(actual, expected, rtol=rtol, atol=atol, msg=msg or "Gradients not close")


def numerical_gradient(f: Callable[[], float], x: np.ndarray, step: float = 1e-4) -> np.ndarray:
    """
    Central finite-difference gradient of scalar `f()` with respect to `x` (perturbed in place).
    """
    grad = np.zeros_like(x)
    it = np.nditer(x, flags=["multi_index"])
    for _ in it:
        idx = it.multi_index
        original = x[idx]
        x[idx] = original + step
        plus = f()
        x[idx] = original - step
        minus = f()
        x[idx] = original
        grad[idx] = (plus - minus) / (2.0 * step)
    return grad


def check_gradients(
    build: Callable,
    inputs: Sequence[np.ndarray],
    *,
    step: float = 1e-4,
    atol: float = 1e-4,
    rtol: float = 1e-4,
    seed: int = 0,
) -> None:
    """
    Compare tape gradients with finite differences.

    `build(ctx, variables)` returns any Variable; it is reduced to a scalar by a fixed random
    projection sum(out * w) so every output element contributes.
    """
    arrays = [np.array(a, dtype=np.float64) for a in inputs]
    projection: dict[str, np.ndarray] = {}

    def run(tracked: bool):
        ctx = make_context()
        variables = [ctx.variable(a, requires_grad=tracked) for a in arrays]
        out = build(ctx, variables)
        if "w" not in projection:
            projection["w"] = np.random.default_rng(seed).standard_normal(out.shape)
        loss = ops.sum(ctx, ops.multiply(ctx, out, ctx.variable(projection["w"])))
        return ctx, variables, loss

    ctx, variables, loss = run(tracked=True)
    ctx.backward(loss)
    analytic = [v.grad.numpy() for v in variables]

    def value() -> float:
        _, _, out = run(tracked=False)
        return out.data.item()

    for i, arr in enumerate(arrays):
        expected = numerical_gradient(value, arr, step)
        assert_grad_close(analytic[i], expected, rtol=rtol, atol=atol, msg=f"input {i}")

"""
Operation library: forward computations paired with their reverse rules.

Every op follows the same shape:

    1. validate operand shapes / indices (nothing is allocated on failure)
    2. compute the output into arena memory
    3. wrap it in a Variable that requires grad iff any input does
    4. if tracked, record a reverse rule holding copies of what backward needs

Reverse rules only ever *add* into input gradients (`accumulate`), so a Variable used by
several ops receives the sum of all contributions.

Usage:
    ctx = TrainingContext()
    x = ctx.variable([[1.0, 2.0]], requires_grad=True)
    y = ops.relu(ctx, ops.matmul(ctx, x, w))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import ClassVar
from typing import Sequence

import numpy as np

from tapegrad.errors import InvalidIndexError
from tapegrad.errors import ShapeError
from tapegrad.tape import ReverseRule
from tapegrad.tape import Workspace
from tapegrad.tape import accumulate
from tapegrad.tensor import Tensor
from tapegrad.tensor import normalize_shape
from tapegrad.variable import Variable

if TYPE_CHECKING:
    from tapegrad.context import TrainingContext


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _require_rank(op: str, v: Variable, rank: int) -> None:
    if len(v.shape) != rank:
        raise ShapeError(op, [v.shape], f"expected a rank-{rank} operand")


def _broadcast_kind(op: str, a: Variable, b: Variable) -> bool:
    """Return True when `b` is a rank-1 operand broadcast over `a`'s trailing dimension."""
    if a.shape == b.shape:
        return False
    if len(b.shape) == 1 and b.shape[0] == a.shape[-1]:
        return True
    raise ShapeError(
        op,
        [a.shape, b.shape],
        "operands must match or the second must be rank-1 matching the trailing dimension",
    )


def check_indices(op: str, ids: Sequence[int], upper: int) -> tuple[int, ...]:
    """Validate a non-empty 1-D sequence of integer ids in [0, upper)."""
    arr = np.asarray(ids)
    if arr.ndim != 1 or arr.size == 0:
        raise InvalidIndexError(f"{op}: ids must be a non-empty 1-D sequence, got shape {arr.shape}")
    if not np.issubdtype(arr.dtype, np.integer):
        raise InvalidIndexError(f"{op}: ids must be integers, got dtype {arr.dtype}")
    bad = (arr < 0) | (arr >= upper)
    if bad.any():
        first = int(arr[np.argmax(bad)])
        raise InvalidIndexError(f"{op}: id {first} out of range [0, {upper})")
    return tuple(int(i) for i in arr)


def _emit(
    ctx: "TrainingContext",
    data: Tensor,
    inputs: Sequence[Variable],
    rule_factory,
) -> Variable:
    """Wrap `data` and record the rule (built lazily, only when the output is tracked)."""
    out = ctx.output(data, inputs)
    if out.requires_grad:
        ctx.record(inputs, out, rule_factory())
    return out


# ---------------------------------------------------------------------------
# Elementwise arithmetic
# ---------------------------------------------------------------------------


def _reduce_broadcast(grad_output: np.ndarray, width: int) -> np.ndarray:
    return grad_output.reshape(-1, width).sum(axis=0)


@dataclass(frozen=True)
class AddRule(ReverseRule):
    kind: ClassVar[str] = "add"
    broadcast: bool = False

    def apply(self, inputs, grad_output, workspace):
        a, b = inputs
        accumulate(a, grad_output)
        if self.broadcast:
            accumulate(b, _reduce_broadcast(grad_output, b.shape[0]))
        else:
            accumulate(b, grad_output)


def add(ctx: "TrainingContext", a: Variable, b: Variable) -> Variable:
    """a + b, with optional rank-1 bias broadcast of `b`."""
    broadcast = _broadcast_kind("add", a, b)
    out = ctx.empty(a.shape)
    np.add(a.value, b.value, out=out.data)
    return _emit(ctx, out, (a, b), lambda: AddRule(broadcast))


@dataclass(frozen=True)
class SubtractRule(ReverseRule):
    kind: ClassVar[str] = "subtract"
    broadcast: bool = False

    def apply(self, inputs, grad_output, workspace):
        a, b = inputs
        accumulate(a, grad_output)
        if self.broadcast:
            accumulate(b, -_reduce_broadcast(grad_output, b.shape[0]))
        else:
            accumulate(b, -grad_output)


def subtract(ctx: "TrainingContext", a: Variable, b: Variable) -> Variable:
    broadcast = _broadcast_kind("subtract", a, b)
    out = ctx.empty(a.shape)
    np.subtract(a.value, b.value, out=out.data)
    return _emit(ctx, out, (a, b), lambda: SubtractRule(broadcast))


@dataclass(frozen=True)
class MultiplyRule(ReverseRule):
    kind: ClassVar[str] = "multiply"
    a_saved: Tensor
    b_saved: Tensor

    def apply(self, inputs, grad_output, workspace):
        a, b = inputs
        if a.requires_grad:
            accumulate(a, grad_output * self.b_saved.data)
        if b.requires_grad:
            accumulate(b, grad_output * self.a_saved.data)


def multiply(ctx: "TrainingContext", a: Variable, b: Variable) -> Variable:
    """Elementwise a * b (operands must have identical shapes)."""
    if a.shape != b.shape:
        raise ShapeError("multiply", [a.shape, b.shape], "operands must have identical shapes")
    out = ctx.empty(a.shape)
    np.multiply(a.value, b.value, out=out.data)
    return _emit(ctx, out, (a, b), lambda: MultiplyRule(ctx.clone(a.data), ctx.clone(b.data)))


@dataclass(frozen=True)
class ScaleRule(ReverseRule):
    kind: ClassVar[str] = "scale"
    factor: float

    def apply(self, inputs, grad_output, workspace):
        accumulate(inputs[0], grad_output * self.factor)


def scale(ctx: "TrainingContext", x: Variable, factor: float) -> Variable:
    """Multiply every element by a constant."""
    factor = float(factor)
    out = ctx.empty(x.shape)
    np.multiply(x.value, factor, out=out.data)
    return _emit(ctx, out, (x,), lambda: ScaleRule(factor))


@dataclass(frozen=True)
class SumRule(ReverseRule):
    kind: ClassVar[str] = "sum"

    def apply(self, inputs, grad_output, workspace):
        accumulate(inputs[0], grad_output[0])


def sum(ctx: "TrainingContext", x: Variable) -> Variable:  # noqa: A001
    """Sum of all elements, shape (1,)."""
    out = ctx.empty((1,))
    out.data[0] = x.value.sum()
    return _emit(ctx, out, (x,), SumRule)


# ---------------------------------------------------------------------------
# Linear algebra and layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatmulRule(ReverseRule):
    kind: ClassVar[str] = "matmul"
    a_saved: Tensor
    b_saved: Tensor

    def apply(self, inputs, grad_output, workspace: Workspace):
        a, b = inputs
        kernel = workspace.kernel
        m, k = self.a_saved.shape
        n = self.b_saved.shape[1]
        if a.requires_grad:
            # grad_a = g @ b^T
            b_t = workspace.scratch((n, k))
            kernel.transpose(self.b_saved.data, b_t)
            grad_a = workspace.scratch((m, k))
            kernel.matmul(grad_output, b_t, grad_a)
            accumulate(a, grad_a)
        if b.requires_grad:
            # grad_b = a^T @ g
            a_t = workspace.scratch((k, m))
            kernel.transpose(self.a_saved.data, a_t)
            grad_b = workspace.scratch((k, n))
            kernel.matmul(a_t, grad_output, grad_b)
            accumulate(b, grad_b)


def matmul(ctx: "TrainingContext", a: Variable, b: Variable) -> Variable:
    """
    2-D matrix product.

    Args:
        a: (m, k)
        b: (k, n)

    Returns:
        (m, n) Variable computed by the context's kernel.
    """
    if len(a.shape) != 2 or len(b.shape) != 2:
        raise ShapeError("matmul", [a.shape, b.shape], "both operands must be rank 2")
    if a.shape[1] != b.shape[0]:
        raise ShapeError("matmul", [a.shape, b.shape], "inner dimensions differ")
    out = ctx.empty((a.shape[0], b.shape[1]))
    ctx.kernel.matmul(a.value, b.value, out.data)
    return _emit(ctx, out, (a, b), lambda: MatmulRule(ctx.clone(a.data), ctx.clone(b.data)))


@dataclass(frozen=True)
class TransposeRule(ReverseRule):
    kind: ClassVar[str] = "transpose"

    def apply(self, inputs, grad_output, workspace: Workspace):
        n, m = grad_output.shape
        grad_in = workspace.scratch((m, n))
        workspace.kernel.transpose(grad_output, grad_in)
        accumulate(inputs[0], grad_in)


def transpose(ctx: "TrainingContext", x: Variable) -> Variable:
    _require_rank("transpose", x, 2)
    rows, cols = x.shape
    out = ctx.empty((cols, rows))
    ctx.kernel.transpose(x.value, out.data)
    return _emit(ctx, out, (x,), TransposeRule)


@dataclass(frozen=True)
class ReshapeRule(ReverseRule):
    kind: ClassVar[str] = "reshape"
    input_shape: tuple[int, ...]

    def apply(self, inputs, grad_output, workspace):
        accumulate(inputs[0], grad_output.reshape(self.input_shape))


def reshape(ctx: "TrainingContext", x: Variable, shape: Sequence[int]) -> Variable:
    """Same elements in row-major order under a new shape."""
    try:
        target = normalize_shape(shape, "reshape")
    except ShapeError as exc:
        raise InvalidIndexError(f"reshape: invalid target shape {tuple(shape)}") from exc
    if int(np.prod(target)) != x.data.size:
        raise InvalidIndexError(
            f"reshape: cannot view {x.data.size} elements of shape {x.shape} as {target}"
        )
    out = ctx.empty(target)
    np.copyto(out.data, x.value.reshape(target))
    return _emit(ctx, out, (x,), lambda: ReshapeRule(x.shape))


@dataclass(frozen=True)
class SliceColumnsRule(ReverseRule):
    kind: ClassVar[str] = "slice_columns"
    start: int
    stop: int

    def apply(self, inputs, grad_output, workspace):
        x = inputs[0]
        if x.requires_grad:
            x.grad.data[:, self.start:self.stop] += grad_output


def slice_columns(ctx: "TrainingContext", x: Variable, start: int, stop: int) -> Variable:
    """Columns [start, stop) of a 2-D Variable, copied."""
    _require_rank("slice_columns", x, 2)
    cols = x.shape[1]
    if not 0 <= start < stop <= cols:
        raise InvalidIndexError(f"slice_columns: range [{start}, {stop}) invalid for {cols} columns")
    out = ctx.empty((x.shape[0], stop - start))
    np.copyto(out.data, x.value[:, start:stop])
    return _emit(ctx, out, (x,), lambda: SliceColumnsRule(start, stop))


@dataclass(frozen=True)
class ConcatColumnsRule(ReverseRule):
    kind: ClassVar[str] = "concat_columns"
    offsets: tuple[int, ...]

    def apply(self, inputs, grad_output, workspace):
        for part, lo, hi in zip(inputs, self.offsets[:-1], self.offsets[1:]):
            accumulate(part, grad_output[:, lo:hi])


def concat_columns(ctx: "TrainingContext", parts: Sequence[Variable]) -> Variable:
    """Join 2-D Variables with equal row counts side by side."""
    if not parts:
        raise ShapeError("concat_columns", [], "need at least one operand")
    for part in parts:
        _require_rank("concat_columns", part, 2)
    rows = parts[0].shape[0]
    if any(p.shape[0] != rows for p in parts):
        raise ShapeError("concat_columns", [p.shape for p in parts], "row counts differ")

    offsets = [0]
    for part in parts:
        offsets.append(offsets[-1] + part.shape[1])
    out = ctx.empty((rows, offsets[-1]))
    for part, lo, hi in zip(parts, offsets[:-1], offsets[1:]):
        out.data[:, lo:hi] = part.value
    return _emit(ctx, out, tuple(parts), lambda: ConcatColumnsRule(tuple(offsets)))


# ---------------------------------------------------------------------------
# Activations and normalization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReluRule(ReverseRule):
    kind: ClassVar[str] = "relu"
    input_saved: Tensor

    def apply(self, inputs, grad_output, workspace):
        accumulate(inputs[0], grad_output * (self.input_saved.data > 0))


def relu(ctx: "TrainingContext", x: Variable) -> Variable:
    out = ctx.empty(x.shape)
    np.maximum(x.value, 0.0, out=out.data)
    return _emit(ctx, out, (x,), lambda: ReluRule(ctx.clone(x.data)))


@dataclass(frozen=True)
class SoftmaxRule(ReverseRule):
    kind: ClassVar[str] = "softmax"
    output_saved: Tensor

    def apply(self, inputs, grad_output, workspace):
        o = self.output_saved.data
        # Jacobian-vector product per row: o * (g - <g, o>)
        dot = (grad_output * o).sum(axis=-1, keepdims=True)
        accumulate(inputs[0], o * (grad_output - dot))


def softmax(ctx: "TrainingContext", x: Variable) -> Variable:
    """
    Softmax over the trailing dimension.

    VISUALIZED with concrete example:

    x = [1.0, 2.0, 3.0]
    shifted = x - max(x) = [-2.0, -1.0, 0.0]     (keeps exp() from overflowing)
    exp     = [0.1353, 0.3679, 1.0000]           sum = 1.5032
    softmax = [0.0900, 0.2447, 0.6652]           sum = 1.0

    Rows that contain -inf (masked positions) get probability exactly 0 there.
    """
    out = ctx.empty(x.shape)
    values = x.value
    np.subtract(values, values.max(axis=-1, keepdims=True), out=out.data)
    np.exp(out.data, out=out.data)
    out.data[...] /= out.data.sum(axis=-1, keepdims=True)
    return _emit(ctx, out, (x,), lambda: SoftmaxRule(ctx.clone(out)))


@dataclass(frozen=True)
class CausalMaskRule(ReverseRule):
    kind: ClassVar[str] = "causal_mask"

    def apply(self, inputs, grad_output, workspace):
        accumulate(inputs[0], np.tril(grad_output))


def causal_mask(ctx: "TrainingContext", scores: Variable) -> Variable:
    """Fill positions above the diagonal of a square score matrix with -inf."""
    _require_rank("causal_mask", scores, 2)
    if scores.shape[0] != scores.shape[1]:
        raise ShapeError("causal_mask", [scores.shape], "scores must be square")
    out = ctx.empty(scores.shape)
    np.copyto(out.data, scores.value)
    out.data[np.triu_indices(scores.shape[0], k=1)] = -np.inf
    return _emit(ctx, out, (scores,), CausalMaskRule)


@dataclass(frozen=True)
class LayerNormRule(ReverseRule):
    kind: ClassVar[str] = "layer_norm"
    input_saved: Tensor
    gamma_saved: Tensor
    mean: Tensor
    var: Tensor
    eps: float

    def apply(self, inputs, grad_output, workspace):
        x, gamma, beta = inputs
        n = self.gamma_saved.shape[0]
        g = grad_output.reshape(-1, n)
        inv_std = 1.0 / np.sqrt(self.var.data + self.eps)
        x_hat = (self.input_saved.data.reshape(-1, n) - self.mean.data) * inv_std

        if x.requires_grad:
            d_xhat = g * self.gamma_saved.data
            # direct term, mean term and variance term, all over n
            grad_x = (
                n * d_xhat
                - d_xhat.sum(axis=1, keepdims=True)
                - x_hat * (d_xhat * x_hat).sum(axis=1, keepdims=True)
            ) * (inv_std / n)
            accumulate(x, grad_x.reshape(x.shape))
        if gamma.requires_grad:
            accumulate(gamma, (g * x_hat).sum(axis=0))
        if beta.requires_grad:
            accumulate(beta, g.sum(axis=0))


def layer_norm(
    ctx: "TrainingContext",
    x: Variable,
    gamma: Variable,
    beta: Variable,
    eps: float = 1e-5,
) -> Variable:
    """
    Normalize over the trailing (feature) dimension, then scale and shift.

    Formula: y = (x - mean) / sqrt(var + eps) * gamma + beta

    Args:
        x: (..., d) input.
        gamma: (d,) scale.
        beta: (d,) shift.
        eps: Added to the (biased) variance.
    """
    d = x.shape[-1]
    if gamma.shape != (d,) or beta.shape != (d,):
        raise ShapeError(
            "layer_norm",
            [x.shape, gamma.shape, beta.shape],
            "scale and shift must be rank-1 matching the feature dimension",
        )
    rows = x.value.reshape(-1, d)
    mean = rows.mean(axis=1, keepdims=True)
    var = rows.var(axis=1, keepdims=True)

    out = ctx.empty(x.shape)
    normalized = out.data.reshape(-1, d)
    np.subtract(rows, mean, out=normalized)
    normalized /= np.sqrt(var + eps)
    normalized *= gamma.value
    normalized += beta.value

    return _emit(
        ctx,
        out,
        (x, gamma, beta),
        lambda: LayerNormRule(
            ctx.clone(x.data),
            ctx.clone(gamma.data),
            ctx.tensor(mean),
            ctx.tensor(var),
            float(eps),
        ),
    )


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmbeddingRule(ReverseRule):
    kind: ClassVar[str] = "embedding"
    ids: tuple[int, ...]

    def apply(self, inputs, grad_output, workspace):
        table = inputs[0]
        if table.requires_grad:
            # repeated ids must add up, so no fancy-index +=
            np.add.at(table.grad.data, np.asarray(self.ids), grad_output)


def embedding(ctx: "TrainingContext", table: Variable, ids: Sequence[int]) -> Variable:
    """
    Gather rows of a (vocab, d) table.

    Args:
        table: (vocab, d) Variable, usually a parameter.
        ids: Token ids, each in [0, vocab).

    Returns:
        (len(ids), d) Variable.
    """
    _require_rank("embedding", table, 2)
    index = check_indices("embedding", ids, table.shape[0])
    out = ctx.empty((len(index), table.shape[1]))
    np.take(table.value, index, axis=0, out=out.data)
    return _emit(ctx, out, (table,), lambda: EmbeddingRule(index))

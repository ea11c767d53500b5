"""
Loss functions for tapegrad.

Both losses reduce to a shape-(1,) Variable that `TrainingContext.backward` can seed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import ClassVar
from typing import Sequence

import numpy as np

from tapegrad.errors import ShapeError
from tapegrad.ops import check_indices
from tapegrad.tape import ReverseRule
from tapegrad.tape import accumulate
from tapegrad.tensor import Tensor
from tapegrad.variable import Variable

if TYPE_CHECKING:
    from tapegrad.context import TrainingContext


@dataclass(frozen=True)
class CrossEntropyRule(ReverseRule):
    kind: ClassVar[str] = "cross_entropy"
    probs: Tensor
    targets: tuple[int, ...]

    def apply(self, inputs, grad_output, workspace):
        logits = inputs[0]
        if not logits.requires_grad:
            return
        probs = self.probs.data
        seq_len = probs.shape[0]
        grad = workspace.scratch(probs.shape)
        np.copyto(grad, probs)
        grad[np.arange(seq_len), np.asarray(self.targets)] -= 1.0
        grad *= grad_output[0] / seq_len
        accumulate(logits, grad)


def cross_entropy(
    ctx: "TrainingContext",
    logits: Variable,
    targets: Sequence[int],
) -> Variable:
    """
    Mean cross-entropy of a sequence of next-token predictions.

    Cross-entropy compares the predicted distribution softmax(logits) with the one-hot
    target distribution at every position:

        L = -(1/T) * sum_t log(softmax(logits[t])[targets[t]])

    VISUALIZED with concrete example:

    Vocab size: 4, sequence length T = 2

    Step 1: logits (raw scores)
    -------
    logits[0] = [2.0, 1.0, 0.1, -1.0]    target 0
    logits[1] = [0.5, 0.5, 3.0,  0.0]    target 3

    Step 2: softmax per position
    -------
    probs[0] = [0.638, 0.235, 0.095, 0.032]
    probs[1] = [0.068, 0.068, 0.824, 0.041]

    Step 3: negative log-probability of the correct token
    -------
    -log(0.638) = 0.449    (confident and right)
    -log(0.041) = 3.19     (confident and wrong)

    Step 4: average over positions
    -------
    L = (0.449 + 3.19) / 2 = 1.82

    Backward: dL/dlogits[t] = (probs[t] - one_hot(targets[t])) / T, so the correct token's
    score is pushed up and every other score is pushed down in proportion to its probability.

    Args:
        logits: (T, vocab) raw scores.
        targets: T token ids, each in [0, vocab).

    Returns:
        Shape (1,) Variable holding the mean loss.
    """
    if len(logits.shape) != 2:
        raise ShapeError("cross_entropy", [logits.shape], "logits must be (sequence, vocab)")
    seq_len, vocab = logits.shape
    index = check_indices("cross_entropy", targets, vocab)
    if len(index) != seq_len:
        raise ShapeError(
            "cross_entropy",
            [logits.shape, (len(index),)],
            "need exactly one target per position",
        )

    # log_softmax via the max-shift, stable for large scores
    values = logits.value
    shifted = values - values.max(axis=1, keepdims=True)
    log_norm = np.log(np.exp(shifted).sum(axis=1, keepdims=True))
    log_probs = shifted - log_norm

    out = ctx.empty((1,))
    out.data[0] = -log_probs[np.arange(seq_len), np.asarray(index)].mean()
    result = ctx.output(out, (logits,))
    if result.requires_grad:
        ctx.record((logits,), result, CrossEntropyRule(ctx.tensor(np.exp(log_probs)), index))
    return result


@dataclass(frozen=True)
class MSERule(ReverseRule):
    kind: ClassVar[str] = "mse_loss"
    diff: Tensor

    def apply(self, inputs, grad_output, workspace):
        prediction, target = inputs
        diff = self.diff.data
        grad = diff * (2.0 * grad_output[0] / diff.size)
        accumulate(prediction, grad)
        if target.requires_grad:
            accumulate(target, -grad)


def mse_loss(ctx: "TrainingContext", prediction: Variable, target: Variable) -> Variable:
    """Mean squared error, mean((prediction - target)^2), shape (1,)."""
    if prediction.shape != target.shape:
        raise ShapeError("mse_loss", [prediction.shape, target.shape], "shapes must match")
    diff = ctx.tensor(prediction.value - target.value)
    out = ctx.empty((1,))
    out.data[0] = np.mean(diff.data ** 2)
    result = ctx.output(out, (prediction, target))
    if result.requires_grad:
        ctx.record((prediction, target), result, MSERule(diff))
    return result

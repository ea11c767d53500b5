"""
Optimizers over persistent parameter Variables.

An optimizer holds references (never ownership) to parameters, organized in `param_groups`
like torch.optim so per-group weight decay and the LR scheduler work the same way:

    optimizer = create_optimizer(model, config.training)
    optimizer.zero_grad()
    ... forward / backward ...
    optimizer.step()

Moment buffers (momentum, Adam m/v) are persistent tensors owned by the optimizer, so they
survive every arena reset; `release()` frees them.
"""

from __future__ import annotations

from typing import Any
from typing import Iterable
from typing import Optional

import numpy as np

from tapegrad.config import TrainingConfig
from tapegrad.errors import LifetimeError
from tapegrad.tensor import Tensor
from tapegrad.variable import Variable


class Optimizer:
    """Base class: parameter groups, gradient zeroing, per-parameter state."""

    def __init__(self, params: Iterable[Any], defaults: dict[str, Any]) -> None:
        params = list(params)
        if not params:
            raise ValueError("optimizer got an empty parameter list")
        if not isinstance(params[0], dict):
            params = [{"params": params}]

        self.defaults = defaults
        self.param_groups: list[dict[str, Any]] = []
        for group in params:
            group = {**defaults, **group, "params": list(group["params"])}
            for p in group["params"]:
                self._check_parameter(p)
            self.param_groups.append(group)
        # Keyed by id(parameter); parameters are held by param_groups for the optimizer's lifetime.
        self.state: dict[int, dict[str, Any]] = {}

    @staticmethod
    def _check_parameter(p: Variable) -> None:
        if not isinstance(p, Variable) or not p.is_parameter:
            raise ValueError(f"optimizer parameters must be parameter Variables, got {p!r}")
        if not p.data.is_persistent:
            raise LifetimeError("optimizer parameters must be persistent")

    @property
    def parameters(self) -> list[Variable]:
        """All parameters in registration order."""
        return [p for group in self.param_groups for p in group["params"]]

    @property
    def lr(self) -> float:
        return float(self.param_groups[0]["lr"])

    @lr.setter
    def lr(self, value: float) -> None:
        for group in self.param_groups:
            group["lr"] = float(value)

    def zero_grad(self) -> None:
        for p in self.parameters:
            p.zero_grad()

    def step(self) -> None:
        for group in self.param_groups:
            for p in group["params"]:
                if p.grad is None:
                    continue
                self._update(p, p.grad.data, group)

    def _update(self, p: Variable, grad: np.ndarray, group: dict[str, Any]) -> None:
        raise NotImplementedError

    def _buffer(self, p: Variable, name: str) -> np.ndarray:
        """Lazily create a zeroed persistent state buffer for `p`."""
        slot = self.state.setdefault(id(p), {})
        if name not in slot:
            slot[name] = Tensor.persistent(p.shape)
        return slot[name].data

    def release(self) -> None:
        """Free every persistent state tensor this optimizer allocated."""
        for slot in self.state.values():
            for value in slot.values():
                if isinstance(value, Tensor):
                    value.release()
        self.state.clear()


class SGD(Optimizer):
    """Gradient descent: p -= lr * (g + wd * p), with optional momentum."""

    def __init__(
        self,
        params: Iterable[Any],
        lr: float = 1e-2,
        momentum: float = 0.0,
        weight_decay: float = 0.0,
    ) -> None:
        if lr <= 0:
            raise ValueError("learning_rate must be positive")
        if momentum < 0:
            raise ValueError("momentum must be non-negative")
        super().__init__(params, {"lr": lr, "momentum": momentum, "weight_decay": weight_decay})

    def _update(self, p, grad, group):
        value = p.value
        if group["weight_decay"]:
            grad = grad + group["weight_decay"] * value
        if group["momentum"]:
            buf = self._buffer(p, "momentum")
            buf *= group["momentum"]
            buf += grad
            grad = buf
        value -= group["lr"] * grad


class Adam(Optimizer):
    """
    Adam with bias-corrected first/second moments.

    Update per parameter at step t:
        m = b1 * m + (1 - b1) * g
        v = b2 * v + (1 - b2) * g^2
        p -= lr * (m / (1 - b1^t)) / (sqrt(v / (1 - b2^t)) + eps)

    `weight_decay` here is classic L2 (added to the gradient); use AdamW for decoupled decay.
    """

    decoupled = False

    def __init__(
        self,
        params: Iterable[Any],
        lr: float = 1e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
    ) -> None:
        if lr <= 0:
            raise ValueError("learning_rate must be positive")
        if not (0.0 <= betas[0] < 1.0 and 0.0 <= betas[1] < 1.0):
            raise ValueError(f"betas must be in [0, 1), got {betas}")
        if eps <= 0:
            raise ValueError("eps must be positive")
        super().__init__(
            params,
            {"lr": lr, "betas": tuple(betas), "eps": eps, "weight_decay": weight_decay},
        )

    def _update(self, p, grad, group):
        value = p.value
        beta1, beta2 = group["betas"]
        lr = group["lr"]
        wd = group["weight_decay"]

        if wd and self.decoupled:
            value -= lr * wd * value
        elif wd:
            grad = grad + wd * value

        slot = self.state.setdefault(id(p), {})
        slot["step"] = slot.get("step", 0) + 1
        t = slot["step"]

        m = self._buffer(p, "exp_avg")
        v = self._buffer(p, "exp_avg_sq")
        m *= beta1
        m += (1.0 - beta1) * grad
        v *= beta2
        v += (1.0 - beta2) * grad * grad

        m_hat = m / (1.0 - beta1 ** t)
        v_hat = v / (1.0 - beta2 ** t)
        value -= lr * m_hat / (np.sqrt(v_hat) + group["eps"])


class AdamW(Adam):
    """Adam with decoupled weight decay: p -= lr * wd * p before the Adam update."""

    decoupled = True


def _is_no_decay(name: str) -> bool:
    lower_name = name.lower()
    return "bias" in lower_name or "ln_" in lower_name or "norm" in lower_name


def create_optimizer(model, config: Optional[TrainingConfig] = None) -> Optimizer:
    """
    Build the configured optimizer with separate decay / no-decay groups.

    Args:
        model: A `Module` (anything with `named_parameters()`).
        config: Training hyperparameters; defaults to `TrainingConfig()`.

    Returns:
        SGD, Adam or AdamW instance.
    """
    config = config or TrainingConfig()

    # Separate parameters with and without weight decay
    decay_params: list[Variable] = []
    no_decay_params: list[Variable] = []
    for name, param in model.named_parameters():
        if not param.requires_grad:
            continue
        # No decay for biases and layer norms
        if _is_no_decay(name):
            no_decay_params.append(param)
        else:
            decay_params.append(param)

    groups = [
        {"params": decay_params, "weight_decay": config.weight_decay},
        {"params": no_decay_params, "weight_decay": 0.0},
    ]
    groups = [g for g in groups if g["params"]]

    if config.optimizer == "sgd":
        return SGD(groups, lr=config.learning_rate, momentum=config.momentum)
    optimizer_cls = AdamW if config.optimizer == "adamw" else Adam
    return optimizer_cls(
        groups,
        lr=config.learning_rate,
        betas=(config.beta1, config.beta2),
        eps=config.eps,
    )

"""
Variable: a data Tensor plus an optional gradient Tensor of the same shape and ownership.

Parameters get a PERSISTENT gradient so accumulated gradients and optimizer state survive the
per-iteration arena reset. Intermediates get an EPHEMERAL gradient reclaimed with everything
else from the same iteration.
"""

from __future__ import annotations

from typing import Optional

from tapegrad.arena import Arena
from tapegrad.errors import LifetimeError
from tapegrad.errors import ShapeError
from tapegrad.tensor import Tensor
from tapegrad.tensor import zeros_ephemeral
from tapegrad.tensor import zeros_persistent


class Variable:
    """Differentiable value: data, optional gradient, tracking flag."""

    __slots__ = ("data", "grad", "requires_grad", "is_parameter", "name")

    def __init__(
        self,
        data: Tensor,
        grad: Optional[Tensor] = None,
        *,
        requires_grad: bool = False,
        is_parameter: bool = False,
        name: Optional[str] = None,
    ) -> None:
        if requires_grad and grad is None:
            raise ValueError("gradient-tracked variables need a gradient tensor")
        if grad is not None:
            if grad.shape != data.shape:
                raise ShapeError("variable", [data.shape, grad.shape], "gradient shape must match data")
            if grad.ownership is not data.ownership:
                raise LifetimeError(
                    f"gradient ownership {grad.ownership.value} differs from "
                    f"data ownership {data.ownership.value}"
                )
        if is_parameter and not data.is_persistent:
            raise LifetimeError("parameters must be backed by persistent tensors")

        self.data = data
        self.grad = grad
        self.requires_grad = requires_grad
        self.is_parameter = is_parameter
        self.name = name

    @classmethod
    def parameter(cls, data: Tensor, name: Optional[str] = None) -> "Variable":
        """Trainable parameter with a zeroed persistent gradient."""
        return cls(
            data,
            zeros_persistent(data.shape),
            requires_grad=True,
            is_parameter=True,
            name=name,
        )

    @classmethod
    def ephemeral(cls, arena: Arena, data: Tensor, requires_grad: bool = False) -> "Variable":
        """Intermediate value; its gradient (if tracked) comes from the same arena generation."""
        grad = zeros_ephemeral(arena, data.shape) if requires_grad else None
        return cls(data, grad, requires_grad=requires_grad)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape

    @property
    def value(self):
        """Live numpy view of the data tensor."""
        return self.data.data

    def zero_grad(self) -> None:
        if self.grad is not None:
            self.grad.fill(0.0)

    def release(self) -> None:
        """Free a parameter's persistent data and gradient."""
        if not self.data.is_persistent:
            raise LifetimeError("only persistent variables can be released")
        self.data.release()
        if self.grad is not None:
            self.grad.release()

    def __repr__(self) -> str:
        label = f"{self.name}, " if self.name else ""
        return (
            f"Variable({label}shape={self.shape}, {self.data.ownership.value}, "
            f"requires_grad={self.requires_grad})"
        )


def zero_gradient(variable: Variable) -> None:
    """Reset a variable's gradient to zero. Call before the forward pass, never mid-backward."""
    variable.zero_grad()

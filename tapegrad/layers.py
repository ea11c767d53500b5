"""
Parameterized layers built from the operation library.

`Module` plays the role of torch.nn.Module: assigning a parameter Variable or a child Module
to an attribute registers it, and `named_parameters()` walks the tree in registration order.
That order is the stable order shared by the optimizer and weight exchange
(`state_dict` / `load_state_dict`).

Forward methods take the TrainingContext explicitly:

    layer = Linear(10, 20)
    y = layer(ctx, x)            # x: (batch, 10) Variable -> (batch, 20)
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING
from typing import Iterator
from typing import Mapping
from typing import Optional
from typing import Sequence

import numpy as np

from tapegrad import ops
from tapegrad.errors import CheckpointError
from tapegrad.errors import ShapeError
from tapegrad.tensor import Tensor
from tapegrad.tensor import randn_persistent
from tapegrad.variable import Variable

if TYPE_CHECKING:
    from tapegrad.context import TrainingContext


# GPT-2 style init
INIT_STD = 0.02


class Module:
    """Container of parameters and child modules."""

    def __init__(self) -> None:
        object.__setattr__(self, "_parameters", OrderedDict())
        object.__setattr__(self, "_modules", OrderedDict())

    def __setattr__(self, name: str, value) -> None:
        if isinstance(value, Variable) and value.is_parameter:
            if value.name is None:
                value.name = name
            self._parameters[name] = value
        elif isinstance(value, Module):
            self._modules[name] = value
        object.__setattr__(self, name, value)

    def __call__(self, ctx: "TrainingContext", *args, **kwargs):
        return self.forward(ctx, *args, **kwargs)

    def forward(self, ctx: "TrainingContext", *args, **kwargs):
        raise NotImplementedError

    def named_modules(self, prefix: str = "") -> Iterator[tuple[str, "Module"]]:
        yield prefix, self
        for name, child in self._modules.items():
            yield from child.named_modules(f"{prefix}.{name}" if prefix else name)

    def named_parameters(self, prefix: str = "") -> Iterator[tuple[str, Variable]]:
        """Yield (dotted name, parameter) pairs; a parameter shared by two modules is yielded once."""
        seen: set[int] = set()
        for module_name, module in self.named_modules(prefix):
            for name, param in module._parameters.items():
                if id(param) in seen:
                    continue
                seen.add(id(param))
                yield (f"{module_name}.{name}" if module_name else name), param

    def name_parameters(self, prefix: str = "") -> None:
        """Label every parameter with its dotted path, e.g. "blocks.0.mlp.fc1.weight"."""
        for name, param in self.named_parameters(prefix):
            param.name = name

    def parameters(self) -> list[Variable]:
        return [p for _, p in self.named_parameters()]

    def zero_grad(self) -> None:
        for p in self.parameters():
            p.zero_grad()

    def release(self) -> None:
        """Free every parameter's persistent data and gradient."""
        for p in self.parameters():
            p.release()

    def state_dict(self) -> "OrderedDict[str, np.ndarray]":
        """Ordered copy of every parameter's values."""
        return OrderedDict((name, p.data.numpy()) for name, p in self.named_parameters())

    def load_state_dict(self, state: Mapping[str, np.ndarray]) -> None:
        """
        Copy externally supplied values into the parameters.

        Everything is validated before the first parameter is written, so a bad state leaves
        the module untouched.

        Raises:
            CheckpointError: missing or unexpected names, or a shape mismatch.
        """
        params = OrderedDict(self.named_parameters())
        missing = [name for name in params if name not in state]
        unexpected = [name for name in state if name not in params]
        if missing or unexpected:
            raise CheckpointError(f"state mismatch: missing={missing}, unexpected={unexpected}")

        arrays = {}
        for name, param in params.items():
            arr = np.asarray(state[name], dtype=np.float64)
            if arr.shape != param.shape:
                raise CheckpointError(
                    f"shape mismatch for {name}: expected {param.shape}, got {arr.shape}"
                )
            if not np.all(np.isfinite(arr)):
                raise CheckpointError(f"non-finite values in {name}")
            arrays[name] = arr

        for name, param in params.items():
            np.copyto(param.value, arrays[name])


class ModuleList(Module):
    """Ordered list of child modules, registered as "0", "1", ..."""

    def __init__(self, modules: Sequence[Module] = ()) -> None:
        super().__init__()
        self._items: list[Module] = []
        for module in modules:
            self.append(module)

    def append(self, module: Module) -> None:
        setattr(self, str(len(self._items)), module)
        self._items.append(module)

    def __iter__(self) -> Iterator[Module]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, idx: int) -> Module:
        return self._items[idx]


class Linear(Module):
    """
    Linear transformation: y = x W^T + b

    VISUALIZED with concrete example:

    x (2x3):                    W (4x3):                 b (4):
        [[1.0, 2.0, 3.0],           [[0.1, 0.2, 0.3],        [0.1, 0.2, 0.3, 0.4]
         [4.0, 5.0, 6.0]]            [0.4, 0.5, 0.6],
                                     [0.7, 0.8, 0.9],
                                     [1.0, 1.1, 1.2]]

    Row 1: x W^T = [1.4, 3.2, 5.0, 6.8]  then + b = [1.5, 3.4, 5.3, 7.2]

    On the tape this is three entries: transpose(W), matmul, add (bias broadcast over rows).
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        rng: Optional[np.random.Generator] = None,
        weight: Optional[Variable] = None,
    ) -> None:
        """
        Args:
            weight: Existing (out_features, in_features) parameter to use instead of drawing
                a new one, e.g. an embedding table for weight tying. No random draw happens.
        """
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        # Weight matrix: (out_features, in_features)
        if weight is None:
            init = randn_persistent((out_features, in_features), INIT_STD, rng)
            weight = Variable.parameter(init)
        elif not weight.is_parameter or weight.shape != (out_features, in_features):
            raise ShapeError(
                "linear",
                [weight.shape],
                f"shared weight must be a ({out_features}, {in_features}) parameter",
            )
        self.weight = weight
        self.bias = Variable.parameter(Tensor.persistent((out_features,))) if bias else None

    def forward(self, ctx: "TrainingContext", x: Variable) -> Variable:
        """
        Args:
            x: (batch, in_features)

        Returns:
            (batch, out_features)
        """
        y = ops.matmul(ctx, x, ops.transpose(ctx, self.weight))
        if self.bias is not None:
            y = ops.add(ctx, y, self.bias)
        return y


class Embedding(Module):
    """Lookup table mapping ids to rows of a (num_embeddings, dim) parameter."""

    def __init__(
        self,
        num_embeddings: int,
        embedding_dim: int,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        super().__init__()
        self.num_embeddings = num_embeddings
        self.embedding_dim = embedding_dim
        table = randn_persistent((num_embeddings, embedding_dim), INIT_STD, rng)
        self.weight = Variable.parameter(table)

    def forward(self, ctx: "TrainingContext", ids: Sequence[int]) -> Variable:
        return ops.embedding(ctx, self.weight, ids)


class LayerNorm(Module):
    """
    Layer normalization over the feature dimension.

    gamma starts at 1 and beta at 0, so a fresh layer only standardizes each position:

        x = [2.0, 4.0, 6.0, 8.0]  ->  mean 5.0, var 5.0  ->  [-1.342, -0.447, 0.447, 1.342]
    """

    def __init__(self, normalized_shape: int, eps: float = 1e-5) -> None:
        super().__init__()
        self.normalized_shape = normalized_shape
        self.eps = eps
        gamma = Tensor.persistent((normalized_shape,))
        gamma.fill(1.0)
        self.weight = Variable.parameter(gamma)
        self.bias = Variable.parameter(Tensor.persistent((normalized_shape,)))

    def forward(self, ctx: "TrainingContext", x: Variable) -> Variable:
        return ops.layer_norm(ctx, x, self.weight, self.bias, self.eps)

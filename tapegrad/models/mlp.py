"""
Position-wise feed-forward network.
"""

from typing import Optional

import numpy as np

from tapegrad import ops
from tapegrad.config import ModelConfig
from tapegrad.layers import Linear
from tapegrad.layers import Module
from tapegrad.variable import Variable


class MLP(Module):
    """fc1 (d_model -> d_ff), ReLU, fc2 (d_ff -> d_model)."""

    def __init__(self, config: ModelConfig, rng: Optional[np.random.Generator] = None) -> None:
        super().__init__()
        self.fc1 = Linear(config.d_model, config.d_ff, rng=rng)
        self.fc2 = Linear(config.d_ff, config.d_model, rng=rng)

    def forward(self, ctx, x: Variable) -> Variable:
        """
        Args:
            x: (seq_len, d_model)

        Returns:
            output: (seq_len, d_model)
        """
        if len(x.shape) != 2:
            raise ValueError("x must have shape [seq_len, d_model]")

        x = self.fc1(ctx, x)
        x = ops.relu(ctx, x)
        return self.fc2(ctx, x)

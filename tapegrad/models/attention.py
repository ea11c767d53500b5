"""
Causal multi-head self-attention over a single (seq_len, d_model) sequence.
"""

import math
from typing import Optional

import numpy as np

from tapegrad import ops
from tapegrad.config import ModelConfig
from tapegrad.layers import Linear
from tapegrad.layers import Module
from tapegrad.variable import Variable


class MultiHeadAttention(Module):
    """
    Multi-head self-attention.

    Heads are column blocks of the fused QKV projection: for head h the query is columns
    [h*dh, (h+1)*dh), the key the same block offset by d_model, the value offset by 2*d_model.
    Each head runs

        probs = softmax(causal_mask(q k^T / sqrt(dh)))
        out_h = probs v

    and the head outputs are concatenated before the output projection. Every step is a tape
    op, so gradients reach the QKV and output projections.
    """

    def __init__(self, config: ModelConfig, rng: Optional[np.random.Generator] = None) -> None:
        super().__init__()
        self.hidden_size = config.d_model
        self.num_heads = config.n_heads
        self.head_dim = config.d_model // config.n_heads

        if self.head_dim * self.num_heads != self.hidden_size:
            raise ValueError("d_model must be divisible by n_heads")

        self.qkv_proj = Linear(config.d_model, 3 * config.d_model, bias=False, rng=rng)
        self.out_proj = Linear(config.d_model, config.d_model, bias=False, rng=rng)
        self.scale = 1.0 / math.sqrt(self.head_dim)

    def forward(self, ctx, x: Variable) -> Variable:
        """
        Args:
            x: (seq_len, d_model)

        Returns:
            output: (seq_len, d_model)
        """
        if len(x.shape) != 2 or x.shape[1] != self.hidden_size:
            raise ValueError(f"x must have shape [seq_len, {self.hidden_size}], got {x.shape}")

        qkv = self.qkv_proj(ctx, x)
        d, dh = self.hidden_size, self.head_dim

        heads = []
        for h in range(self.num_heads):
            lo, hi = h * dh, (h + 1) * dh
            q = ops.slice_columns(ctx, qkv, lo, hi)
            k = ops.slice_columns(ctx, qkv, d + lo, d + hi)
            v = ops.slice_columns(ctx, qkv, 2 * d + lo, 2 * d + hi)

            scores = ops.scale(ctx, ops.matmul(ctx, q, ops.transpose(ctx, k)), self.scale)
            probs = ops.softmax(ctx, ops.causal_mask(ctx, scores))
            heads.append(ops.matmul(ctx, probs, v))

        attn_output = ops.concat_columns(ctx, heads)
        return self.out_proj(ctx, attn_output)

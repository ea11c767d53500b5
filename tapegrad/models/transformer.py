"""
Transformer block and full decoder-only language model.
"""

from typing import Optional
from typing import Sequence

import numpy as np

from tapegrad import ops
from tapegrad.config import ModelConfig
from tapegrad.errors import InvalidIndexError
from tapegrad.layers import Embedding
from tapegrad.layers import LayerNorm
from tapegrad.layers import Linear
from tapegrad.layers import Module
from tapegrad.layers import ModuleList
from tapegrad.losses import cross_entropy
from tapegrad.models.attention import MultiHeadAttention
from tapegrad.models.mlp import MLP
from tapegrad.variable import Variable


class TransformerBlock(Module):
    """Pre-norm decoder block: x + attn(ln(x)), then x + mlp(ln(x))."""

    def __init__(
        self,
        config: ModelConfig,
        layer_idx: int,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        super().__init__()
        self.layer_idx = layer_idx

        self.attention = MultiHeadAttention(config, rng)
        self.attn_norm = LayerNorm(config.d_model, config.layer_norm_eps)

        self.mlp = MLP(config, rng)
        self.mlp_norm = LayerNorm(config.d_model, config.layer_norm_eps)

    def forward(self, ctx, x: Variable) -> Variable:
        """
        Args:
            x: (seq_len, d_model)

        Returns:
            output: (seq_len, d_model)
        """
        # Pre-norm attention block
        h = self.attention(ctx, self.attn_norm(ctx, x))
        x = ops.add(ctx, x, h)

        # Pre-norm MLP block
        h = self.mlp(ctx, self.mlp_norm(ctx, x))
        return ops.add(ctx, x, h)


class TransformerModel(Module):
    """
    GPT-style character/token language model on one sequence at a time.

    token + position embeddings -> n_layers blocks -> ln_f -> lm_head (tied to the token
    embedding table).
    """

    def __init__(self, config: ModelConfig, seed: Optional[int] = None) -> None:
        super().__init__()
        self.config = config
        rng = np.random.default_rng(seed)

        self.token_embeddings = Embedding(config.vocab_size, config.d_model, rng)
        self.position_embeddings = Embedding(config.max_seq_len, config.d_model, rng)

        # Transformer blocks
        self.blocks = ModuleList([
            TransformerBlock(config, layer_idx=i, rng=rng)
            for i in range(config.n_layers)
        ])

        # Final layer norm
        self.ln_f = LayerNorm(config.d_model, config.layer_norm_eps)

        # LM head; weight tying: share the (vocab, d_model) table with token_embeddings
        self.lm_head = Linear(
            config.d_model, config.vocab_size, bias=False, weight=self.token_embeddings.weight
        )

        self.name_parameters()

    def forward(self, ctx, tokens: Sequence[int]) -> Variable:
        """
        Args:
            tokens: seq_len token ids.

        Returns:
            logits: (seq_len, vocab_size)
        """
        seq_len = len(tokens)
        if seq_len == 0 or seq_len > self.config.max_seq_len:
            raise InvalidIndexError(
                f"sequence length {seq_len} outside [1, {self.config.max_seq_len}]"
            )

        x = self.token_embeddings(ctx, tokens)
        pos = self.position_embeddings(ctx, range(seq_len))
        x = ops.add(ctx, x, pos)

        for block in self.blocks:
            x = block(ctx, x)

        x = self.ln_f(ctx, x)
        return self.lm_head(ctx, x)

    def loss(self, ctx, tokens: Sequence[int], targets: Sequence[int]) -> Variable:
        """Mean next-token cross-entropy of one sequence."""
        return cross_entropy(ctx, self.forward(ctx, tokens), targets)

    @property
    def num_parameters(self) -> int:
        return sum(p.data.size for p in self.parameters())

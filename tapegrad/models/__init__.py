from .attention import MultiHeadAttention
from .mlp import MLP
from .transformer import TransformerBlock
from .transformer import TransformerModel

__all__ = [
    "MultiHeadAttention",
    "MLP",
    "TransformerBlock",
    "TransformerModel",
]

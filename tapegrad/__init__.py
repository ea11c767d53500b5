"""
tapegrad: tape-based reverse-mode autodiff with arena-managed per-iteration memory.
"""

from __future__ import annotations

from tapegrad.arena import Arena
from tapegrad.config import ArenaConfig
from tapegrad.config import Config
from tapegrad.config import ModelConfig
from tapegrad.config import TapeConfig
from tapegrad.config import TrainingConfig
from tapegrad.context import TrainingContext
from tapegrad.errors import ArenaExhaustedError
from tapegrad.errors import AutogradError
from tapegrad.errors import CheckpointError
from tapegrad.errors import InvalidIndexError
from tapegrad.errors import LifetimeError
from tapegrad.errors import ShapeError
from tapegrad.errors import TapeStateError
from tapegrad.tape import Tape
from tapegrad.tensor import Ownership
from tapegrad.tensor import Tensor
from tapegrad.variable import Variable

__all__ = [
    "Arena",
    "ArenaConfig",
    "ArenaExhaustedError",
    "AutogradError",
    "CheckpointError",
    "Config",
    "InvalidIndexError",
    "LifetimeError",
    "ModelConfig",
    "Ownership",
    "ShapeError",
    "Tape",
    "TapeConfig",
    "TapeStateError",
    "Tensor",
    "TrainingConfig",
    "TrainingContext",
    "Variable",
]

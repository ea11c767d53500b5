"""
Configuration system for tapegrad.

Dataclass-based defaults, optionally merged with a YAML file and dotted overrides through
OmegaConf (`load_config`).
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Optional
from typing import Sequence

import yaml
from omegaconf import OmegaConf


DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024

KERNEL_NAMES = ("blas", "torch", "naive")
OPTIMIZER_NAMES = ("sgd", "adam", "adamw")
LR_SCHEDULES = ("constant", "cosine")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ArenaConfig:
    """
    Ephemeral-memory arena configuration.

    `max_bytes=None` lets the arena grow until the host refuses an allocation; a ceiling turns
    growth past it into `ArenaExhaustedError`.
    """
    chunk_size: int = DEFAULT_CHUNK_SIZE
    keep_blocks: int = 1
    max_bytes: Optional[int] = None
    # Every Nth reset_iteration releases blocks above keep_blocks.
    aggressive_reset_every: int = 10

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.keep_blocks < 1:
            raise ValueError("keep_blocks must be >= 1")
        if self.max_bytes is not None and self.max_bytes < self.chunk_size:
            raise ValueError("max_bytes must be >= chunk_size")
        if self.aggressive_reset_every < 1:
            raise ValueError("aggressive_reset_every must be >= 1")


@dataclass
class TapeConfig:
    """Operation trace sizing."""
    initial_capacity: int = 1000
    max_capacity: int = 10000

    def __post_init__(self) -> None:
        if self.initial_capacity <= 0:
            raise ValueError("initial_capacity must be > 0")
        if self.max_capacity < self.initial_capacity:
            raise ValueError("max_capacity must be >= initial_capacity")


@dataclass
class ModelConfig:
    """Transformer architecture configuration."""
    vocab_size: int = 70
    d_model: int = 128
    n_heads: int = 4
    n_layers: int = 2
    d_ff: int = 256
    max_seq_len: int = 64
    layer_norm_eps: float = 1e-5

    def __post_init__(self) -> None:
        if self.d_model % self.n_heads != 0:
            raise ValueError("d_model must be divisible by n_heads")
        for name in ("vocab_size", "d_model", "n_heads", "n_layers", "d_ff", "max_seq_len"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass
class TrainingConfig:
    """Training configuration."""
    optimizer: str = "adam"
    learning_rate: float = 1e-3
    beta1: float = 0.9
    beta2: float = 0.999
    eps: float = 1e-8
    momentum: float = 0.0
    weight_decay: float = 0.0
    # Global gradient-norm clipping; 0 disables it.
    max_grad_norm: float = 0.0
    max_steps: int = 2000
    lr_schedule: str = "cosine"
    warmup_steps: int = 0
    min_lr: float = 0.0
    log_steps: int = 100
    seq_len: int = 32
    kernel: str = "blas"

    def __post_init__(self) -> None:
        if self.optimizer not in OPTIMIZER_NAMES:
            raise ValueError(f"optimizer must be one of {OPTIMIZER_NAMES}, got {self.optimizer!r}")
        if self.kernel not in KERNEL_NAMES:
            raise ValueError(f"kernel must be one of {KERNEL_NAMES}, got {self.kernel!r}")
        if self.lr_schedule not in LR_SCHEDULES:
            raise ValueError(f"lr_schedule must be one of {LR_SCHEDULES}, got {self.lr_schedule!r}")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.weight_decay < 0:
            raise ValueError("weight_decay must be non-negative")
        if self.max_grad_norm < 0:
            raise ValueError("max_grad_norm must be non-negative")
        if self.max_steps <= 0:
            raise ValueError("max_steps must be > 0")
        if self.warmup_steps < 0 or self.warmup_steps >= self.max_steps:
            raise ValueError("warmup_steps must be in [0, max_steps)")
        if self.log_steps <= 0:
            raise ValueError("log_steps must be > 0")


@dataclass
class Config:
    """Main configuration class."""
    arena: ArenaConfig = field(default_factory=ArenaConfig)
    tape: TapeConfig = field(default_factory=TapeConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)

    # Output
    output_dir: str = "outputs"
    run_name: str = "tapegrad"
    log_dir: Optional[str] = None
    seed: int = 42

    # Logging; the Trainer configures the root logger when either is set.
    log_level: Optional[str] = None
    log_file: Optional[str] = None
    log_colors: bool = True

    def __post_init__(self) -> None:
        if self.log_level is not None and self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Sequence[str]] = None,
) -> Config:
    """
    Build a Config from defaults, an optional YAML file and dotted overrides.

    Args:
        path: YAML file whose keys mirror the Config dataclass tree.
        overrides: Strings like "training.learning_rate=0.01".

    Returns:
        Validated Config instance.
    """
    merged = OmegaConf.structured(Config)
    if path is not None:
        merged = OmegaConf.merge(merged, OmegaConf.load(path))
    if overrides:
        merged = OmegaConf.merge(merged, OmegaConf.from_dotlist(list(overrides)))
    # to_object re-instantiates the dataclasses, which re-runs __post_init__ validation.
    return OmegaConf.to_object(merged)


def save_config(config: Config, path: str) -> None:
    """Write a resolved Config as YAML."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w") as f:
        yaml.safe_dump(dataclasses.asdict(config), f, sort_keys=False)

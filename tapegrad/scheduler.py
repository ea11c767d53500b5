"""
Learning rate schedule applied per parameter group.

Each group keeps the LR it had when the scheduler was built as its own peak. Warmup scales
every peak by the same linear factor, and the cosine phase moves each group from its peak
down to the shared `min_lr` floor, so groups with different LRs anneal in step.
"""

import math
from typing import Any

from tapegrad.optimizer import Optimizer


class CosineAnnealingScheduler:
    """Linear warmup followed by cosine annealing, one curve per param group."""

    def __init__(
        self,
        optimizer: Optimizer,
        warmup_steps: int,
        max_steps: int,
        min_lr: float = 0.0,
    ) -> None:
        """
        Args:
            optimizer: Optimizer whose param_groups are rescheduled on every step
            warmup_steps: Steps spent ramping each group from 0 to its peak LR
            max_steps: Step at which every group reaches min_lr
            min_lr: LR floor shared by all groups
        """
        if warmup_steps < 0:
            raise ValueError("warmup_steps must be >= 0")
        if max_steps <= 0:
            raise ValueError("max_steps must be > 0")
        if warmup_steps >= max_steps:
            raise ValueError("warmup_steps must be smaller than max_steps")
        if min_lr < 0:
            raise ValueError("min_lr must be >= 0")

        self.optimizer = optimizer
        self.warmup_steps = warmup_steps
        self.max_steps = max_steps
        self.min_lr = min_lr
        self.base_lrs = [float(group["lr"]) for group in optimizer.param_groups]
        self.current_step = 0

    def _warmup_factor(self) -> float:
        return self.current_step / self.warmup_steps

    def _cosine_factor(self) -> float:
        progress = (self.current_step - self.warmup_steps) / (self.max_steps - self.warmup_steps)
        progress = min(max(progress, 0.0), 1.0)
        return 0.5 * (1.0 + math.cos(math.pi * progress))

    def get_lrs(self) -> list[float]:
        """Scheduled LR of every param group at the current step."""
        if self.warmup_steps > 0 and self.current_step <= self.warmup_steps:
            factor = self._warmup_factor()
            return [base * factor for base in self.base_lrs]
        factor = self._cosine_factor()
        return [self.min_lr + (base - self.min_lr) * factor for base in self.base_lrs]

    def get_lr(self) -> float:
        """Scheduled LR of the first param group."""
        return self.get_lrs()[0]

    def _apply(self) -> None:
        for group, lr in zip(self.optimizer.param_groups, self.get_lrs()):
            group["lr"] = lr

    def step(self) -> float:
        """Advance one step and write each group's LR into the optimizer."""
        self.current_step += 1
        self._apply()
        return self.get_lr()

    def state_dict(self) -> dict[str, Any]:
        return {
            "current_step": self.current_step,
            "base_lrs": list(self.base_lrs),
        }

    def load_state_dict(self, state_dict: dict[str, Any]) -> None:
        base_lrs = [float(lr) for lr in state_dict["base_lrs"]]
        if len(base_lrs) != len(self.optimizer.param_groups):
            raise ValueError(
                f"scheduler state has {len(base_lrs)} param groups, "
                f"optimizer has {len(self.optimizer.param_groups)}"
            )
        self.base_lrs = base_lrs
        self.current_step = int(state_dict["current_step"])
        self._apply()

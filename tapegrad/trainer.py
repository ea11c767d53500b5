"""
Training loop glue: one iteration of the forward/backward/step/reset lifecycle, and a bounded
fit loop with progress bar, logging and optional TensorBoard scalars.
"""

from __future__ import annotations

import math
import os
import time
from typing import Iterable
from typing import Optional
from typing import Sequence

from tqdm import tqdm

# TensorBoard with graceful fallback
try:
    from torch.utils.tensorboard import SummaryWriter
except ImportError:
    SummaryWriter = None

from tapegrad.config import Config
from tapegrad.context import TrainingContext
from tapegrad.logging import get_logger
from tapegrad.logging import setup_logging
from tapegrad.monitoring import MemoryStats
from tapegrad.monitoring import clip_grad_norm
from tapegrad.monitoring import global_grad_norm
from tapegrad.monitoring import parameter_count
from tapegrad.monitoring import update_ratio
from tapegrad.optimizer import Optimizer
from tapegrad.optimizer import create_optimizer
from tapegrad.scheduler import CosineAnnealingScheduler


logger = get_logger(__name__)

MIB = 1024 * 1024


class Trainer:
    """Drives a model through repeated training iterations on one TrainingContext."""

    def __init__(
        self,
        model,
        config: Config,
        ctx: Optional[TrainingContext] = None,
        optimizer: Optional[Optimizer] = None,
    ) -> None:
        self.model = model
        self.config = config

        # Logging
        if config.log_level is not None or config.log_file is not None:
            setup_logging(
                log_level=config.log_level or "INFO",
                log_file=config.log_file,
                use_colors=config.log_colors,
            )

        self.ctx = ctx or TrainingContext.from_config(config)
        self.log_steps = max(1, int(config.training.log_steps))

        # Optimizer
        self.optimizer = optimizer or create_optimizer(model, config.training)

        # Scheduler
        self.scheduler: Optional[CosineAnnealingScheduler] = None
        if config.training.lr_schedule == "cosine":
            self.scheduler = CosineAnnealingScheduler(
                self.optimizer,
                warmup_steps=config.training.warmup_steps,
                max_steps=config.training.max_steps,
                min_lr=config.training.min_lr,
            )

        # TensorBoard
        self.writer = None
        if config.log_dir is not None:
            if SummaryWriter is not None:
                log_path = os.path.join(config.log_dir, config.run_name)
                self.writer = SummaryWriter(log_path)
                logger.info("TensorBoard logs: %s", log_path)
            else:
                logger.warning("TensorBoard not available. Install with: pip install tensorboard")

        self.global_step = 0
        self.last_grad_norm = 0.0

    def train_step(self, tokens: Sequence[int], targets: Sequence[int]) -> float:
        """
        Run one full iteration and return the loss.

        zero_grad -> forward + loss -> backward -> (clip) -> optimizer step -> scheduler step
        -> reset_iteration. After this returns, nothing ephemeral from the iteration is valid.
        """
        ctx = self.ctx
        self.optimizer.zero_grad()
        try:
            loss = self.model.loss(ctx, tokens, targets)
            loss_value = loss.data.item()
            ctx.backward(loss)

            parameters = self.optimizer.parameters
            max_norm = self.config.training.max_grad_norm
            if max_norm > 0:
                self.last_grad_norm = clip_grad_norm(parameters, max_norm)
            else:
                self.last_grad_norm = global_grad_norm(parameters)

            self.optimizer.step()
            if self.scheduler is not None:
                self.scheduler.step()
        finally:
            # A failed iteration must not leave stale entries for the next one.
            ctx.reset_iteration()

        self.global_step += 1
        if not math.isfinite(loss_value):
            logger.warning("Non-finite loss at step %d: %s", self.global_step, loss_value)
        return loss_value

    def fit(
        self,
        batches: Iterable[tuple[Sequence[int], Sequence[int]]],
        max_steps: Optional[int] = None,
        show_progress: bool = True,
    ) -> list[float]:
        """
        Train on (tokens, targets) pairs until `max_steps` or the iterable runs out.

        Returns:
            Per-step losses.
        """
        max_steps = max_steps or self.config.training.max_steps
        params = self.optimizer.parameters
        logger.info("Starting training for %d steps...", max_steps)
        logger.info("Model parameters: %s", f"{parameter_count(params):,}")
        logger.info("Matmul kernel: %s", self.ctx.kernel.name)
        logger.info("Learning rate: %g", self.optimizer.lr)

        losses: list[float] = []
        start = time.time()
        progress = tqdm(total=max_steps, desc="train", disable=not show_progress)
        try:
            for tokens, targets in batches:
                if len(losses) >= max_steps:
                    break
                loss_value = self.train_step(tokens, targets)
                losses.append(loss_value)
                progress.update(1)
                progress.set_postfix(loss=f"{loss_value:.4f}")

                if self.global_step % self.log_steps == 0:
                    self._log_step(loss_value)
        finally:
            progress.close()

        elapsed = time.time() - start
        logger.info("Finished %d steps in %.1fs", len(losses), elapsed)
        return losses

    def _log_step(self, loss_value: float) -> None:
        stats = MemoryStats.from_context(self.ctx)
        lr = self.optimizer.lr
        logger.info(
            "step %d | loss %.4f | lr %.2e | grad_norm %.3f | arena %.1f MiB (%d blocks)",
            self.global_step,
            loss_value,
            lr,
            self.last_grad_norm,
            stats.arena_allocated_bytes / MIB,
            stats.arena_blocks,
        )
        if self.writer is None:
            return

        step = self.global_step
        weight_norm = math.sqrt(sum(float((p.value ** 2).sum()) for p in self.optimizer.parameters))
        self.writer.add_scalar("Loss/train", loss_value, step)
        self.writer.add_scalar("Optimizer/lr", lr, step)
        self.writer.add_scalar("Optimizer/grad_norm", self.last_grad_norm, step)
        self.writer.add_scalar(
            "Optimizer/update_ratio",
            update_ratio(lr, grad_norm=self.last_grad_norm, weight_norm=weight_norm),
            step,
        )
        self.writer.add_scalar("Memory/arena_allocated_mb", stats.arena_allocated_bytes / MIB, step)
        self.writer.add_scalar("Memory/arena_peak_used_mb", stats.arena_peak_used_bytes / MIB, step)
        self.writer.add_scalar("Memory/tape_capacity", stats.tape_capacity, step)

    def close(self) -> None:
        if self.writer is not None:
            self.writer.close()
            self.writer = None

"""
Trainer lifecycle tests: per-iteration reset, overfitting a single sequence, step limits,
TensorBoard output, failure cleanup and bounded memory over many iterations.
"""

import itertools
import logging
import os

import numpy as np
import pytest

from tapegrad import ops
from tapegrad import trainer as trainer_module
from tapegrad.config import ArenaConfig
from tapegrad.config import Config
from tapegrad.config import ModelConfig
from tapegrad.config import TapeConfig
from tapegrad.config import TrainingConfig
from tapegrad.context import TrainingContext
from tapegrad.errors import InvalidIndexError
from tapegrad.layers import Linear
from tapegrad.losses import mse_loss
from tapegrad.models import TransformerModel
from tapegrad.monitoring import MemoryStats
from tapegrad.optimizer import SGD
from tapegrad.trainer import Trainer


TOKENS = [1, 5, 2, 9, 0, 3]
TARGETS = [5, 2, 9, 0, 3, 7]


def _config(tmp_path=None, **training) -> Config:
    training.setdefault("optimizer", "adam")
    training.setdefault("learning_rate", 1e-2)
    training.setdefault("lr_schedule", "constant")
    training.setdefault("max_steps", 100)
    training.setdefault("log_steps", 10)
    return Config(
        arena=ArenaConfig(chunk_size=64 * 1024),
        model=ModelConfig(vocab_size=11, d_model=8, n_heads=2, n_layers=1, d_ff=16, max_seq_len=8),
        training=TrainingConfig(**training),
        log_dir=str(tmp_path) if tmp_path is not None else None,
        run_name="unit",
    )


def _trainer(tmp_path=None, **training) -> Trainer:
    config = _config(tmp_path, **training)
    return Trainer(TransformerModel(config.model, seed=0), config)


class TestTrainStep:

    def test_step_resets_context(self):
        trainer = _trainer()
        generation = trainer.ctx.arena.generation

        loss = trainer.train_step(TOKENS, TARGETS)

        assert np.isfinite(loss)
        assert len(trainer.ctx.tape) == 0
        assert trainer.ctx.arena.generation == generation + 1
        assert trainer.ctx.arena.used_bytes == 0
        assert trainer.ctx.iteration == 1
        assert trainer.global_step == 1
        assert trainer.last_grad_norm > 0

    def test_overfits_single_sequence(self):
        trainer = _trainer()
        losses = [trainer.train_step(TOKENS, TARGETS) for _ in range(200)]
        assert losses[-1] < 0.5 * losses[0]

    def test_failed_step_still_resets(self):
        trainer = _trainer()
        generation = trainer.ctx.arena.generation
        with pytest.raises(InvalidIndexError):
            trainer.train_step(TOKENS, [5, 2, 9, 0, 3, 99])
        assert len(trainer.ctx.tape) == 0
        assert trainer.ctx.arena.generation == generation + 1
        assert trainer.global_step == 0

        # The next iteration runs normally
        assert np.isfinite(trainer.train_step(TOKENS, TARGETS))

    def test_gradient_clipping_bounds_norm(self):
        trainer = _trainer(max_grad_norm=1e-3, optimizer="sgd", learning_rate=0.1)
        trainer.train_step(TOKENS, TARGETS)
        # last_grad_norm is the pre-clip norm; the applied gradient was clipped
        grads = [p.grad.data for p in trainer.optimizer.parameters]
        clipped = float(np.sqrt(sum((g ** 2).sum() for g in grads)))
        assert trainer.last_grad_norm > 1e-3
        assert clipped <= 1e-3 * (1 + 1e-6)

    def test_cosine_schedule_moves_lr(self):
        trainer = _trainer(lr_schedule="cosine", warmup_steps=2, max_steps=10)
        trainer.train_step(TOKENS, TARGETS)
        assert trainer.optimizer.lr == pytest.approx(0.5e-2)


class TestFit:

    def test_stops_at_max_steps(self):
        trainer = _trainer()
        losses = trainer.fit(itertools.repeat((TOKENS, TARGETS)), max_steps=7, show_progress=False)
        assert len(losses) == 7
        assert trainer.global_step == 7

    def test_stops_when_batches_run_out(self):
        trainer = _trainer()
        losses = trainer.fit([(TOKENS, TARGETS)] * 3, show_progress=False)
        assert len(losses) == 3

    def test_writes_tensorboard_events(self, tmp_path):
        if trainer_module.SummaryWriter is None:
            pytest.skip("tensorboard not installed")
        trainer = _trainer(tmp_path, log_steps=2)
        trainer.fit(itertools.repeat((TOKENS, TARGETS)), max_steps=4, show_progress=False)
        trainer.close()

        run_dir = tmp_path / "unit"
        events = [name for name in os.listdir(run_dir) if name.startswith("events.out.tfevents")]
        assert events

    def test_no_writer_without_log_dir(self):
        trainer = _trainer()
        assert trainer.writer is None
        trainer.close()

    def test_log_file_from_config(self, tmp_path):
        root = logging.getLogger()
        saved = (list(root.handlers), root.level)
        log_file = tmp_path / "logs" / "train.log"
        config = _config(log_steps=2)
        config.log_level = "info"
        config.log_file = str(log_file)
        try:
            trainer = Trainer(TransformerModel(config.model, seed=0), config)
            trainer.fit(itertools.repeat((TOKENS, TARGETS)), max_steps=2, show_progress=False)
            for handler in root.handlers:
                handler.flush()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])

        text = log_file.read_text()
        assert "Starting training for 2 steps" in text
        assert "step 2 | loss" in text

    def test_logging_left_alone_by_default(self):
        root = logging.getLogger()
        handlers = list(root.handlers)
        _trainer().close()
        assert root.handlers == handlers


class TestBoundedMemory:
    """Many iterations on a fixed-size model must not grow the arena or the tape."""

    def test_ten_thousand_iterations(self):
        chunk = 4096
        ctx = TrainingContext(
            ArenaConfig(chunk_size=chunk, keep_blocks=1, aggressive_reset_every=10),
            TapeConfig(initial_capacity=16, max_capacity=64),
        )
        rng = np.random.default_rng(0)
        fc1 = Linear(4, 16, rng=rng)
        fc2 = Linear(16, 1, rng=rng)
        params = fc1.parameters() + fc2.parameters()
        optimizer = SGD(params, lr=1e-3)

        x = rng.standard_normal((8, 4))
        y = x.sum(axis=1, keepdims=True)

        peak_allocated = 0
        peak_capacity = 0
        for i in range(10_000):
            optimizer.zero_grad()
            pred = fc2(ctx, ops.relu(ctx, fc1(ctx, ctx.variable(x))))
            ctx.backward(mse_loss(ctx, pred, ctx.variable(y)))
            optimizer.step()
            stats = MemoryStats.from_context(ctx)
            ctx.reset_iteration()

            if i < 100:
                peak_allocated = max(peak_allocated, stats.arena_allocated_bytes)
                peak_capacity = max(peak_capacity, stats.tape_capacity)
            else:
                assert stats.arena_allocated_bytes <= peak_allocated
                assert stats.tape_capacity <= peak_capacity

            if ctx.iteration % 10 == 0:
                assert ctx.arena.allocated_bytes == chunk
                assert ctx.arena.num_blocks == 1

        # One forward pass needs more than one block, so growth really happened
        assert peak_allocated > chunk
        assert all(p.data.is_valid for p in params)

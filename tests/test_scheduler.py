"""
Unit tests for CosineAnnealingScheduler.

Tests verify:
1. Warmup phase increases LR linearly
2. Annealing phase follows cosine curve
3. LR is applied to every param group from its own peak
4. State save/load works
"""

import math

import pytest

from tapegrad.optimizer import SGD
from tapegrad.optimizer import AdamW
from tapegrad.scheduler import CosineAnnealingScheduler
from tapegrad.tensor import from_array_persistent
from tapegrad.variable import Variable


def _optimizer(lr: float = 1e-3):
    return AdamW([Variable.parameter(from_array_persistent([1.0, 2.0]))], lr=lr)


class TestCosineAnnealing:
    """Test cases for CosineAnnealingScheduler."""

    def test_warmup_phase(self):
        """Learning rate increases linearly during warmup."""
        scheduler = CosineAnnealingScheduler(_optimizer(), warmup_steps=10, max_steps=100)

        for step in range(1, 11):
            lr = scheduler.step()
            expected_lr = 1e-3 * step / 10
            assert abs(lr - expected_lr) < 1e-12, \
                f"Warmup LR mismatch at step {step}: {lr} vs {expected_lr}"

    def test_annealing_phase(self):
        """Learning rate follows cosine curve after warmup."""
        warmup_steps, max_steps, min_lr = 10, 100, 1e-5
        scheduler = CosineAnnealingScheduler(_optimizer(), warmup_steps, max_steps, min_lr)

        for _ in range(warmup_steps):
            scheduler.step()

        for step in range(warmup_steps + 1, max_steps + 1):
            lr = scheduler.step()
            progress = (step - warmup_steps) / (max_steps - warmup_steps)
            expected_lr = min_lr + (1e-3 - min_lr) * 0.5 * (1 + math.cos(math.pi * progress))
            assert abs(lr - expected_lr) < 1e-12, \
                f"Annealing LR mismatch at step {step}: {lr} vs {expected_lr}"

    def test_optimizer_lr_updated(self):
        """Every parameter group receives the scheduled LR."""
        params = [Variable.parameter(from_array_persistent([1.0])) for _ in range(2)]
        optimizer = SGD([{"params": [params[0]]}, {"params": [params[1]]}], lr=0.1)
        scheduler = CosineAnnealingScheduler(optimizer, warmup_steps=5, max_steps=100)

        for _ in range(10):
            scheduler.step()

        for group in optimizer.param_groups:
            assert abs(group["lr"] - scheduler.get_lr()) < 1e-15

    def test_groups_anneal_from_their_own_peaks(self):
        """Groups with different LRs keep their ratio through warmup and annealing."""
        params = [Variable.parameter(from_array_persistent([1.0])) for _ in range(2)]
        optimizer = SGD(
            [{"params": [params[0]], "lr": 0.1}, {"params": [params[1]], "lr": 0.01}],
            lr=0.1,
        )
        scheduler = CosineAnnealingScheduler(optimizer, warmup_steps=4, max_steps=20)
        assert scheduler.base_lrs == [0.1, 0.01]

        scheduler.step()
        assert optimizer.param_groups[0]["lr"] == pytest.approx(0.025)
        assert optimizer.param_groups[1]["lr"] == pytest.approx(0.0025)

        for _ in range(7):
            scheduler.step()
        fast, slow = (group["lr"] for group in optimizer.param_groups)
        assert fast == pytest.approx(10.0 * slow)
        assert scheduler.get_lrs() == pytest.approx([fast, slow])

        for _ in range(20):
            scheduler.step()
        assert [group["lr"] for group in optimizer.param_groups] == pytest.approx([0.0, 0.0])

    def test_state_dict_group_count_mismatch(self):
        scheduler = CosineAnnealingScheduler(_optimizer(), warmup_steps=0, max_steps=10)
        with pytest.raises(ValueError):
            scheduler.load_state_dict({"current_step": 3, "base_lrs": [1e-3, 1e-4]})

    def test_min_lr_reached(self):
        """LR reaches min_lr at max_steps and stays there."""
        scheduler = CosineAnnealingScheduler(_optimizer(), warmup_steps=10, max_steps=100, min_lr=1e-5)
        for _ in range(120):
            scheduler.step()
        assert abs(scheduler.get_lr() - 1e-5) < 1e-12

    def test_base_lr_stable_after_optimizer_changes(self):
        optimizer = _optimizer(1e-3)
        scheduler = CosineAnnealingScheduler(optimizer, warmup_steps=0, max_steps=10)
        optimizer.lr = 5.0
        assert scheduler.get_lr() == pytest.approx(1e-3)

    def test_state_dict(self):
        """State dict save/load preserves step count and optimizer LR."""
        optimizer = _optimizer()
        scheduler = CosineAnnealingScheduler(optimizer, warmup_steps=5, max_steps=100)
        for _ in range(10):
            scheduler.step()

        state = scheduler.state_dict()
        assert state["current_step"] == 10
        assert state["base_lrs"] == [1e-3]

        fresh_optimizer = _optimizer()
        restored = CosineAnnealingScheduler(fresh_optimizer, warmup_steps=5, max_steps=100)
        restored.load_state_dict(state)

        assert restored.current_step == 10
        assert abs(restored.get_lr() - scheduler.get_lr()) < 1e-15
        assert abs(fresh_optimizer.lr - optimizer.lr) < 1e-15

    def test_single_step_warmup(self):
        scheduler = CosineAnnealingScheduler(_optimizer(), warmup_steps=1, max_steps=100)
        assert scheduler.step() == 1e-3
        assert scheduler.step() < 1e-3

    @pytest.mark.parametrize(
        "warmup,max_steps,min_lr",
        [(-1, 10, 0.0), (0, 0, 0.0), (10, 10, 0.0), (0, 10, -1.0)],
    )
    def test_invalid_arguments(self, warmup, max_steps, min_lr):
        with pytest.raises(ValueError):
            CosineAnnealingScheduler(_optimizer(), warmup, max_steps, min_lr)

"""
Unit tests for the checkpoint policy.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lora_engine.checkpoint import Checkpoint, CheckpointPolicy


class TestCheckpointPolicy:
    @pytest.mark.parametrize("epochs, interval", [(1, 1), (3, 1), (5, 1), (6, 2), (10, 2), (11, 3)])
    def test_epoch_interval(self, epochs, interval):
        assert CheckpointPolicy("out", epochs, 500).epoch_interval == interval

    def test_step_checkpoints(self):
        policy = CheckpointPolicy("out", 1, 3)
        due = [s for s in range(0, 10) if policy.after_step(s) is not None]
        assert due == [3, 6, 9]
        assert policy.after_step(6) == Checkpoint("step", os.path.join("out", "checkpoint-step-6.pt"))

    def test_best_comes_first(self):
        policy = CheckpointPolicy("out", 3, 500)
        due = policy.after_epoch(2, 0.5, 0.7)
        assert [c.kind for c in due] == ["best", "periodic"]
        assert due[0].path == os.path.join("out", "best_adapter_epoch_2.pt")
        assert due[1].path == os.path.join("out", "checkpoint_epoch_2.pt")

    def test_no_best_when_loss_not_lower(self):
        policy = CheckpointPolicy("out", 3, 500)
        assert [c.kind for c in policy.after_epoch(1, 0.7, 0.7)] == ["periodic"]

    def test_periodic_cadence(self):
        policy = CheckpointPolicy("out", 10, 500)
        periodic = [e for e in range(1, 11)
                    if any(c.kind == "periodic" for c in policy.after_epoch(e, 1.0, 0.0))]
        assert periodic == [2, 4, 6, 8, 10]

    def test_first_epoch_is_always_best(self):
        due = CheckpointPolicy("out", 10, 500).after_epoch(1, 3.2, float("inf"))
        assert [c.kind for c in due] == ["best"]

    def test_final(self):
        final = CheckpointPolicy("runs/a", 1, 1, extension=".bin").final()
        assert final == Checkpoint("final", os.path.join("runs/a", "final_adapter.bin"))

    def test_nan_loss_is_never_best(self):
        due = CheckpointPolicy("out", 1, 500).after_epoch(1, float("nan"), float("inf"))
        assert [c.kind for c in due] == ["periodic"]

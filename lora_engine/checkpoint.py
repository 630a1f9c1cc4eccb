"""
When to persist adapter state.

The policy only names checkpoints; writing them is left to the adapter writer
the orchestrator was built with. Four triggers exist:

    best      epoch loss strictly below the best seen so far
    periodic  every ceil(epochs / 5) epochs
    step      every ``save_steps`` global steps
    final     once, at the end of ``train()``
"""

import math
import os
from dataclasses import dataclass
from typing import List, NamedTuple, Optional


class Checkpoint(NamedTuple):
    kind: str
    path: str


@dataclass(frozen=True)
class CheckpointPolicy:
    output_dir: str
    epochs: int
    save_steps: int
    extension: str = ".pt"

    @property
    def epoch_interval(self) -> int:
        return max(1, math.ceil(self.epochs / 5))

    def _path(self, stem: str) -> str:
        return os.path.join(self.output_dir, stem + self.extension)

    def after_step(self, global_step: int) -> Optional[Checkpoint]:
        if global_step > 0 and global_step % self.save_steps == 0:
            return Checkpoint("step", self._path(f"checkpoint-step-{global_step}"))
        return None

    def after_epoch(self, epoch: int, epoch_loss: float, best_loss: float) -> List[Checkpoint]:
        """
        ``epoch`` is 1-based. A ``best`` entry means ``epoch_loss`` is the new
        best; a NaN epoch loss (nothing measured) never is.
        """
        due = []
        if not math.isnan(epoch_loss) and epoch_loss < best_loss:
            due.append(Checkpoint("best", self._path(f"best_adapter_epoch_{epoch}")))
        if epoch % self.epoch_interval == 0:
            due.append(Checkpoint("periodic", self._path(f"checkpoint_epoch_{epoch}")))
        return due

    def final(self) -> Checkpoint:
        return Checkpoint("final", self._path("final_adapter"))

"""
Batch and epoch orchestration for LoRA training.

    TrainingOrchestrator.train(dataset)
        for epoch:   fresh permutation from the run's seeded generator
            for batch:   BatchTrainer.train_batch -> one Adam step per module
                         CheckpointPolicy.after_step
            CheckpointPolicy.after_epoch (best / periodic)
        final export

Run state (global step, best loss, modules) lives on a ``TrainingRun`` owned
by the orchestrator; nothing is process-global.
"""

import math
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import torch

from .checkpoint import CheckpointPolicy
from .dataset import TrainingExample
from .errors import ConfigError, TrainingStateError
from .lora import LoRAConfig, LoRAModule, TorchAdapterWriter, build_lora_modules, log_module_summary
from .loss import forward_backward, mean_loss
from .model import BaseModel
from .utils import ThroughputMeter, logger


@dataclass(frozen=True)
class TrainingConfig:
    epochs: int = 3
    batch_size: int = 4
    learning_rate: float = 2e-4
    weight_decay: float = 0.01
    warmup_steps: int = 100
    save_steps: int = 500
    output_dir: str = "./lora_output"
    adam_beta1: float = 0.9
    adam_beta2: float = 0.999
    adam_eps: float = 1e-8
    log_interval: int = 100
    seed: int = 42

    def __post_init__(self):
        for name in ("epochs", "batch_size", "warmup_steps", "save_steps", "log_interval", "seed"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(name, f"must be an integer, got {value!r}")
        checks = (
            ("epochs", self.epochs >= 1, "must be >= 1"),
            ("batch_size", self.batch_size >= 1, "must be >= 1"),
            ("learning_rate", self.learning_rate > 0, "must be > 0"),
            ("weight_decay", self.weight_decay >= 0, "must be >= 0"),
            ("warmup_steps", self.warmup_steps >= 0, "must be >= 0"),
            ("save_steps", self.save_steps >= 1, "must be >= 1"),
            ("adam_beta1", 0 <= self.adam_beta1 < 1, "must be in [0, 1)"),
            ("adam_beta2", 0 <= self.adam_beta2 < 1, "must be in [0, 1)"),
            ("adam_eps", self.adam_eps > 0, "must be > 0"),
            ("log_interval", self.log_interval >= 1, "must be >= 1"),
        )
        for name, ok, message in checks:
            if not ok:
                raise ConfigError(name, f"{message}, got {getattr(self, name)!r}")
        if not self.output_dir:
            raise ConfigError("output_dir", "must be a non-empty path")

    @classmethod
    def from_dict(cls, cfg: Mapping, **overrides) -> "TrainingConfig":
        """Build from a YAML ``training`` section (``lr`` is accepted for ``learning_rate``)."""
        names = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in cfg.items() if k in names}
        if "lr" in cfg and "learning_rate" not in kwargs:
            kwargs["learning_rate"] = cfg["lr"]
        kwargs.update(overrides)
        return cls(**kwargs)


def warmup_lr(base_lr: float, step: int, warmup_steps: int) -> float:
    """Linear warmup over the first ``warmup_steps`` (1-based) steps, then constant."""
    if warmup_steps <= 0:
        return base_lr
    return base_lr * min(1.0, step / warmup_steps)


@dataclass
class TrainingRun:
    modules: Dict[str, LoRAModule]
    global_step: int = 0
    best_loss: float = math.inf
    epoch_losses: List[float] = field(default_factory=list)
    validation_losses: List[float] = field(default_factory=list)
    checkpoints: List[str] = field(default_factory=list)
    status: str = "idle"


@dataclass
class TrainingResult:
    global_step: int
    best_loss: float
    epoch_losses: List[float]
    validation_losses: List[float]
    final_adapter_path: str
    checkpoints: List[str]
    duration_seconds: float


class BatchTrainer:
    """Accumulates gradients over a batch, then applies one optimizer step."""

    def __init__(
        self,
        model: BaseModel,
        lora_config: LoRAConfig,
        training_config: TrainingConfig,
        generator: Optional[torch.Generator] = None,
    ):
        self.model = model
        self.lora_config = lora_config
        self.training_config = training_config
        self.generator = generator
        self.last_contributing = 0

    def train_batch(self, batch: Sequence[TrainingExample], run: TrainingRun) -> float:
        """Mean loss over examples with at least one target position."""
        lc, tc = self.lora_config, self.training_config
        losses = []
        skipped = 0
        for example in batch:
            if example.skipped:
                skipped += 1
                continue
            loss, n_positions = forward_backward(
                example, self.model, run.modules, lc.alpha,
                dropout=lc.dropout, training=True, generator=self.generator,
                max_sequence_length=lc.max_sequence_length, accumulate=True,
            )
            if n_positions == 0:
                skipped += 1
                continue
            losses.append(loss)
        if skipped:
            logger.debug("Skipped %d example(s) without target positions", skipped)

        step = run.global_step + 1
        lr = warmup_lr(tc.learning_rate, step, tc.warmup_steps)
        grad_scale = 1.0 / len(losses) if losses else 1.0
        for module in run.modules.values():
            module.update_weights(
                lr, tc.adam_beta1, tc.adam_beta2, tc.adam_eps,
                step=step, weight_decay=tc.weight_decay, grad_scale=grad_scale,
            )

        self.last_contributing = len(losses)
        return sum(losses) / len(losses) if losses else 0.0


class TrainingOrchestrator:
    """
    Runs one LoRA training job against a frozen base model.

    A run is single use: once ``train()`` finished or failed, call ``reset()``
    (which rebuilds the adapters from the seed) before training again.
    """

    def __init__(
        self,
        model: BaseModel,
        lora_config: LoRAConfig,
        training_config: TrainingConfig,
        writer=None,
        metrics_fn: Optional[Callable[[dict, int], None]] = None,
        device: Optional[str] = None,
        verbose: bool = False,
        base_parameters: int = 0,
    ):
        self.model = model
        self.base_parameters = base_parameters
        self.lora_config = lora_config
        self.training_config = training_config
        self.writer = writer or TorchAdapterWriter()
        self.metrics_fn = metrics_fn
        self.device = device
        self.verbose = verbose
        self.generator = torch.Generator()
        self.policy = CheckpointPolicy(
            training_config.output_dir, training_config.epochs, training_config.save_steps
        )
        self.reset()

    def reset(self):
        """Fresh adapters, zero step counter, best loss back to +inf."""
        self.generator.manual_seed(self.training_config.seed)
        modules = build_lora_modules(
            self.lora_config, self.model.num_layers, self.model.hidden_size,
            generator=self.generator, device=self.device,
        )
        self.run = TrainingRun(modules=modules)
        self.batch_trainer = BatchTrainer(
            self.model, self.lora_config, self.training_config, generator=self.generator
        )

    @property
    def modules(self) -> Dict[str, LoRAModule]:
        return self.run.modules

    @property
    def global_step(self) -> int:
        return self.run.global_step

    def export(self, path: str) -> str:
        self.writer.save(path, self.run.modules, self.lora_config.alpha)
        self.run.checkpoints.append(path)
        return path

    def evaluate(self, examples: Sequence[TrainingExample]) -> float:
        """Mean loss without dropout or gradient accumulation."""
        return mean_loss(
            examples, self.model, self.run.modules, self.lora_config.alpha,
            max_sequence_length=self.lora_config.max_sequence_length,
        )

    def _log_metrics(self, metrics: dict, step: int):
        if self.metrics_fn is not None:
            self.metrics_fn(metrics, step)

    def train(
        self,
        dataset: Sequence[TrainingExample],
        validation: Optional[Sequence[TrainingExample]] = None,
    ) -> TrainingResult:
        if self.run.status != "idle":
            raise TrainingStateError(self.run.status)
        if not dataset:
            raise ConfigError("dataset", "must contain at least one example")

        tc, lc = self.training_config, self.lora_config
        os.makedirs(tc.output_dir, exist_ok=True)

        logger.info("Starting LoRA training...")
        logger.info("Dataset size: %d examples", len(dataset))
        logger.info(
            "Training config: %d epochs, batch size %d, LR %.6g",
            tc.epochs, tc.batch_size, tc.learning_rate,
        )
        logger.info(
            "LoRA config: rank %d, alpha %.2f, dropout %.2f", lc.rank, lc.alpha, lc.dropout
        )
        log_module_summary(self.run.modules, base_parameters=self.base_parameters, verbose=self.verbose)

        run = self.run
        run.status = "running"
        start = time.time()
        epoch = 0
        try:
            for epoch in range(1, tc.epochs + 1):
                epoch_start = time.time()
                logger.info("=== Training epoch %d/%d ===", epoch, tc.epochs)

                epoch_loss = self._train_epoch(dataset)
                run.epoch_losses.append(epoch_loss)
                logger.info(
                    "Epoch %d completed: loss %.6f, time %.2fs",
                    epoch, epoch_loss, time.time() - epoch_start,
                )
                metrics = {"epoch": epoch, "epoch_loss": epoch_loss}

                if validation:
                    val_loss = self.evaluate(validation)
                    run.validation_losses.append(val_loss)
                    metrics["validation_loss"] = val_loss
                    logger.info("Epoch %d validation loss: %.6f", epoch, val_loss)
                self._log_metrics(metrics, run.global_step)

                for ckpt in self.policy.after_epoch(epoch, epoch_loss, run.best_loss):
                    if ckpt.kind == "best":
                        run.best_loss = epoch_loss
                        logger.info("New best loss: %.6f - saving checkpoint", epoch_loss)
                    self.export(ckpt.path)

            final_path = self.export(self.policy.final().path)
        except Exception:
            run.status = "failed"
            logger.exception("Training aborted in epoch %d at step %d", epoch, run.global_step)
            raise

        run.status = "done"
        duration = time.time() - start
        logger.info("=== Training Summary ===")
        logger.info("Total training time: %.2f seconds", duration)
        logger.info("Best loss: %.6f", run.best_loss)
        logger.info("Total steps: %d", run.global_step)
        if run.global_step:
            logger.info("Average time per step: %.2f ms", 1000.0 * duration / run.global_step)

        return TrainingResult(
            global_step=run.global_step,
            best_loss=run.best_loss,
            epoch_losses=list(run.epoch_losses),
            validation_losses=list(run.validation_losses),
            final_adapter_path=final_path,
            checkpoints=list(run.checkpoints),
            duration_seconds=duration,
        )

    def _train_epoch(self, dataset: Sequence[TrainingExample]) -> float:
        tc, run = self.training_config, self.run
        order = torch.randperm(len(dataset), generator=self.generator).tolist()
        shuffled = [dataset[i] for i in order]

        total_loss = 0.0
        num_batches = 0
        meter = ThroughputMeter()
        for i in range(0, len(shuffled), tc.batch_size):
            batch = shuffled[i:i + tc.batch_size]
            t0 = time.time()
            batch_loss = self.batch_trainer.train_batch(batch, run)
            meter.update(len(batch), time.time() - t0)
            run.global_step += 1

            if self.batch_trainer.last_contributing:
                total_loss += batch_loss
                num_batches += 1

            if run.global_step % tc.log_interval == 0:
                lr = warmup_lr(tc.learning_rate, run.global_step, tc.warmup_steps)
                logger.info(
                    "[step %d] loss=%.4f lr=%.6g examples/sec~%.1f",
                    run.global_step, batch_loss, lr, meter.avg_per_sec(),
                )
                self._log_metrics(
                    {"step": run.global_step, "loss": batch_loss, "lr": lr,
                     "examples/sec": meter.avg_per_sec()},
                    run.global_step,
                )

            ckpt = self.policy.after_step(run.global_step)
            if ckpt is not None:
                self.export(ckpt.path)

        if not num_batches:
            logger.warning("No example in this epoch had a target position; epoch loss is undefined")
            return math.nan
        return total_loss / num_batches

"""
LoRA (Low-Rank Adaptation) Modules with Hand-Written Gradients
===============================================================

This module implements the adapter side of LoRA training:
- LoRAConfig: validated, immutable adapter configuration
- LoRAModule: A/B matrices, gradient accumulators and Adam state
- build_lora_modules: one module per targeted tensor per layer
- Adapter export/import (``<tensor>.lora_a`` / ``<tensor>.lora_b``)

LoRA Paper: https://arxiv.org/abs/2106.09685

Key Insight:
------------
Instead of fine-tuning W (d×k), we learn:
    W' = W + α·BA
where B (d×r) and A (r×k), with r << min(d,k)

The base model is never differentiated. Gradients for A and B are derived
by hand from an upstream gradient on the module output, so nothing here
relies on autograd.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple

import torch
import torch.nn as nn

from .errors import ConfigError
from .utils import logger

MAX_RANK = 512

# Common projection names -> GGML-style tensor names
MODULE_NAME_MAPPING = {
    "q_proj": "attn_q",
    "k_proj": "attn_k",
    "v_proj": "attn_v",
    "o_proj": "attn_output",
}


@dataclass(frozen=True)
class LoRAConfig:
    """Configuration for LoRA adaptation."""
    rank: int = 16                                  # Rank of low-rank matrices
    alpha: float = 32.0                             # Scaling factor
    dropout: float = 0.1                            # Inverted dropout on adapter input
    target_modules: Tuple[str, ...] = ("q_proj", "k_proj", "v_proj", "o_proj")
    max_sequence_length: int = 2048

    def __post_init__(self):
        if isinstance(self.rank, bool) or not isinstance(self.rank, int):
            raise ConfigError("rank", f"must be an integer, got {self.rank!r}")
        if not 1 <= self.rank <= MAX_RANK:
            raise ConfigError("rank", f"must be in [1, {MAX_RANK}], got {self.rank}")
        if not self.alpha > 0:
            raise ConfigError("alpha", f"must be > 0, got {self.alpha}")
        if not 0.0 <= self.dropout < 1.0:
            raise ConfigError("dropout", f"must be in [0, 1), got {self.dropout}")
        if isinstance(self.target_modules, str):
            raise ConfigError("target_modules", "must be a sequence of names, not a string")
        # ordered set: drop duplicates, keep first occurrence
        targets = tuple(dict.fromkeys(self.target_modules or ()))
        if not targets:
            raise ConfigError("target_modules", "must name at least one module")
        object.__setattr__(self, "target_modules", targets)
        if isinstance(self.max_sequence_length, bool) or not isinstance(self.max_sequence_length, int):
            raise ConfigError(
                "max_sequence_length", f"must be an integer, got {self.max_sequence_length!r}"
            )
        if self.max_sequence_length < 2:
            raise ConfigError(
                "max_sequence_length", f"must be >= 2, got {self.max_sequence_length}"
            )

    @classmethod
    def from_dict(cls, cfg: Mapping) -> "LoRAConfig":
        """Build from a YAML ``lora`` section; unknown keys are ignored."""
        known = {
            "rank": "rank", "r": "rank",
            "alpha": "alpha",
            "dropout": "dropout",
            "target_modules": "target_modules",
            "max_sequence_length": "max_sequence_length",
        }
        kwargs = {known[k]: v for k, v in cfg.items() if k in known}
        if "target_modules" in kwargs and kwargs["target_modules"] is not None:
            kwargs["target_modules"] = tuple(kwargs["target_modules"])
        return cls(**kwargs)


class LoRAModule(nn.Module):
    """
    Low-rank adapter for one tensor of the base model.

    Architecture:
    -------------
        Input x (in_dim)
              │
           Dropout (training only, inverted)
              │
        A: (r, in_dim)      a_out = A·x
              │
        B: (out_dim, r)     B·a_out
              │
           × alpha
              │
              ▼
        delta (out_dim)

    B is zero at construction, so the adapter contributes nothing until the
    first optimizer step. All tensors are buffers: the module is updated by
    ``backward`` + ``update_weights``, never by ``torch.autograd``.
    """

    def __init__(
        self,
        name: str,
        input_dim: int,
        output_dim: int,
        rank: int,
        generator: Optional[torch.Generator] = None,
        dtype: torch.dtype = torch.float32,
    ):
        super().__init__()
        self.name = name
        self.input_dim = input_dim
        self.output_dim = output_dim
        self.rank = rank
        self.update_step = 0

        std = math.sqrt(1.0 / rank)
        self.register_buffer(
            "lora_A", torch.randn(rank, input_dim, generator=generator, dtype=dtype) * std
        )
        self.register_buffer("lora_B", torch.zeros(output_dim, rank, dtype=dtype))

        self.register_buffer("grad_A", torch.zeros_like(self.lora_A))
        self.register_buffer("grad_B", torch.zeros_like(self.lora_B))

        # Adam moments persist for the module's lifetime
        self.register_buffer("exp_avg_A", torch.zeros_like(self.lora_A))
        self.register_buffer("exp_avg_sq_A", torch.zeros_like(self.lora_A))
        self.register_buffer("exp_avg_B", torch.zeros_like(self.lora_B))
        self.register_buffer("exp_avg_sq_B", torch.zeros_like(self.lora_B))

    @staticmethod
    def dropout(
        x: torch.Tensor, rate: float, generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Inverted dropout: zero with probability ``rate``, rescale survivors."""
        if rate <= 0.0:
            return x
        keep = torch.rand(x.shape, generator=generator) >= rate
        return x * keep.to(device=x.device, dtype=x.dtype) / (1.0 - rate)

    @torch.no_grad()
    def forward(
        self,
        x: torch.Tensor,
        alpha: float,
        training: bool = False,
        dropout_rate: float = 0.0,
        generator: Optional[torch.Generator] = None,
    ) -> torch.Tensor:
        """Return ``alpha * B @ (A @ dropout(x))``."""
        if training and dropout_rate > 0:
            x = self.dropout(x, dropout_rate, generator)
        a_out = self.lora_A @ x
        return alpha * (self.lora_B @ a_out)

    @torch.no_grad()
    def backward(self, input_activation: torch.Tensor, output_grad: torch.Tensor, alpha: float):
        """
        Accumulate dL/dA and dL/dB for ``delta = alpha * B A x``.

            dL/dB = alpha * g ⊗ (A x)
            dL/dA = alpha * (Bᵀ g) ⊗ x
        """
        a_out = self.lora_A @ input_activation
        b_t_grad = self.lora_B.t() @ output_grad
        self.grad_B.add_(torch.outer(output_grad, a_out), alpha=alpha)
        self.grad_A.add_(torch.outer(b_t_grad, input_activation), alpha=alpha)

    @torch.no_grad()
    def update_weights(
        self,
        learning_rate: float,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-8,
        step: Optional[int] = None,
        weight_decay: float = 0.0,
        grad_scale: float = 1.0,
    ):
        """
        One Adam step over A and B using the accumulated gradients.

        ``step`` is the 1-based bias-correction step; when omitted the module's
        own counter is used. Gradients are zeroed afterwards.
        """
        t = self.update_step + 1 if step is None else step
        if t < 1:
            raise ValueError(f"Adam step must be >= 1, got {t}")
        self.update_step += 1

        bias_correction1 = 1 - beta1 ** t
        bias_correction2 = 1 - beta2 ** t
        step_size = learning_rate * math.sqrt(bias_correction2) / bias_correction1

        for param, grad, exp_avg, exp_avg_sq in (
            (self.lora_A, self.grad_A, self.exp_avg_A, self.exp_avg_sq_A),
            (self.lora_B, self.grad_B, self.exp_avg_B, self.exp_avg_sq_B),
        ):
            if grad_scale != 1.0:
                grad.mul_(grad_scale)
            if weight_decay:
                param.mul_(1 - learning_rate * weight_decay)
            exp_avg.mul_(beta1).add_(grad, alpha=1 - beta1)
            exp_avg_sq.mul_(beta2).addcmul_(grad, grad, value=1 - beta2)
            param.addcdiv_(exp_avg, exp_avg_sq.sqrt().add_(epsilon), value=-step_size)

        self.zero_grad()

    def zero_grad(self, set_to_none: bool = False):
        self.grad_A.zero_()
        self.grad_B.zero_()

    def num_parameters(self) -> int:
        return self.lora_A.numel() + self.lora_B.numel()

    def extra_repr(self) -> str:
        return (
            f"name={self.name}, input_dim={self.input_dim}, output_dim={self.output_dim}, "
            f"rank={self.rank}, update_step={self.update_step}"
        )


def tensor_names(target_modules: Iterable[str], num_layers: int):
    """Yield ``blk.{layer}.{tensor}.weight`` for every target and layer."""
    for target in target_modules:
        base = MODULE_NAME_MAPPING.get(target, target)
        for layer in range(num_layers):
            yield layer, f"blk.{layer}.{base}.weight"


def layer_of(name: str) -> int:
    """Layer index encoded in a ``blk.{N}.…`` tensor name."""
    parts = name.split(".")
    if len(parts) < 2 or parts[0] != "blk" or not parts[1].isdigit():
        raise ValueError(f"Not a per-layer tensor name: {name}")
    return int(parts[1])


def build_lora_modules(
    config: LoRAConfig,
    num_layers: int,
    hidden_size: int,
    generator: Optional[torch.Generator] = None,
    device: Optional[torch.device] = None,
) -> Dict[str, LoRAModule]:
    """
    Create one LoRAModule per targeted tensor per layer.

    Attention projections share the model dimension, so every module is
    hidden_size × hidden_size. Keys are returned in sorted order so iteration
    (and therefore RNG consumption) is stable across runs.
    """
    if num_layers < 1 or hidden_size < 1:
        raise ValueError(f"Invalid model shape: layers={num_layers}, hidden={hidden_size}")

    names = sorted(name for _, name in tensor_names(config.target_modules, num_layers))
    modules = {}
    for name in names:
        module = LoRAModule(name, hidden_size, hidden_size, config.rank, generator=generator)
        if device is not None:
            module.to(device)
        modules[name] = module

    logger.info(
        "Created %d LoRA modules with rank %d across %d layers",
        len(modules), config.rank, num_layers,
    )
    return modules


def count_parameters(modules: Mapping[str, LoRAModule], base_parameters: int = 0) -> Dict[str, float]:
    """
    Count adapter parameters.

    Returns dict with:
        - lora: trainable adapter parameters
        - frozen: base model parameters (if known)
        - total: lora + frozen
        - trainable_percent
    """
    lora = sum(m.num_parameters() for m in modules.values())
    total = lora + base_parameters
    return {
        "total": total,
        "lora": lora,
        "frozen": base_parameters,
        "trainable_percent": 100.0 * lora / total if total > 0 else 0,
    }


def log_module_summary(modules: Mapping[str, LoRAModule], base_parameters: int = 0, verbose: bool = True):
    if not verbose:
        return
    stats = count_parameters(modules, base_parameters)
    names = list(modules)
    print(f"\n{'='*60}")
    print("LoRA Modules Initialized")
    print(f"{'='*60}")
    print(f"Adapted tensors: {len(names)}")
    for name in names[:10]:
        print(f"  - {name}")
    if len(names) > 10:
        print(f"  ... and {len(names) - 10} more")
    print(f"\nParameter Statistics:")
    print(f"  LoRA parameters:      {stats['lora']:,}")
    if base_parameters:
        print(f"  Frozen parameters:    {stats['frozen']:,}")
        print(f"  Trainable share:      {stats['trainable_percent']:.2f}%")
    print(f"{'='*60}\n")


# =============================================================================
# Adapter export
# =============================================================================

@dataclass
class TorchAdapterWriter:
    """Writes adapters as ``torch.save`` archives of A/B tensors plus metadata."""
    extra_metadata: Dict[str, object] = field(default_factory=dict)

    def save(self, path: str, modules: Mapping[str, LoRAModule], alpha: float) -> str:
        save_adapter(path, modules, alpha, self.extra_metadata)
        return path


def save_adapter(
    path: str,
    modules: Mapping[str, LoRAModule],
    alpha: float,
    metadata: Optional[Mapping[str, object]] = None,
):
    """Save only the adapter matrices (much smaller than the base model)."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    tensors = {}
    for name, module in modules.items():
        tensors[f"{name}.lora_a"] = module.lora_A.detach().cpu().clone()
        tensors[f"{name}.lora_b"] = module.lora_B.detach().cpu().clone()

    ranks = {m.rank for m in modules.values()}
    meta = {
        "adapter.type": "lora",
        "adapter.lora.alpha": float(alpha),
        "rank": ranks.pop() if len(ranks) == 1 else None,
    }
    meta.update(metadata or {})
    torch.save({"metadata": meta, "tensors": tensors}, path)

    size_mb = sum(t.numel() * t.element_size() for t in tensors.values()) / (1024 * 1024)
    logger.info("Saved LoRA adapter to %s (%.2f MB)", path, size_mb)


def load_adapter(path: str) -> Dict[str, dict]:
    """Load an adapter archive written by :func:`save_adapter`."""
    state = torch.load(path, map_location="cpu")
    if not isinstance(state, dict) or "tensors" not in state:
        raise ValueError(f"{path} is not a LoRA adapter archive")
    return state


def load_adapter_weights(modules: Mapping[str, LoRAModule], path: str):
    """Copy A/B matrices from an adapter archive into existing modules."""
    tensors = load_adapter(path)["tensors"]
    for name, module in modules.items():
        for suffix, buf in ((".lora_a", module.lora_A), (".lora_b", module.lora_B)):
            key = name + suffix
            if key not in tensors:
                logger.warning("%s not found in %s", key, path)
                continue
            buf.copy_(tensors[key])
    logger.info("Loaded LoRA adapter from %s", path)

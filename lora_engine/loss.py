"""
Cross-entropy over the target span, with adapter deltas injected into logits.

For each position ``p`` in the target span the base model supplies the logits
predicting token ``p + 1``. Every LoRA module contributes
``alpha * B A x_p`` (``x_p`` = activation of the module's layer at ``p``),
added onto the leading logits. The gradient ``softmax - onehot`` of that
adapted distribution is what drives ``LoRAModule.backward``.
"""

import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import torch

from .dataset import TrainingExample
from .lora import LoRAModule, layer_of
from .model import BaseModel

PROB_FLOOR = 1e-8


def softmax(logits: torch.Tensor) -> torch.Tensor:
    return torch.softmax(logits.float(), dim=-1)


def cross_entropy(logits: torch.Tensor, target_token: int) -> float:
    prob = softmax(logits)[target_token].item()
    return -math.log(max(prob, PROB_FLOOR))


def compute_logits_gradient(logits: torch.Tensor, target_token: int) -> torch.Tensor:
    """dL/dlogits for softmax cross-entropy: ``softmax(logits) - onehot(target)``."""
    grad = softmax(logits)
    grad[target_token] -= 1.0
    return grad


def target_positions(
    example: TrainingExample, model: BaseModel, max_sequence_length: Optional[int] = None
) -> Tuple[List[int], range]:
    """Tokens of ``input + target`` and the positions whose next token is a target token."""
    tokens = list(model.encode(example.full_text))
    if max_sequence_length is not None:
        tokens = tokens[:max_sequence_length]
    if len(tokens) < 2:
        return tokens, range(0)
    start = len(model.encode(example.input))
    return tokens, range(start, len(tokens) - 1)


def _add_prefix(logits: torch.Tensor, delta: torch.Tensor):
    n = min(logits.numel(), delta.numel())
    logits[:n] += delta[:n].to(logits)


def _module_grad(grad: torch.Tensor, module: LoRAModule) -> torch.Tensor:
    out = torch.zeros(module.output_dim, dtype=module.lora_B.dtype, device=module.lora_B.device)
    n = min(out.numel(), grad.numel())
    out[:n] = grad[:n].to(out)
    return out


def forward_backward(
    example: TrainingExample,
    model: BaseModel,
    modules: Mapping[str, LoRAModule],
    alpha: float,
    dropout: float = 0.0,
    training: bool = False,
    generator: Optional[torch.Generator] = None,
    max_sequence_length: Optional[int] = None,
    accumulate: bool = False,
) -> Tuple[float, int]:
    """
    Mean target-span loss of one example and the number of positions it covered.

    With ``accumulate=True`` the gradient of the example's mean loss (scaled by
    ``example.weight``) is added into every module's accumulators. The same
    dropped-out activation is used for forward and backward.
    """
    tokens, positions = target_positions(example, model, max_sequence_length)
    n_positions = len(positions)
    if n_positions == 0:
        return 0.0, 0

    use_dropout = training and dropout > 0
    total = 0.0
    for pos in positions:
        logits = model.logits_at(tokens, pos).float().clone()

        layer_acts: Dict[int, torch.Tensor] = {}
        inputs: Dict[str, torch.Tensor] = {}
        for name, module in modules.items():
            layer = layer_of(name)
            if layer not in layer_acts:
                layer_acts[layer] = model.activations_at(tokens, pos, layer)
            x = layer_acts[layer].to(module.lora_A)
            if use_dropout:
                x = module.dropout(x, dropout, generator)
            inputs[name] = x
            _add_prefix(logits, module(x, alpha))

        target_token = tokens[pos + 1]
        total += cross_entropy(logits, target_token)

        if accumulate:
            grad = compute_logits_gradient(logits, target_token)
            grad.mul_(example.weight / n_positions)
            for name, module in modules.items():
                module.backward(inputs[name], _module_grad(grad, module), alpha)

    return total / n_positions, n_positions


def compute_example_loss(
    example: TrainingExample,
    model: BaseModel,
    modules: Mapping[str, LoRAModule],
    alpha: float,
    dropout: float = 0.0,
    training: bool = False,
    generator: Optional[torch.Generator] = None,
    max_sequence_length: Optional[int] = None,
    accumulate: bool = False,
) -> float:
    """
    Mean cross-entropy over the target span; 0.0 when there is no target position.

    With ``accumulate=True`` the gradients are added into the modules as well
    (see :func:`forward_backward`).
    """
    loss, _ = forward_backward(
        example, model, modules, alpha,
        dropout=dropout, training=training, generator=generator,
        max_sequence_length=max_sequence_length, accumulate=accumulate,
    )
    return loss


def mean_loss(
    examples: Sequence[TrainingExample],
    model: BaseModel,
    modules: Mapping[str, LoRAModule],
    alpha: float,
    max_sequence_length: Optional[int] = None,
) -> float:
    """Average eval loss over examples with at least one target position."""
    losses = []
    for ex in examples:
        loss, n = forward_backward(ex, model, modules, alpha, max_sequence_length=max_sequence_length)
        if n:
            losses.append(loss)
    return sum(losses) / len(losses) if losses else float("inf")

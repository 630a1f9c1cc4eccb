"""
Base model collaborators.

The training engine never runs a transformer itself. It talks to a frozen
base model through the small ``BaseModel`` protocol below: tokenize text,
read logits at a position, and read the hidden activations feeding a layer.
``HFCausalLM`` implements the protocol on top of a Hugging Face causal LM.
"""

from collections import OrderedDict
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import torch

from .utils import logger


@runtime_checkable
class BaseModel(Protocol):
    """Frozen model the adapters are trained against. Must be deterministic."""

    vocab_size: int
    hidden_size: int
    num_layers: int

    def encode(self, text: str) -> List[int]:
        ...

    def logits_at(self, tokens: Sequence[int], position: int) -> torch.Tensor:
        ...

    def activations_at(self, tokens: Sequence[int], position: int, layer: int) -> torch.Tensor:
        ...


class HFCausalLM:
    """
    ``BaseModel`` backed by ``transformers.AutoModelForCausalLM``.

    A single no-grad forward is run per distinct token sequence and cached, so
    walking every target position of an example costs one model call.
    Activations for layer N are the hidden states entering block N.
    """

    def __init__(self, model, tokenizer, device: str = "cpu", cache_size: int = 8):
        self.model = model.eval()
        self.tokenizer = tokenizer
        self.device = device
        self.cache_size = cache_size
        self._cache: "OrderedDict[Tuple[int, ...], Tuple[torch.Tensor, Tuple[torch.Tensor, ...]]]" = OrderedDict()

        config = model.config
        self.vocab_size = config.vocab_size
        self.hidden_size = config.hidden_size
        self.num_layers = config.num_hidden_layers
        # None when the architecture has no fixed position table
        self.max_positions = getattr(config, "max_position_embeddings", None)

        for p in self.model.parameters():
            p.requires_grad = False

    @classmethod
    def from_pretrained(
        cls,
        name: str,
        tokenizer_name: Optional[str] = None,
        dtype: str = "fp32",
        device: Optional[str] = None,
    ) -> "HFCausalLM":
        from transformers import AutoModelForCausalLM, AutoTokenizer

        device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        dtype_map = {"bf16": torch.bfloat16, "fp16": torch.float16, "fp32": torch.float32}
        torch_dtype = dtype_map.get(dtype, torch.float32)

        tok = AutoTokenizer.from_pretrained(tokenizer_name or name)
        if tok.pad_token is None:
            tok.pad_token = tok.eos_token
        model = AutoModelForCausalLM.from_pretrained(name, torch_dtype=torch_dtype)
        model.to(device)
        logger.info("Loaded base model %s on %s (%s)", name, device, dtype)
        return cls(model, tok, device=device)

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.model.parameters())

    def encode(self, text: str) -> List[int]:
        return list(self.tokenizer.encode(text, add_special_tokens=False))

    @torch.no_grad()
    def _run(self, tokens: Sequence[int]):
        key = tuple(tokens)
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]

        input_ids = torch.tensor([key], dtype=torch.long, device=self.device)
        out = self.model(input_ids=input_ids, output_hidden_states=True)
        logits = out.logits[0].float().cpu()
        hidden = tuple(h[0].float().cpu() for h in out.hidden_states)

        self._cache[key] = (logits, hidden)
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return logits, hidden

    def logits_at(self, tokens: Sequence[int], position: int) -> torch.Tensor:
        logits, _ = self._run(tokens)
        return logits[position]

    def activations_at(self, tokens: Sequence[int], position: int, layer: int) -> torch.Tensor:
        _, hidden = self._run(tokens)
        # hidden_states[0] is the embedding output, i.e. the input to block 0
        return hidden[layer][position]

"""
Tests for the base model protocol and the Hugging Face collaborator.

The HFCausalLM test downloads a model, so it only runs when
LORA_ENGINE_HF_MODEL names one (e.g. ``sshleifer/tiny-gpt2``).
"""

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeModel
from lora_engine.model import BaseModel, HFCausalLM

HF_MODEL = os.environ.get("LORA_ENGINE_HF_MODEL")


def test_fake_model_satisfies_protocol():
    assert isinstance(FakeModel(), BaseModel)


def test_object_without_activations_is_not_a_base_model():
    class LogitsOnly:
        vocab_size = hidden_size = num_layers = 1

        def encode(self, text):
            return []

        def logits_at(self, tokens, position):
            return torch.zeros(1)

    assert not isinstance(LogitsOnly(), BaseModel)


@pytest.mark.skipif(not HF_MODEL, reason="set LORA_ENGINE_HF_MODEL to run")
def test_hf_causal_lm_shapes():
    base = HFCausalLM.from_pretrained(HF_MODEL, device="cpu")
    tokens = base.encode("Hello there, general")
    assert len(tokens) > 1
    assert base.max_positions is None or base.max_positions >= len(tokens)
    assert base.num_parameters() > 0

    logits = base.logits_at(tokens, 0)
    assert logits.shape == (base.vocab_size,)
    for layer in range(base.num_layers):
        assert base.activations_at(tokens, 1, layer).shape == (base.hidden_size,)

    # same sequence is served from the cache
    assert len(base._cache) == 1
    assert torch.equal(base.logits_at(tokens, 0), logits)

"""
Pytest fixtures for lora-engine tests.
"""

import os
import sys

import pytest
import torch

# Add repo root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lora_engine.dataset import TrainingExample, completion_format
from lora_engine.lora import LoRAConfig
from lora_engine.trainer import TrainingConfig


class FakeModel:
    """
    Deterministic stand-in for a base model.

    Characters are tokens (``ord(c) % vocab_size``). Layer activations are a
    fixed tanh MLP over a seeded embedding table, and logits are a seeded
    projection of the last layer's activation.
    """

    def __init__(self, vocab_size=48, hidden_size=16, num_layers=2, seed=0, max_positions=None):
        g = torch.Generator().manual_seed(seed)
        self.vocab_size = vocab_size
        self.hidden_size = hidden_size
        self.num_layers = num_layers
        self.max_positions = max_positions
        self.embed = torch.randn(vocab_size, hidden_size, generator=g)
        self.proj = torch.randn(num_layers, hidden_size, hidden_size, generator=g) * 0.3
        self.unembed = torch.randn(hidden_size, vocab_size, generator=g) * 0.1
        self.logit_calls = 0

    def num_parameters(self):
        return self.embed.numel() + self.proj.numel() + self.unembed.numel()

    def encode(self, text):
        return [ord(c) % self.vocab_size for c in text]

    def activations_at(self, tokens, position, layer):
        h = self.embed[tokens[position]]
        for l in range(layer):
            h = torch.tanh(self.proj[l] @ h)
        return h

    def logits_at(self, tokens, position):
        self.logit_calls += 1
        return self.activations_at(tokens, position, self.num_layers) @ self.unembed


class FailingModel(FakeModel):
    """Raises from the logits call after ``fail_after`` successful calls."""

    def __init__(self, fail_after=0, **kwargs):
        super().__init__(**kwargs)
        self.fail_after = fail_after

    def logits_at(self, tokens, position):
        if self.logit_calls >= self.fail_after:
            raise RuntimeError("native backend failure")
        return super().logits_at(tokens, position)


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def lora_config():
    """Small adapter, no dropout so runs are deterministic."""
    return LoRAConfig(rank=4, alpha=8.0, dropout=0.0, target_modules=("q_proj",), max_sequence_length=256)


@pytest.fixture
def training_config(tmp_path):
    return TrainingConfig(
        epochs=1,
        batch_size=1,
        learning_rate=1e-3,
        weight_decay=0.0,
        warmup_steps=0,
        save_steps=1000,
        output_dir=str(tmp_path / "lora_out"),
        log_interval=1,
        seed=1234,
    )


@pytest.fixture
def greeting_examples():
    return [
        completion_format("Hello", "Hi there!"),
        completion_format("Goodbye", "See you later!"),
    ]


@pytest.fixture
def sample_examples():
    """Sample prompt/target pairs for testing."""
    pairs = [
        ("The quick brown fox ", "jumps over the lazy dog."),
        ("Machine learning is ", "transforming the world."),
        ("Python is a ", "versatile programming language."),
        ("Neural networks ", "learn patterns from data."),
        ("The transformer ", "architecture revolutionized NLP."),
        ("Deep learning requires ", "large amounts of data."),
        ("Gradient descent ", "optimizes model parameters."),
        ("Attention mechanisms ", "capture long-range dependencies."),
        ("Low-rank adapters ", "are small."),
        ("Adam keeps ", "two moment estimates."),
    ]
    return [TrainingExample(i, t) for i, t in pairs]

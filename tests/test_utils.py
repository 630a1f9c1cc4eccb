"""
Tests for config helpers, logging setup and the training CLI.
"""

import logging
import os
import sys

import pytest
import yaml

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeModel
from lora_engine import train as train_cli
from lora_engine.errors import ConfigError
from lora_engine.lora import LoRAConfig, load_adapter
from lora_engine.utils import AttrDict, ThroughputMeter, init_logger, load_config, override_from_kv


class TestConfig:
    def test_load_config(self, tmp_path):
        path = tmp_path / "cfg.yaml"
        path.write_text("seed: 3\nlora:\n  rank: 8\n", encoding="utf-8")
        cfg = load_config(str(path))
        assert cfg.seed == 3
        assert cfg["lora"]["rank"] == 8
        assert cfg.missing is None

    def test_empty_config(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(str(path)) == {}

    def test_overrides(self):
        cfg = AttrDict({"training": {"epochs": 3}})
        override_from_kv(cfg, [
            "training.epochs=1",
            "training.lr=1e-3",
            "lora.target_modules=q_proj,v_proj",
            "logging.wandb.enabled=false",
            "model.name=gpt2",
            "model.tokenizer_name=null",
            "no_equals_sign",
        ])
        assert cfg["training"] == {"epochs": 1, "lr": 1e-3}
        assert cfg["lora"]["target_modules"] == ["q_proj", "v_proj"]
        assert cfg["logging"]["wandb"]["enabled"] is False
        assert cfg["model"] == {"name": "gpt2", "tokenizer_name": None}
        assert "no_equals_sign" not in cfg


class TestLogging:
    def test_init_logger_is_idempotent(self):
        log = init_logger("DEBUG")
        n = len(log.handlers)
        assert init_logger("INFO") is log
        assert len(log.handlers) == n
        assert log.level == logging.INFO


class TestThroughputMeter:
    def test_average(self):
        meter = ThroughputMeter(window=2)
        assert meter.avg_per_sec() == 0.0
        meter.update(10, 1.0)
        meter.update(30, 1.0)
        meter.update(50, 1.0)
        assert meter.avg_per_sec() == pytest.approx(40.0)

    def test_ignores_zero_duration(self):
        meter = ThroughputMeter()
        meter.update(5, 0.0)
        assert meter.avg_per_sec() == 0.0


class TestTrainCLI:
    """Runs ``main`` end to end with the base model swapped for the fake one."""

    def _write_config(self, tmp_path, **training):
        data = tmp_path / "data.jsonl"
        data.write_text(
            "".join(f'{{"prompt": "Question {i}: ", "completion": "answer {i}."}}\n' for i in range(6)),
            encoding="utf-8",
        )
        cfg = {
            "seed": 11,
            "model": {"name": "fake", "device": "cpu"},
            "lora": {"r": 2, "alpha": 4.0, "dropout": 0.0, "target_modules": ["q_proj", "v_proj"]},
            "training": dict({"epochs": 2, "batch_size": 2, "lr": 1e-3, "warmup_steps": 0,
                              "output_dir": str(tmp_path / "out")}, **training),
            "data": {"format": "jsonl", "path": str(data), "validation_ratio": 0.34},
            "logging": {"wandb": {"enabled": False}},
        }
        path = tmp_path / "cfg.yaml"
        path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
        return str(path)

    @pytest.fixture(autouse=True)
    def fake_base(self, monkeypatch):
        monkeypatch.setattr(train_cli.HFCausalLM, "from_pretrained",
                            classmethod(lambda cls, *a, **kw: FakeModel()))

    def test_parse_args(self):
        args = train_cli.parse_args(["--config", "c.yaml", "training.epochs=1"])
        assert args.config == "c.yaml"
        assert args.log_level == "INFO"
        assert args.overrides == ["training.epochs=1"]

    def test_main_trains_and_exports(self, tmp_path):
        result = train_cli.main(["--config", self._write_config(tmp_path), "training.epochs=1"])

        # 6 examples, 2 held out, batch size 2
        assert result.global_step == 2
        assert len(result.validation_losses) == 1
        final = tmp_path / "out" / "final_adapter.pt"
        assert result.final_adapter_path == str(final)
        archive = load_adapter(str(final))
        assert archive["metadata"]["base_model"] == "fake"
        assert archive["metadata"]["rank"] == 2
        assert "blk.1.attn_v.weight.lora_b" in archive["tensors"]

    def test_fit_sequence_length_clamps_to_model_limit(self):
        cfg = LoRAConfig(max_sequence_length=2048)
        assert train_cli.fit_sequence_length(cfg, 1024).max_sequence_length == 1024
        assert train_cli.fit_sequence_length(cfg, 4096) is cfg
        assert train_cli.fit_sequence_length(cfg, None) is cfg

    def test_main_drops_examples_beyond_model_positions(self, tmp_path, monkeypatch):
        """With a 16-position base model every example longer than 16 tokens is filtered out."""
        monkeypatch.setattr(train_cli.HFCausalLM, "from_pretrained",
                            classmethod(lambda cls, *a, **kw: FakeModel(max_positions=16)))
        with pytest.raises(ConfigError) as exc:
            train_cli.main(["--config", self._write_config(tmp_path)])
        assert exc.value.field == "dataset"

    def test_main_prints_frozen_parameter_count(self, tmp_path, capsys):
        train_cli.main(["--config", self._write_config(tmp_path), "training.epochs=1"])
        assert f"Frozen parameters:    {FakeModel().num_parameters():,}" in capsys.readouterr().out

    def test_main_rejects_bad_config(self, tmp_path):
        with pytest.raises(ConfigError) as exc:
            train_cli.main(["--config", self._write_config(tmp_path), "training.batch_size=0"])
        assert exc.value.field == "batch_size"

import argparse, os
from dataclasses import replace

import torch
import wandb

from .dataset import filter_by_length, load_examples, train_validation_split
from .lora import LoRAConfig, TorchAdapterWriter
from .model import HFCausalLM
from .trainer import TrainingConfig, TrainingOrchestrator
from .utils import init_logger, load_config, logger, override_from_kv, set_seed


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Train a LoRA adapter against a frozen base model")
    ap.add_argument("--config", type=str, required=True)
    ap.add_argument("--log-level", type=str, default="INFO")
    ap.add_argument("overrides", nargs="*", help="dotted key=value overrides, e.g. training.epochs=1")
    return ap.parse_args(argv)


def maybe_wandb(cfg):
    wb_cfg = cfg.get("logging", {}).get("wandb", {})
    if wb_cfg.get("enabled", False) and not os.environ.get("WANDB_DISABLED"):
        wandb.init(
            project=wb_cfg.get("project", "lora-engine"),
            entity=wb_cfg.get("entity") or None,
            name=wb_cfg.get("run_name"),
            config=dict(cfg), resume="allow",
        )
        return True
    return False


def load_dataset_from_config(cfg_data: dict):
    fmt = cfg_data.get("format", "jsonl")
    kwargs = {}
    if fmt == "text":
        kwargs = {"chunk_size": cfg_data.get("chunk_size", 512), "overlap": cfg_data.get("overlap", 0)}
    return load_examples(cfg_data["path"], fmt, **kwargs)


def fit_sequence_length(lora_cfg: LoRAConfig, max_positions) -> LoRAConfig:
    """Clamp ``max_sequence_length`` to what the base model can embed."""
    if max_positions and lora_cfg.max_sequence_length > max_positions:
        logger.warning(
            "lora.max_sequence_length=%d exceeds the base model's %d positions; using %d",
            lora_cfg.max_sequence_length, max_positions, max_positions,
        )
        return replace(lora_cfg, max_sequence_length=max_positions)
    return lora_cfg


def main(argv=None):
    args = parse_args(argv)
    init_logger(args.log_level.upper())
    cfg = load_config(args.config); cfg = override_from_kv(cfg, args.overrides)
    seed = cfg.get("seed", 42)
    set_seed(seed)

    lora_cfg = LoRAConfig.from_dict(cfg.get("lora", {}))
    train_cfg = TrainingConfig.from_dict(cfg.get("training", {}), seed=seed)

    model_cfg = cfg["model"]
    device = model_cfg.get("device") or ("cuda" if torch.cuda.is_available() else "cpu")
    base = HFCausalLM.from_pretrained(
        model_cfg["name"], tokenizer_name=model_cfg.get("tokenizer_name"),
        dtype=model_cfg.get("dtype", "fp32"), device=device,
    )
    lora_cfg = fit_sequence_length(lora_cfg, getattr(base, "max_positions", None))

    cfg_data = cfg["data"]
    examples = load_dataset_from_config(cfg_data)
    examples = filter_by_length(examples, lora_cfg.max_sequence_length, encode=base.encode)
    validation = []
    ratio = cfg_data.get("validation_ratio", 0.0)
    if ratio:
        split = train_validation_split(examples, ratio, generator=torch.Generator().manual_seed(seed))
        examples, validation = split["train"], split["validation"]

    wb = maybe_wandb(cfg)
    trainer = TrainingOrchestrator(
        base, lora_cfg, train_cfg,
        writer=TorchAdapterWriter({"base_model": model_cfg["name"]}),
        metrics_fn=(lambda metrics, step: wandb.log(metrics, step=step)) if wb else None,
        verbose=True,
        base_parameters=base.num_parameters(),
    )
    try:
        result = trainer.train(examples, validation=validation or None)
    finally:
        if wb:
            wandb.finish()

    print(f"Training complete. {result.global_step} steps, best loss {result.best_loss:.4f}")
    print(f"Adapter written to {result.final_adapter_path}")
    return result


if __name__ == "__main__":
    main()

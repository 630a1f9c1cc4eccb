"""
lora-engine: LoRA adapter training against a frozen base language model.
"""

from .errors import ConfigError, TrainingStateError
from .lora import (
    LoRAConfig,
    LoRAModule,
    TorchAdapterWriter,
    build_lora_modules,
    count_parameters,
    load_adapter,
    load_adapter_weights,
    save_adapter,
)
from .loss import compute_example_loss, compute_logits_gradient
from .checkpoint import CheckpointPolicy
from .dataset import (
    TrainingExample,
    chat_format,
    completion_format,
    filter_by_length,
    instruction_format,
    load_examples,
    train_validation_split,
)
from .model import BaseModel, HFCausalLM
from .trainer import (
    BatchTrainer,
    TrainingConfig,
    TrainingOrchestrator,
    TrainingResult,
)
from .utils import (
    init_logger,
    load_config,
    set_seed,
    ThroughputMeter,
)

__version__ = "0.1.0"

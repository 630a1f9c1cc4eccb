import json
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import torch
from datasets import load_dataset

from .utils import logger

ALPACA_TEMPLATE = (
    "Below is an instruction that describes a task, paired with an input that provides further context. "
    "Write a response that appropriately completes the request.\n\n"
    "### Instruction:\n{instruction}\n\n### Input:\n{input}\n\n### Response:\n"
)
CHATML_TEMPLATE = (
    "<|im_start|>system\n{system}<|im_end|>\n<|im_start|>user\n{user}<|im_end|>\n<|im_start|>assistant\n"
)
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TrainingExample:
    """One prompt/target pair. Loss is only taken over the target span."""
    input: str
    target: str
    instruction: Optional[str] = None
    weight: float = 1.0

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"weight must be >= 0, got {self.weight}")

    @property
    def full_text(self) -> str:
        return self.input + self.target

    @property
    def skipped(self) -> bool:
        return self.weight == 0.0

    def __repr__(self):
        return (
            f"TrainingExample(input={self.input[:50]!r}, target={self.target[:50]!r}, "
            f"weight={self.weight:.2f})"
        )


def instruction_format(instruction: str, input: str, response: str) -> TrainingExample:
    """Alpaca-style instruction prompt."""
    prompt = ALPACA_TEMPLATE.format(instruction=instruction, input=input)
    return TrainingExample(prompt, response, instruction)


def chat_format(system_prompt: Optional[str], user_message: str, assistant_response: str) -> TrainingExample:
    """ChatML prompt; the target carries the closing ``<|im_end|>``."""
    prompt = CHATML_TEMPLATE.format(system=system_prompt or DEFAULT_SYSTEM_PROMPT, user=user_message)
    return TrainingExample(prompt, assistant_response + "<|im_end|>", system_prompt)


def completion_format(prompt: str, completion: str) -> TrainingExample:
    return TrainingExample(prompt, completion)


def filter_by_length(
    examples: Sequence[TrainingExample],
    max_tokens: int,
    encode: Optional[Callable[[str], Sequence[int]]] = None,
) -> List[TrainingExample]:
    """
    Keep examples that fit in ``max_tokens``.

    Uses the tokenizer when ``encode`` is given, otherwise the usual
    ~4 characters per token approximation.
    """
    if encode is not None:
        filtered = [ex for ex in examples if len(encode(ex.full_text)) <= max_tokens]
    else:
        max_chars = max_tokens * CHARS_PER_TOKEN
        filtered = [ex for ex in examples if len(ex.full_text) <= max_chars]
    logger.info(
        "Filtered dataset: %d/%d examples within %d token limit",
        len(filtered), len(examples), max_tokens,
    )
    return filtered


def train_validation_split(
    examples: Sequence[TrainingExample],
    validation_ratio: float,
    generator: Optional[torch.Generator] = None,
) -> Dict[str, List[TrainingExample]]:
    """Shuffle and split; validation gets ``round(ratio * n)`` examples."""
    if not 0.0 <= validation_ratio < 1.0:
        raise ValueError(f"validation_ratio must be in [0, 1), got {validation_ratio}")
    n = len(examples)
    n_val = int(math.floor(validation_ratio * n + 0.5))
    order = torch.randperm(n, generator=generator).tolist()
    shuffled = [examples[i] for i in order]
    split = {"train": shuffled[: n - n_val], "validation": shuffled[n - n_val:]}
    logger.info("Dataset split: %d train, %d validation", len(split["train"]), len(split["validation"]))
    return split


# =============================================================================
# File loaders
# =============================================================================

def _text(value) -> str:
    return "" if value is None else str(value)


def _load_json_rows(path: str):
    try:
        return load_dataset("json", data_files=path, split="train")
    except Exception as e:
        raise ValueError(f"{path}: not a JSON array of objects ({e})") from e


def load_alpaca_dataset(path: str) -> List[TrainingExample]:
    """[{"instruction": ..., "input": ..., "output": ...}]"""
    logger.info("Loading Alpaca dataset from: %s", path)
    ds = _load_json_rows(path)
    missing = {"instruction", "output"} - set(ds.column_names)
    if missing:
        raise ValueError(f"{path}: Alpaca dataset missing columns {sorted(missing)}")

    examples = []
    for row in ds:
        instruction, output = _text(row.get("instruction")), _text(row.get("output"))
        if not instruction or not output:
            logger.warning("Skipping invalid example: missing instruction or output")
            continue
        examples.append(instruction_format(instruction, _text(row.get("input")), output))
    logger.info("Loaded %d examples from Alpaca dataset", len(examples))
    return examples


def load_jsonl_dataset(path: str) -> List[TrainingExample]:
    """One {"prompt": ..., "completion": ...} object per line; bad lines are skipped."""
    logger.info("Loading JSONL dataset from: %s", path)
    examples = []
    with open(path, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Line %d: failed to parse JSON: %s", line_num, e)
                continue
            if not isinstance(obj, dict):
                logger.warning("Line %d: expected a JSON object", line_num)
                continue
            prompt, completion = _text(obj.get("prompt")), _text(obj.get("completion"))
            if not prompt or not completion:
                logger.warning("Line %d: missing prompt or completion", line_num)
                continue
            examples.append(TrainingExample(prompt, completion, obj.get("instruction")))
    logger.info("Loaded %d examples from JSONL dataset", len(examples))
    return examples


def load_csv_dataset(path: str) -> List[TrainingExample]:
    """CSV with a prompt/input column and a completion/output/response column."""
    logger.info("Loading CSV dataset from: %s", path)
    try:
        ds = load_dataset("csv", data_files=path, split="train")
    except Exception as e:
        raise ValueError(f"{path}: unreadable CSV ({e})") from e

    prompt_col = completion_col = None
    for col in ds.column_names:
        key = col.strip().lower()
        if key in ("prompt", "input") and prompt_col is None:
            prompt_col = col
        elif key in ("completion", "output", "response") and completion_col is None:
            completion_col = col
    if prompt_col is None or completion_col is None:
        raise ValueError(f"{path}: CSV must have 'prompt' and 'completion' columns")

    examples = []
    for row in ds:
        prompt, completion = _text(row[prompt_col]).strip(), _text(row[completion_col]).strip()
        if prompt and completion:
            examples.append(completion_format(prompt, completion))
    logger.info("Loaded %d examples from CSV dataset", len(examples))
    return examples


def load_conversation_dataset(path: str) -> List[TrainingExample]:
    """ShareGPT-style: [{"conversations": [{"from": "human"|"gpt", "value": ...}, ...]}]"""
    logger.info("Loading conversation dataset from: %s", path)
    ds = _load_json_rows(path)
    if "conversations" not in ds.column_names:
        raise ValueError(f"{path}: conversation dataset needs a 'conversations' field")

    examples = []
    for row in ds:
        turns = row["conversations"] or []
        for human, gpt in zip(turns, turns[1:]):
            if human.get("from") == "human" and gpt.get("from") == "gpt":
                user, assistant = _text(human.get("value")), _text(gpt.get("value"))
                if user and assistant:
                    examples.append(chat_format(None, user, assistant))
    logger.info("Loaded %d examples from conversation dataset", len(examples))
    return examples


def load_text_dataset(path: str, chunk_size: int = 512, overlap: int = 0) -> List[TrainingExample]:
    """
    Chunk plain text at sentence boundaries; each chunk becomes a completion
    example split at two thirds. Chunks of 50 characters or fewer are dropped.
    """
    logger.info("Loading text dataset from: %s", path)
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()

    def emit(text: str):
        if len(text) > 50:
            split_point = len(text) * 2 // 3
            examples.append(completion_format(text[:split_point], text[split_point:]))

    examples: List[TrainingExample] = []
    chunk = ""
    for sentence in re.split(r"[.!?]+", content):
        sentence = sentence.strip()
        if not sentence:
            continue
        if chunk and len(chunk) + len(sentence) > chunk_size:
            text = chunk.strip()
            emit(text)
            chunk = text[-overlap:] if 0 < overlap < len(chunk) else ""
        chunk += sentence + ". "
    emit(chunk.strip())

    logger.info("Created %d examples from text dataset", len(examples))
    return examples


LOADERS = {
    "alpaca": load_alpaca_dataset,
    "jsonl": load_jsonl_dataset,
    "csv": load_csv_dataset,
    "conversation": load_conversation_dataset,
    "text": load_text_dataset,
}


def load_examples(path: str, fmt: str, **kwargs) -> List[TrainingExample]:
    if fmt not in LOADERS:
        raise ValueError(f"Unknown dataset format '{fmt}', expected one of {sorted(LOADERS)}")
    return LOADERS[fmt](path, **kwargs)


def save_as_jsonl(examples: Sequence[TrainingExample], path: str):
    with open(path, "w", encoding="utf-8") as f:
        for ex in examples:
            obj = {"prompt": ex.input, "completion": ex.target}
            if ex.instruction is not None:
                obj["instruction"] = ex.instruction
            f.write(json.dumps(obj) + "\n")
    logger.info("Saved %d examples to %s", len(examples), path)

import logging, random, yaml
from collections import deque
from typing import Iterable

import numpy as np
import torch

logger = logging.getLogger("lora_engine")


class AttrDict(dict):
    __getattr__ = dict.get
    __setattr__ = dict.__setitem__
    __delattr__ = dict.__delitem__


def init_logger(log_level="INFO"):
    logger.setLevel(log_level)
    if logger.handlers:
        return logger
    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    return logger


def load_config(path: str) -> AttrDict:
    with open(path, "r", encoding="utf-8") as f:
        return AttrDict(yaml.safe_load(f) or {})


def _coerce(val: str):
    if val.lower() in ("true", "false"):
        return val.lower() == "true"
    if val.lower() in ("null", "none"):
        return None
    try:
        return float(val) if any(c in val for c in ".eE") else int(val)
    except ValueError:
        return val


def override_from_kv(cfg: AttrDict, overrides: Iterable[str]):
    for kv in overrides:
        if "=" not in kv:
            logger.warning("Ignoring override without '=': %s", kv)
            continue
        key, val = kv.split("=", 1)
        keys = key.split(".")
        node = cfg
        for k in keys[:-1]:
            if not isinstance(node.get(k), dict):
                node[k] = {}
            node = node[k]
        v = _coerce(val)
        # list overrides: lora.target_modules=q_proj,v_proj
        if isinstance(v, str) and "," in v:
            v = [s.strip() for s in v.split(",") if s.strip()]
        node[keys[-1]] = v
    return cfg


def set_seed(seed: int):
    random.seed(seed); np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


class ThroughputMeter:
    def __init__(self, window=50):
        self.window = window; self.hist = deque(maxlen=window)
    def update(self, items: int, dt: float):
        if dt > 0:
            self.hist.append(items / dt)
    def avg_per_sec(self):
        return sum(self.hist) / len(self.hist) if self.hist else 0.0

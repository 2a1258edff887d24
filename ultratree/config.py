from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///./ultratree.db"


@dataclasses.dataclass(frozen=True)
class TrainConfig:
    exemplar_trials: int = 1000
    cost_trials: int = 1000
    seed: int = 1
    split_trials: int = 100
    circles_per_split: int = 10
    context_length: int = 16
    min_split_size: int = 1  # leaves smaller than this are never split

    # stop conditions (None = unbounded)
    max_splits: Optional[int] = None
    time_limit: Optional[float] = None  # seconds

    verify_each_step: bool = False
    gate_pause_seconds: float = 300.0
    skip_infeasible: bool = True

    def to_json(self) -> str:
        return json.dumps(dataclasses.asdict(self), sort_keys=True, separators=(",", ":"))

    def split_params(self) -> dict:
        return {
            "split_trials": self.split_trials,
            "circles_per_split": self.circles_per_split,
            "exemplar_trials": self.exemplar_trials,
            "cost_trials": self.cost_trials,
            "context_length": self.context_length,
        }


def load_config(path: str | Path | None) -> TrainConfig:
    if not path:
        return TrainConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    # allow partial configs
    base = dataclasses.asdict(TrainConfig())
    base.update({k: data[k] for k in data.keys() if k in base})
    return TrainConfig(**base)


def database_url(explicit: str | None = None) -> str:
    if explicit:
        if "://" not in explicit:
            return f"sqlite:///{explicit}"
        return explicit
    return os.environ.get("ULTRATREE_DATABASE_URL", DEFAULT_DATABASE_URL)

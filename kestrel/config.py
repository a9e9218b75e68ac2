"""Training configuration (immutable) and its JSON persistence."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class TrainingConfig:
    """Immutable arguments of a ``fit`` call.

    Args:
        epochs: Number of training epochs
        batch_size: Batch size for training
        validation_batch_size: Batch size for validation (None = batch_size)
        verbose: Emit per-batch statistics at INFO level and a progress bar
        init_weights: Initialize layer variables before the first epoch
        init_optimizer: Initialize optimizer variables before the first epoch
    """
    epochs: int = 5
    batch_size: int = 32
    validation_batch_size: int | None = None
    verbose: bool = True
    init_weights: bool = True
    init_optimizer: bool = True

    def __post_init__(self):
        if self.epochs < 0:
            raise ValueError(f"epochs must be non-negative, got {self.epochs}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.validation_batch_size is not None and self.validation_batch_size < 1:
            raise ValueError(
                f"validation_batch_size must be at least 1, got {self.validation_batch_size}"
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def save_config(config: TrainingConfig, output_dir: str) -> str:
    """Save configuration as ``config.json`` (side effect).

    Returns:
        Path of the written file
    """
    os.makedirs(output_dir, exist_ok=True)
    config_path = os.path.join(output_dir, "config.json")

    with open(config_path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    return config_path


def load_config(checkpoint_dir: str) -> TrainingConfig:
    """Load a TrainingConfig from ``config.json`` in ``checkpoint_dir``."""
    config_path = os.path.join(checkpoint_dir, "config.json")

    with open(config_path, "r") as f:
        return TrainingConfig(**json.load(f))

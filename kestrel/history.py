"""Event records and histories produced by training and evaluation."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from kestrel.metrics import Metrics


@dataclass(frozen=True)
class BatchEvent:
    """Loss and metric of one evaluation batch."""
    batch_index: int
    loss: float
    metric: float


@dataclass(frozen=True)
class BatchTrainingEvent:
    """Loss and metric of one training batch."""
    epoch: int
    batch_index: int
    loss: float
    metric: float


@dataclass(frozen=True)
class EpochTrainingEvent:
    """Epoch averages, with validation values (NaN when not validated)."""
    epoch: int
    loss: float
    metric: float
    val_loss: float = math.nan
    val_metric: float = math.nan


@dataclass(frozen=True)
class EvaluationResult:
    """Average loss and metric values of an evaluation pass."""
    loss: float
    metrics: dict[Metrics, float] = field(default_factory=dict)


class History:
    """Append-only sequence of batch events."""

    def __init__(self):
        self._batch_events: list = []

    def append_batch(self, event: BatchEvent | BatchTrainingEvent):
        self._batch_events.append(event)

    @property
    def batch_history(self) -> tuple:
        return tuple(self._batch_events)

    def last_batch_event(self) -> BatchEvent | BatchTrainingEvent | None:
        return self._batch_events[-1] if self._batch_events else None

    def __len__(self) -> int:
        return len(self._batch_events)


class TrainingHistory(History):
    """Batch and epoch events of a ``fit`` call.

    Example:
        >>> history = model.fit(dataset, epochs=2, batch_size=5)
        >>> [event.loss for event in history.epoch_history]
        >>> history.as_dict()["val_loss"]
    """

    def __init__(self):
        super().__init__()
        self._epoch_events: list[EpochTrainingEvent] = []

    def append_epoch(self, event: EpochTrainingEvent):
        self._epoch_events.append(event)

    @property
    def epoch_history(self) -> tuple[EpochTrainingEvent, ...]:
        return tuple(self._epoch_events)

    def last_epoch_event(self) -> EpochTrainingEvent | None:
        return self._epoch_events[-1] if self._epoch_events else None

    def epoch(self, epoch: int) -> EpochTrainingEvent:
        """Event of a 1-indexed epoch."""
        for event in self._epoch_events:
            if event.epoch == epoch:
                return event
        raise KeyError(f"No epoch {epoch} in history")

    def as_dict(self) -> dict[str, list[float]]:
        """Epoch values as columns, like ``{'loss': [...], 'val_loss': [...]}``."""
        history: dict[str, list[float]] = {
            "loss": [],
            "metric": [],
            "val_loss": [],
            "val_metric": [],
        }
        for event in self._epoch_events:
            history["loss"].append(event.loss)
            history["metric"].append(event.metric)
            history["val_loss"].append(event.val_loss)
            history["val_metric"].append(event.val_metric)
        return history

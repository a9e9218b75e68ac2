"""Callbacks notified along the training, evaluation and prediction loops.

A callback never holds a reference to its model. Each notification carries
the counters and history it concerns, and a callback asks the loop to stop
by setting its own ``stop_training`` flag.
"""

from __future__ import annotations

import logging

from kestrel.history import (
    BatchEvent,
    BatchTrainingEvent,
    EpochTrainingEvent,
    History,
    TrainingHistory,
)

logger = logging.getLogger(__name__)


class Callback:
    """Base callback; every notification is a no-op."""

    def __init__(self):
        self.stop_training = False

    def on_train_begin(self):
        pass

    def on_train_end(self, history: TrainingHistory):
        pass

    def on_epoch_begin(self, epoch: int, history: TrainingHistory):
        pass

    def on_epoch_end(self, epoch: int, event: EpochTrainingEvent, history: TrainingHistory):
        pass

    def on_train_batch_begin(self, batch: int, batch_size: int, history: TrainingHistory):
        pass

    def on_train_batch_end(
        self,
        batch: int,
        batch_size: int,
        event: BatchTrainingEvent,
        history: TrainingHistory
    ):
        pass

    def on_test_begin(self):
        pass

    def on_test_end(self, history: History):
        pass

    def on_test_batch_begin(self, batch: int, batch_size: int, history: History):
        pass

    def on_test_batch_end(self, batch: int, batch_size: int, event: BatchEvent, history: History):
        pass

    def on_predict_begin(self):
        pass

    def on_predict_end(self):
        pass

    def on_predict_batch_begin(self, batch: int, batch_size: int):
        pass

    def on_predict_batch_end(self, batch: int, batch_size: int):
        pass


class EarlyStopping(Callback):
    """Stop training once the monitored epoch value stops improving.

    Args:
        monitor: 'loss', 'metric', 'val_loss' or 'val_metric'
        patience: Epochs without improvement tolerated before stopping
        min_delta: Minimum change counted as an improvement
        mode: 'min' or 'max'
    """

    def __init__(
        self,
        monitor: str = "val_loss",
        patience: int = 0,
        min_delta: float = 0.0,
        mode: str = "min"
    ):
        super().__init__()
        if monitor not in ("loss", "metric", "val_loss", "val_metric"):
            raise ValueError(f"Cannot monitor '{monitor}'")
        if mode not in ("min", "max"):
            raise ValueError(f"mode must be 'min' or 'max', got '{mode}'")
        self.monitor = monitor
        self.patience = patience
        self.min_delta = abs(min_delta)
        self.mode = mode
        self.best: float | None = None
        self.wait = 0
        self.stopped_epoch = 0

    def on_train_begin(self):
        self.best = None
        self.wait = 0
        self.stopped_epoch = 0
        self.stop_training = False

    def on_epoch_end(self, epoch: int, event: EpochTrainingEvent, history: TrainingHistory):
        current = getattr(event, self.monitor)
        if current != current:  # NaN: monitored value not produced
            return
        if self._improved(current):
            self.best = current
            self.wait = 0
            return
        self.wait += 1
        if self.wait > self.patience:
            self.stopped_epoch = epoch
            self.stop_training = True
            logger.info("Early stopping at epoch %d: %s did not improve", epoch, self.monitor)

    def _improved(self, current: float) -> bool:
        if self.best is None:
            return True
        if self.mode == "min":
            return current < self.best - self.min_delta
        return current > self.best + self.min_delta

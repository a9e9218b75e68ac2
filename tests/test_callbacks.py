"""Tests for callbacks."""

from __future__ import annotations

import math

import pytest

from kestrel import Callback, EarlyStopping, EpochTrainingEvent, TrainingHistory


def epoch(n: int, loss: float, val_loss: float = math.nan) -> EpochTrainingEvent:
    return EpochTrainingEvent(n, loss, 0.0, val_loss)


def test_base_callback_is_noop():
    """Every notification of the base callback does nothing."""
    callback = Callback()
    history = TrainingHistory()

    callback.on_train_begin()
    callback.on_epoch_begin(1, history)
    callback.on_epoch_end(1, epoch(1, 0.5), history)
    callback.on_train_end(history)

    assert callback.stop_training is False


def test_early_stopping_waits_for_patience():
    """Stop only after more than `patience` epochs without improvement."""
    callback = EarlyStopping(monitor="loss", patience=2)
    history = TrainingHistory()
    callback.on_train_begin()

    for n, loss in enumerate([1.0, 0.8, 0.9, 0.85], start=1):
        callback.on_epoch_end(n, epoch(n, loss), history)
    assert not callback.stop_training

    callback.on_epoch_end(5, epoch(5, 0.81), history)
    assert callback.stop_training
    assert callback.stopped_epoch == 5
    assert callback.best == 0.8


def test_early_stopping_max_mode():
    """mode='max' treats increases as improvements."""
    callback = EarlyStopping(monitor="metric", mode="max")
    history = TrainingHistory()
    callback.on_train_begin()

    callback.on_epoch_end(1, EpochTrainingEvent(1, 0.0, 0.5), history)
    callback.on_epoch_end(2, EpochTrainingEvent(2, 0.0, 0.6), history)
    assert not callback.stop_training

    callback.on_epoch_end(3, EpochTrainingEvent(3, 0.0, 0.6), history)
    assert callback.stop_training


def test_early_stopping_ignores_missing_validation():
    """NaN validation values are not counted against patience."""
    callback = EarlyStopping(monitor="val_loss")
    history = TrainingHistory()
    callback.on_train_begin()

    for n in range(1, 4):
        callback.on_epoch_end(n, epoch(n, 1.0), history)

    assert not callback.stop_training


def test_early_stopping_resets_on_train_begin():
    """A new training run clears the previous stop request."""
    callback = EarlyStopping(monitor="loss")
    callback.stop_training = True
    callback.wait = 4

    callback.on_train_begin()

    assert not callback.stop_training
    assert callback.wait == 0


def test_early_stopping_validates_arguments():
    """Unknown monitors or modes should raise ValueError."""
    with pytest.raises(ValueError):
        EarlyStopping(monitor="accuracy")
    with pytest.raises(ValueError):
        EarlyStopping(mode="up")

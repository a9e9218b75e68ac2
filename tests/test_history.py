"""Tests for training events, histories and the training config."""

from __future__ import annotations

import dataclasses
import math

import pytest

from kestrel import (
    BatchTrainingEvent,
    EpochTrainingEvent,
    TrainingConfig,
    TrainingHistory,
    load_config,
    save_config,
)


# ============================================================================
# Events and histories
# ============================================================================

def test_events_are_immutable():
    """Event records should be frozen."""
    event = BatchTrainingEvent(1, 0, 0.5, 0.9)

    with pytest.raises(dataclasses.FrozenInstanceError):
        event.loss = 0.1


def test_epoch_event_defaults_to_nan_validation():
    """Epochs without validation carry NaN validation values."""
    event = EpochTrainingEvent(1, 0.5, 0.8)

    assert math.isnan(event.val_loss)
    assert math.isnan(event.val_metric)


def test_training_history_accumulates():
    """History keeps events in order and exposes the last ones."""
    history = TrainingHistory()
    history.append_batch(BatchTrainingEvent(1, 0, 1.0, 0.1))
    history.append_batch(BatchTrainingEvent(1, 1, 0.8, 0.2))
    history.append_epoch(EpochTrainingEvent(1, 0.9, 0.15, 1.1, 0.3))

    assert len(history) == 2
    assert history.last_batch_event().batch_index == 1
    assert history.epoch(1).val_loss == 1.1
    assert history.as_dict() == {
        "loss": [0.9],
        "metric": [0.15],
        "val_loss": [1.1],
        "val_metric": [0.3],
    }


def test_history_sequences_are_read_only():
    """Exposed sequences are tuples."""
    history = TrainingHistory()

    assert history.batch_history == ()
    assert history.epoch_history == ()
    assert history.last_epoch_event() is None


def test_unknown_epoch_raises():
    """Looking up an epoch that did not run raises KeyError."""
    with pytest.raises(KeyError):
        TrainingHistory().epoch(3)


# ============================================================================
# TrainingConfig
# ============================================================================

def test_training_config_immutable():
    """TrainingConfig should be immutable."""
    config = TrainingConfig(epochs=10, batch_size=32)

    with pytest.raises(AttributeError):
        config.epochs = 20


def test_training_config_validation():
    """Invalid batch sizes should be rejected."""
    with pytest.raises(ValueError, match="batch_size"):
        TrainingConfig(batch_size=0)
    with pytest.raises(ValueError, match="validation_batch_size"):
        TrainingConfig(validation_batch_size=0)


def test_config_save_and_load(tmp_path):
    """Config should round-trip through config.json."""
    config = TrainingConfig(epochs=3, batch_size=16, verbose=False)

    path = save_config(config, str(tmp_path))

    assert path.endswith("config.json")
    assert load_config(str(tmp_path)) == config

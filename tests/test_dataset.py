"""Tests for datasets and batch iteration."""

from __future__ import annotations

import numpy as np
import pytest

from kestrel import Dataset


def make_dataset(n: int = 10) -> Dataset:
    x = np.arange(n * 3, dtype=np.float32).reshape(n, 3)
    return Dataset.from_labels(x, np.arange(n) % 2, num_classes=2)


# ============================================================================
# Construction
# ============================================================================

def test_from_labels_one_hot_encodes():
    """Integer labels should become one-hot rows."""
    dataset = Dataset.from_labels(np.zeros((3, 2)), [0, 2, 1])

    assert dataset.num_classes == 3
    np.testing.assert_array_equal(dataset.y, np.eye(3)[[0, 2, 1]])


def test_from_labels_rejects_out_of_range():
    """Labels outside [0, num_classes) should raise ValueError."""
    with pytest.raises(ValueError, match="Labels must lie"):
        Dataset.from_labels(np.zeros((2, 2)), [0, 5], num_classes=2)


def test_mismatched_lengths_rejected():
    """Features and labels must have the same example count."""
    with pytest.raises(ValueError, match="disagree"):
        Dataset(np.zeros((3, 2)), np.zeros((4, 1)))


def test_one_dimensional_targets_become_columns():
    """Regression targets of shape (n,) are stored as (n, 1)."""
    dataset = Dataset(np.zeros((4, 2)), np.arange(4))

    assert dataset.y.shape == (4, 1)
    assert dataset.x.dtype == np.float32


# ============================================================================
# Batching
# ============================================================================

def test_batch_iterator_yields_flat_buffers():
    """Batches carry flat buffers and their example count."""
    dataset = make_dataset(4)
    batch = next(dataset.batch_iterator(2))

    assert batch.size == 2
    assert batch.x.shape == (6,)
    assert batch.y.shape == (4,)
    np.testing.assert_array_equal(batch.x, np.arange(6))


def test_batch_iterator_short_final_batch():
    """The final batch holds the remaining examples."""
    iterator = make_dataset(10).batch_iterator(4)

    assert len(iterator) == 3
    sizes = [batch.size for batch in iterator]
    assert sizes == [4, 4, 2]
    assert not iterator.has_next()


def test_batch_iterator_rejects_zero_batch():
    """batch_size must be at least 1."""
    with pytest.raises(ValueError):
        make_dataset().batch_iterator(0)


# ============================================================================
# Shuffle and split
# ============================================================================

def test_shuffle_is_deterministic_and_keeps_pairs():
    """Shuffling with one seed is reproducible and keeps x/y aligned."""
    dataset = make_dataset(10)
    first = dataset.shuffle(seed=3)
    second = dataset.shuffle(seed=3)

    np.testing.assert_array_equal(first.x, second.x)
    labels = first.x[:, 0] / 3 % 2
    np.testing.assert_array_equal(np.argmax(first.y, axis=1), labels)


def test_split_preserves_order():
    """split() cuts at the ratio boundary without shuffling."""
    train, test = make_dataset(10).split(0.8)

    assert train.size() == 8
    assert len(test) == 2
    np.testing.assert_array_equal(test.x[0], [24, 25, 26])


@pytest.mark.parametrize("ratio", [0.0, 1.0, -0.5, 1.5])
def test_split_rejects_invalid_ratio(ratio):
    """train_ratio must lie strictly between 0 and 1."""
    with pytest.raises(ValueError, match="train_ratio"):
        make_dataset().split(ratio)

"""In-memory datasets and their batch iterators.

A Dataset yields DataBatch objects holding flat float32 buffers; the model
reshapes and validates them against its own input and output shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import numpy as np


@dataclass(frozen=True)
class DataBatch:
    """Contiguous slice of a dataset.

    Args:
        x: Flat feature buffer (size * features elements)
        y: Flat label buffer (size * classes elements)
        size: Number of examples in the batch
    """
    x: np.ndarray
    y: np.ndarray
    size: int


class BatchIterator(Iterator[DataBatch]):
    """Restartable-by-construction iterator over fixed-size batches.

    The final batch is shorter when the dataset size is not a multiple of
    the batch size.
    """

    def __init__(self, dataset: "Dataset", batch_size: int):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self._dataset = dataset
        self._batch_size = batch_size
        self._cursor = 0

    def has_next(self) -> bool:
        return self._cursor < self._dataset.size()

    def __iter__(self) -> "BatchIterator":
        return self

    def __next__(self) -> DataBatch:
        if not self.has_next():
            raise StopIteration
        start = self._cursor
        end = min(start + self._batch_size, self._dataset.size())
        self._cursor = end
        return DataBatch(
            x=self._dataset.x[start:end].reshape(-1),
            y=self._dataset.y[start:end].reshape(-1),
            size=end - start,
        )

    def __len__(self) -> int:
        remaining = self._dataset.size() - self._cursor
        return -(-remaining // self._batch_size)


class Dataset:
    """Features and one-hot labels held in memory.

    Args:
        x: Features, shape (examples, *feature_dims)
        y: One-hot labels (or regression targets), shape (examples, outputs)

    Example:
        >>> dataset = Dataset.from_labels(x, labels, num_classes=10)
        >>> train, test = dataset.split(0.8)
        >>> for batch in train.batch_iterator(32):
        ...     pass
    """

    def __init__(self, x: np.ndarray, y: np.ndarray):
        x = np.asarray(x, dtype=np.float32)
        y = np.asarray(y, dtype=np.float32)
        if x.ndim == 0 or y.ndim == 0:
            raise ValueError("Features and labels must have an example dimension")
        if len(x) != len(y):
            raise ValueError(
                f"Features and labels disagree on example count: {len(x)} vs {len(y)}"
            )
        if y.ndim == 1:
            y = y.reshape(-1, 1)
        self.x = x
        self.y = y

    @classmethod
    def from_labels(
        cls,
        x: np.ndarray,
        labels: np.ndarray,
        num_classes: int | None = None
    ) -> "Dataset":
        """Build a dataset from integer class labels, one-hot encoding them."""
        labels = np.asarray(labels, dtype=np.int64).reshape(-1)
        if num_classes is None:
            num_classes = int(labels.max()) + 1 if labels.size else 0
        if labels.size and (labels.min() < 0 or labels.max() >= num_classes):
            raise ValueError(f"Labels must lie in [0, {num_classes})")
        return cls(x, np.eye(num_classes, dtype=np.float32)[labels])

    def size(self) -> int:
        """Number of examples."""
        return len(self.x)

    def __len__(self) -> int:
        return self.size()

    @property
    def x_shape(self) -> tuple[int, ...]:
        """Per-example feature shape."""
        return tuple(self.x.shape[1:])

    @property
    def num_classes(self) -> int:
        return int(self.y.shape[1])

    def batch_iterator(self, batch_size: int) -> BatchIterator:
        return BatchIterator(self, batch_size)

    def shuffle(self, seed: int = 42) -> "Dataset":
        """Return a shuffled copy (deterministic for a given seed)."""
        order = np.random.default_rng(seed).permutation(self.size())
        return Dataset(self.x[order], self.y[order])

    def split(self, train_ratio: float) -> tuple["Dataset", "Dataset"]:
        """Split into (train, test) without shuffling.

        Raises:
            ValueError: If train_ratio is not within (0.0, 1.0)
        """
        if not 0.0 < train_ratio < 1.0:
            raise ValueError(f"train_ratio must be in (0.0, 1.0), got {train_ratio}")
        boundary = int(self.size() * train_ratio)
        return (
            Dataset(self.x[:boundary], self.y[:boundary]),
            Dataset(self.x[boundary:], self.y[boundary:]),
        )

    def __repr__(self) -> str:
        return f"Dataset(examples={self.size()}, x_shape={self.x_shape}, classes={self.num_classes})"

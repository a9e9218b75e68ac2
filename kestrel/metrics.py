"""Metrics computed per batch inside the graph."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

import jax
import jax.numpy as jnp


class Metrics(Enum):
    ACCURACY = "accuracy"
    MAE = "mae"
    MSE = "mse"

    @classmethod
    def convert(cls, metric: "Metrics | Metric") -> "Metric":
        """Instantiate the metric for an enum member (instances pass through)."""
        if isinstance(metric, Metric):
            return metric
        return {
            cls.ACCURACY: Accuracy,
            cls.MAE: MAE,
            cls.MSE: MSE,
        }[metric]()

    @classmethod
    def convert_back(cls, metric: "Metric") -> "Metrics":
        return metric.kind


class Metric(ABC):
    """Scalar quality measure of predictions against labels."""

    kind: Metrics

    @abstractmethod
    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        ...

    def __call__(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return self.apply(y_pred, y_true)


class Accuracy(Metric):
    """Fraction of examples whose arg-max prediction matches the label."""

    kind = Metrics.ACCURACY

    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        predicted = jnp.argmax(y_pred, axis=1)
        expected = jnp.argmax(y_true, axis=1)
        return jnp.mean((predicted == expected).astype(jnp.float32))


class MAE(Metric):
    kind = Metrics.MAE

    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return jnp.mean(jnp.abs(y_pred - y_true))


class MSE(Metric):
    kind = Metrics.MSE

    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return jnp.mean(jnp.square(y_pred - y_true))

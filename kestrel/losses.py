"""Loss functions (pure functions of predictions and labels)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

import jax
import jax.numpy as jnp
import optax


class Loss(ABC):
    """Scalar loss over a batch.

    ``produces_raw_logits`` marks losses that consume un-normalised model
    outputs; the served prediction of such models is their softmax.
    """

    produces_raw_logits: bool = False

    @abstractmethod
    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        ...

    def __call__(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return self.apply(y_pred, y_true)


class SoftmaxCrossEntropyWithLogits(Loss):
    produces_raw_logits = True

    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return jnp.mean(optax.softmax_cross_entropy(y_pred, y_true))


class MeanSquaredError(Loss):
    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return jnp.mean(optax.squared_error(y_pred, y_true))


class MeanAbsoluteError(Loss):
    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return jnp.mean(jnp.abs(y_pred - y_true))


class Huber(Loss):
    def __init__(self, delta: float = 1.0):
        self.delta = delta

    def apply(self, y_pred: jax.Array, y_true: jax.Array) -> jax.Array:
        return jnp.mean(optax.huber_loss(y_pred, y_true, delta=self.delta))


class Losses(Enum):
    SOFT_MAX_CROSS_ENTROPY_WITH_LOGITS = "softmax_cross_entropy_with_logits"
    MSE = "mean_squared_error"
    MAE = "mean_absolute_error"
    HUBER = "huber"

    @classmethod
    def convert(cls, loss: "Losses | Loss") -> Loss:
        """Instantiate the loss for an enum member (instances pass through)."""
        if isinstance(loss, Loss):
            return loss
        return {
            cls.SOFT_MAX_CROSS_ENTROPY_WITH_LOGITS: SoftmaxCrossEntropyWithLogits,
            cls.MSE: MeanSquaredError,
            cls.MAE: MeanAbsoluteError,
            cls.HUBER: Huber,
        }[loss]()

"""Activation functions selectable by name."""

from __future__ import annotations

from enum import Enum

import jax
import jax.numpy as jnp


class Activations(Enum):
    """Activation functions, valued by their Keras config names."""
    LINEAR = "linear"
    RELU = "relu"
    RELU6 = "relu6"
    SIGMOID = "sigmoid"
    HARD_SIGMOID = "hard_sigmoid"
    TANH = "tanh"
    SOFTMAX = "softmax"
    LOG_SOFTMAX = "log_softmax"
    ELU = "elu"
    SELU = "selu"
    SOFTPLUS = "softplus"
    SWISH = "swish"

    def apply(self, x: jax.Array) -> jax.Array:
        return _FUNCTIONS[self](x)

    @classmethod
    def from_name(cls, name: str) -> "Activations":
        try:
            return cls(name)
        except ValueError:
            raise ValueError(
                f"Unknown activation '{name}'. "
                f"Available: {[a.value for a in cls]}"
            ) from None


_FUNCTIONS = {
    Activations.LINEAR: lambda x: x,
    Activations.RELU: jax.nn.relu,
    Activations.RELU6: jax.nn.relu6,
    Activations.SIGMOID: jax.nn.sigmoid,
    Activations.HARD_SIGMOID: jax.nn.hard_sigmoid,
    Activations.TANH: jnp.tanh,
    Activations.SOFTMAX: jax.nn.softmax,
    Activations.LOG_SOFTMAX: jax.nn.log_softmax,
    Activations.ELU: jax.nn.elu,
    Activations.SELU: jax.nn.selu,
    Activations.SOFTPLUS: jax.nn.softplus,
    Activations.SWISH: jax.nn.swish,
}

"""Core layers: Input, Dense and Flatten."""

from __future__ import annotations

import math
from typing import Any

import flax.linen as nn
import jax

from kestrel.core.graph import Graph
from kestrel.core.shape import Shape, with_batch
from kestrel.layers.activations import Activations
from kestrel.layers.base import Layer, ModuleLayer
from kestrel.layers.initializers import Initializers

INPUT_NAME = "x"


class Input(Layer):
    """First layer of every model, declaring the per-example input shape.

    Example:
        >>> Input(28, 28, 1)
        >>> Input(4, name="features")
    """

    keras_class_name = "InputLayer"

    def __init__(self, *dims: int, name: str = "input"):
        super().__init__(name=name, trainable=False)
        if not dims:
            raise ValueError("Input layer needs at least one dimension")
        if any(int(dim) <= 0 for dim in dims):
            raise ValueError(f"Input dimensions must be positive, got {dims}")
        self.input_shape: Shape = tuple(int(dim) for dim in dims)

    def define_variables(self, graph: Graph, input_shape: Shape = ()):
        graph.add_placeholder(INPUT_NAME, with_batch(self.input_shape, None))

    def compute_output_shape(self, input_shape: Shape = ()) -> Shape:
        return self.input_shape

    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        return x

    def get_config(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "batch_input_shape": [None, *self.input_shape],
            "dtype": "float32",
        }

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Input":
        return cls(*config["batch_input_shape"][1:], name=config.get("name", "input"))


class Dense(ModuleLayer):
    """Densely-connected layer ``activation(x @ kernel + bias)``.

    Args:
        output_size: Number of output units
        activation: Activation applied to the affine output
        kernel_initializer: Initializer for the kernel
        bias_initializer: Initializer for the bias
        use_bias: Whether to add a bias vector
        name: Layer name
        trainable: Whether the optimizer updates this layer
    """

    keras_class_name = "Dense"

    def __init__(
        self,
        output_size: int = 128,
        activation: Activations = Activations.RELU,
        kernel_initializer: Initializers = Initializers.GLOROT_UNIFORM,
        bias_initializer: Initializers = Initializers.ZEROS,
        use_bias: bool = True,
        name: str = "",
        trainable: bool = True
    ):
        super().__init__(name=name, trainable=trainable)
        self.output_size = output_size
        self.activation = activation
        self.kernel_initializer = kernel_initializer
        self.bias_initializer = bias_initializer
        self.use_bias = use_bias

    def build_module(self) -> nn.Module:
        return nn.Dense(
            features=self.output_size,
            use_bias=self.use_bias,
            kernel_init=self.kernel_initializer.build(),
            bias_init=self.bias_initializer.build(),
        )

    def compute_output_shape(self, input_shape: Shape) -> Shape:
        return (*input_shape[:-1], self.output_size)

    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        return self.activation.apply(self.apply_module(params, x))

    def has_activation(self) -> bool:
        return True

    def get_config(self) -> dict[str, Any]:
        return {
            **super().get_config(),
            "units": self.output_size,
            "activation": self.activation.value,
            "use_bias": self.use_bias,
            "kernel_initializer": self.kernel_initializer.to_config(),
            "bias_initializer": self.bias_initializer.to_config(),
        }

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Dense":
        return cls(
            output_size=config["units"],
            activation=Activations.from_name(config.get("activation", "linear")),
            kernel_initializer=Initializers.from_config(
                config.get("kernel_initializer", Initializers.GLOROT_UNIFORM.value)
            ),
            bias_initializer=Initializers.from_config(
                config.get("bias_initializer", Initializers.ZEROS.value)
            ),
            use_bias=config.get("use_bias", True),
            name=config.get("name", ""),
            trainable=config.get("trainable", True),
        )

    def __repr__(self) -> str:
        return (
            f"Dense('{self.name}', output_size={self.output_size}, "
            f"activation={self.activation.value})"
        )


class Flatten(Layer):
    """Collapse all per-example dimensions into one."""

    keras_class_name = "Flatten"

    def compute_output_shape(self, input_shape: Shape) -> Shape:
        return (math.prod(input_shape),)

    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        return x.reshape((x.shape[0], -1))

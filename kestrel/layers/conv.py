"""Two-dimensional convolution layer (NHWC)."""

from __future__ import annotations

from typing import Any

import flax.linen as nn
import jax

from kestrel.core.shape import Shape, conv_output_length
from kestrel.layers.activations import Activations
from kestrel.layers.base import ModuleLayer
from kestrel.layers.initializers import Initializers


class Conv2D(ModuleLayer):
    """2D convolution over ``(height, width, channels)`` inputs.

    Args:
        filters: Number of output channels
        kernel_size: Window size (height, width)
        strides: Window strides (height, width)
        padding: 'SAME' or 'VALID'
        activation: Activation applied after the convolution
        kernel_initializer: Initializer for the kernel
        bias_initializer: Initializer for the bias
        use_bias: Whether to add a bias per filter
        name: Layer name
        trainable: Whether the optimizer updates this layer
    """

    keras_class_name = "Conv2D"

    def __init__(
        self,
        filters: int = 32,
        kernel_size: tuple[int, int] = (3, 3),
        strides: tuple[int, int] = (1, 1),
        padding: str = "SAME",
        activation: Activations = Activations.RELU,
        kernel_initializer: Initializers = Initializers.GLOROT_UNIFORM,
        bias_initializer: Initializers = Initializers.ZEROS,
        use_bias: bool = True,
        name: str = "",
        trainable: bool = True
    ):
        super().__init__(name=name, trainable=trainable)
        self.filters = filters
        self.kernel_size = tuple(kernel_size)
        self.strides = tuple(strides)
        self.padding = padding.upper()
        self.activation = activation
        self.kernel_initializer = kernel_initializer
        self.bias_initializer = bias_initializer
        self.use_bias = use_bias

    def build_module(self) -> nn.Module:
        return nn.Conv(
            features=self.filters,
            kernel_size=self.kernel_size,
            strides=self.strides,
            padding=self.padding,
            use_bias=self.use_bias,
            kernel_init=self.kernel_initializer.build(),
            bias_init=self.bias_initializer.build(),
        )

    def compute_output_shape(self, input_shape: Shape) -> Shape:
        if len(input_shape) != 3:
            raise ValueError(
                f"Conv2D '{self.name}' expects (height, width, channels) input, "
                f"got {input_shape}"
            )
        height, width, _ = input_shape
        return (
            conv_output_length(height, self.kernel_size[0], self.strides[0], self.padding),
            conv_output_length(width, self.kernel_size[1], self.strides[1], self.padding),
            self.filters,
        )

    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        return self.activation.apply(self.apply_module(params, x))

    def has_activation(self) -> bool:
        return True

    def get_config(self) -> dict[str, Any]:
        return {
            **super().get_config(),
            "filters": self.filters,
            "kernel_size": list(self.kernel_size),
            "strides": list(self.strides),
            "padding": self.padding.lower(),
            "activation": self.activation.value,
            "use_bias": self.use_bias,
            "kernel_initializer": self.kernel_initializer.to_config(),
            "bias_initializer": self.bias_initializer.to_config(),
        }

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Conv2D":
        return cls(
            filters=config["filters"],
            kernel_size=tuple(config.get("kernel_size", (3, 3))),
            strides=tuple(config.get("strides", (1, 1))),
            padding=config.get("padding", "same"),
            activation=Activations.from_name(config.get("activation", "relu")),
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

"""Parameterless 2D pooling layers."""

from __future__ import annotations

from typing import Any

import flax.linen as nn
import jax

from kestrel.core.shape import Shape, conv_output_length
from kestrel.layers.base import Layer


class _Pool2D(Layer):
    def __init__(
        self,
        pool_size: tuple[int, int] = (2, 2),
        strides: tuple[int, int] | None = None,
        padding: str = "VALID",
        name: str = "",
        trainable: bool = True
    ):
        super().__init__(name=name, trainable=trainable)
        self.pool_size = tuple(pool_size)
        self.strides = tuple(strides) if strides is not None else self.pool_size
        self.padding = padding.upper()

    def compute_output_shape(self, input_shape: Shape) -> Shape:
        if len(input_shape) != 3:
            raise ValueError(
                f"{type(self).__name__} '{self.name}' expects (height, width, channels) "
                f"input, got {input_shape}"
            )
        height, width, channels = input_shape
        return (
            conv_output_length(height, self.pool_size[0], self.strides[0], self.padding),
            conv_output_length(width, self.pool_size[1], self.strides[1], self.padding),
            channels,
        )

    def get_config(self) -> dict[str, Any]:
        return {
            **super().get_config(),
            "pool_size": list(self.pool_size),
            "strides": list(self.strides),
            "padding": self.padding.lower(),
        }

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "_Pool2D":
        return cls(
            pool_size=tuple(config.get("pool_size", (2, 2))),
            strides=tuple(config["strides"]) if config.get("strides") else None,
            padding=config.get("padding", "valid"),
            name=config.get("name", ""),
            trainable=config.get("trainable", True),
        )


class MaxPool2D(_Pool2D):
    """Max pooling over spatial windows."""

    keras_class_name = "MaxPooling2D"

    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        return nn.max_pool(x, self.pool_size, strides=self.strides, padding=self.padding)


class AvgPool2D(_Pool2D):
    """Average pooling over spatial windows."""

    keras_class_name = "AveragePooling2D"

    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        return nn.avg_pool(x, self.pool_size, strides=self.strides, padding=self.padding)

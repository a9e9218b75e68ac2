"""Shape helpers shared by layers and the model (pure functions)."""

from __future__ import annotations

import math
from typing import Sequence

Shape = tuple[int, ...]


def num_elements(shape: Sequence[int | None]) -> int:
    """Number of elements of a fully defined shape.

    Raises:
        ValueError: If any dimension is unknown
    """
    if any(dim is None or dim < 0 for dim in shape):
        raise ValueError(f"Shape {tuple(shape)} is not fully defined")
    return math.prod(shape)


def with_batch(shape: Sequence[int], batch_size: int | None) -> tuple[int | None, ...]:
    """Prepend a batch dimension to a per-example shape."""
    return (batch_size, *shape)


def conv_output_length(
    input_length: int,
    kernel_size: int,
    stride: int,
    padding: str
) -> int:
    """Spatial output length of a convolution or pooling window.

    Args:
        input_length: Size of the spatial input dimension
        kernel_size: Size of the window along that dimension
        stride: Window stride
        padding: 'SAME' or 'VALID'
    """
    padding = padding.upper()
    if padding == "SAME":
        return -(-input_length // stride)
    if padding == "VALID":
        return -(-(input_length - kernel_size + 1) // stride)
    raise ValueError(f"Unknown padding '{padding}', expected 'SAME' or 'VALID'")


def format_shape(shape: Sequence[int | None]) -> str:
    """Format a shape the way summaries print it, unknown dims as -1."""
    return "[" + ", ".join(str(-1 if dim is None else dim) for dim in shape) + "]"

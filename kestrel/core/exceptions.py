"""Exception hierarchy for kestrel models.

Four families of failures surface to callers of a model:
- configuration errors raised at assembly or compile time
- usage-sequence errors (wrong call order, unknown tensor names)
- batch data whose buffer size disagrees with the model shapes
- failures of the JAX execution backend
"""

from __future__ import annotations


class KestrelError(Exception):
    """Base class for every error raised by kestrel."""


class ModelConfigurationError(KestrelError, ValueError):
    """The layer stack cannot form a valid model."""


class RepeatableLayerNameError(ModelConfigurationError):
    """Two layers of one model share a name."""

    def __init__(self, layer_name: str):
        super().__init__(
            f"The layer name '{layer_name}' is used in previous layers. "
            f"The layer name should be unique."
        )
        self.layer_name = layer_name


class ModelStateError(KestrelError, RuntimeError):
    """An operation was called at the wrong point of the model lifecycle."""


class TensorNotFoundError(KestrelError, KeyError):
    """A named node or variable does not exist in the graph."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class LayerNotFoundError(KestrelError, KeyError):
    """A layer name is not part of the model."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class BatchShapeMismatchError(KestrelError, ValueError):
    """A batch buffer does not hold the number of elements the model expects.

    Args:
        message: Human readable diagnostic
        expected_shape: Shape calculated from the model for this batch
        buffer_size: Number of elements actually present in the buffer
    """

    def __init__(
        self,
        message: str,
        expected_shape: tuple[int, ...],
        buffer_size: int
    ):
        super().__init__(message)
        self.expected_shape = expected_shape
        self.buffer_size = buffer_size


class BackendExecutionError(KestrelError, RuntimeError):
    """The execution backend failed while running the graph.

    The original backend exception is kept as ``__cause__``.
    """


class WeightsLoadingError(KestrelError, RuntimeError):
    """Saved weights do not cover the variables declared by the graph."""

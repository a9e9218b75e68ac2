"""Core primitives: the Graph container, shape helpers and errors."""

from .exceptions import (
    KestrelError,
    ModelConfigurationError,
    RepeatableLayerNameError,
    ModelStateError,
    TensorNotFoundError,
    LayerNotFoundError,
    BatchShapeMismatchError,
    BackendExecutionError,
    WeightsLoadingError,
)
from .graph import Graph, OPTIMIZER_PREFIX

__all__ = [
    'Graph',
    'OPTIMIZER_PREFIX',
    'KestrelError',
    'ModelConfigurationError',
    'RepeatableLayerNameError',
    'ModelStateError',
    'TensorNotFoundError',
    'LayerNotFoundError',
    'BatchShapeMismatchError',
    'BackendExecutionError',
    'WeightsLoadingError',
]

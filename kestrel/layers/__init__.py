"""Layers for Sequential models.

Every layer declares its variables in a Graph, computes its output shape
and transforms a batch of inputs. Parameterised layers wrap Flax modules.
"""

from .activations import Activations
from .initializers import Initializers
from .base import Layer, ModuleLayer, default_activation_name
from .core import Input, Dense, Flatten, INPUT_NAME
from .conv import Conv2D
from .pooling import MaxPool2D, AvgPool2D

LAYER_CLASSES = {
    cls.keras_class_name: cls
    for cls in (Input, Dense, Flatten, Conv2D, MaxPool2D, AvgPool2D)
}

__all__ = [
    'Activations',
    'Initializers',
    'Layer',
    'ModuleLayer',
    'default_activation_name',
    'Input',
    'Dense',
    'Flatten',
    'Conv2D',
    'MaxPool2D',
    'AvgPool2D',
    'INPUT_NAME',
    'LAYER_CLASSES',
]

"""Layer: the shared contract of every unit in a Sequential model.

A layer can:
- Declare its variables in a Graph for a given input shape
- Compute its output shape from an input shape
- Transform a batch of inputs given its parameters
"""

from __future__ import annotations

import math
import weakref
from abc import ABC, abstractmethod
from typing import Any, Callable

import flax.linen as nn
import jax
import jax.numpy as jnp
from flax.traverse_util import flatten_dict, unflatten_dict

from kestrel.core.graph import Graph
from kestrel.core.shape import Shape

PARAM_SEPARATOR = "_"


class Layer(ABC):
    """Base class for all layers.

    Shapes handled by layers never include the batch dimension.

    Args:
        name: Layer name, auto-assigned at model assembly when empty
        trainable: Whether the optimizer updates this layer's variables
    """

    keras_class_name: str = ""

    def __init__(self, name: str = "", trainable: bool = True):
        self.name = name
        self.trainable = trainable
        self.output_shape: tuple[int | None, ...] | None = None
        self.variable_names: dict[str, str] = {}
        self._param_shapes: dict[str, tuple[int, ...]] = {}
        self._parent_model: Callable[[], Any] | None = None

    @property
    def parent_model(self) -> Any:
        """Model owning this layer, held as a weak reference."""
        return self._parent_model() if self._parent_model is not None else None

    @parent_model.setter
    def parent_model(self, model: Any):
        self._parent_model = weakref.ref(model) if model is not None else None

    def define_variables(self, graph: Graph, input_shape: Shape):
        """Declare this layer's variables; parameterless layers declare none."""

    @abstractmethod
    def compute_output_shape(self, input_shape: Shape) -> Shape:
        ...

    @abstractmethod
    def transform_input(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        ...

    def has_activation(self) -> bool:
        return False

    def param_count(self) -> int:
        """Number of scalar parameters declared (0 before compile)."""
        return sum(math.prod(shape) for shape in self._param_shapes.values())

    def get_config(self) -> dict[str, Any]:
        return {"name": self.name, "trainable": self.trainable}

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Layer":
        return cls(**config)

    def _record_variables(self, graph: Graph, names: dict[str, str]):
        self.variable_names = names
        self._param_shapes = {
            short: tuple(graph.variable_spec(full).shape) for short, full in names.items()
        }

    def __repr__(self) -> str:
        trainable_str = "trainable" if self.trainable else "frozen"
        return f"{type(self).__name__}('{self.name}', {trainable_str})"


class ModuleLayer(Layer):
    """A layer whose parameters come from a Flax module.

    Subclasses build the module; this class declares the module's ``params``
    collection as graph variables named ``<layer>_<param>``.
    """

    def __init__(self, name: str = "", trainable: bool = True):
        super().__init__(name=name, trainable=trainable)
        self._module: nn.Module | None = None

    @abstractmethod
    def build_module(self) -> nn.Module:
        ...

    def define_variables(self, graph: Graph, input_shape: Shape):
        module = self.build_module()
        sample = jnp.zeros((1, *input_shape), jnp.float32)

        def init_fn(rng: jax.Array) -> dict[str, Any]:
            variables = module.init(rng, sample)
            return flatten_dict(variables["params"], sep=PARAM_SEPARATOR)

        self._module = module
        names = graph.declare_variables(self.name, init_fn, trainable=self.trainable)
        self._record_variables(graph, names)

    def apply_module(self, params: dict[str, Any], x: jax.Array) -> jax.Array:
        if self._module is None:
            raise RuntimeError(f"Layer '{self.name}' has no variables defined yet")
        return self._module.apply(
            {"params": unflatten_dict(params, sep=PARAM_SEPARATOR)}, x
        )


def default_activation_name(layer: Layer) -> str:
    """Graph node name under which a layer's activation output is exposed."""
    return f"Activation_{layer.name}"

"""Inference from a saved model directory without rebuilding the model.

Loads the exported graph (``graph.pb``) and the plain-text variable dump,
then serves predictions from any exported node.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import jax
import numpy as np
from jax import export

from kestrel.core.exceptions import ModelStateError, TensorNotFoundError, WeightsLoadingError
from kestrel.model import persistence
from kestrel.model.sequential import OUTPUT_NAME

logger = logging.getLogger(__name__)


class InferenceModel:
    """Exported inference graph bound to its variable values.

    Args:
        exported: Deserialized ``jax.export.Exported`` graph
        variables: {variable_name: array} matching the exported signature

    Example:
        >>> with InferenceModel.load("models/mnist") as model:
        ...     probabilities = model.predict_softly(image)
        ...     hidden = model.predict_softly(image, "Activation_dense_1")
    """

    def __init__(self, exported: export.Exported, variables: dict[str, Any]):
        self.exported = exported
        self.variables = variables
        (variable_avals, input_aval), _ = jax.tree_util.tree_unflatten(
            exported.in_tree, exported.in_avals
        )
        self.input_shape = tuple(input_aval.shape[1:])
        self._variable_avals = variable_avals
        self.is_closed = False

    @classmethod
    def load(cls, model_directory: str | Path) -> "InferenceModel":
        """Load ``graph.pb`` and the layer variables saved next to it.

        Raises:
            FileNotFoundError: If the graph or the variable index is missing
            WeightsLoadingError: If saved variables do not cover the graph
        """
        path = Path(model_directory)
        graph_path = path / persistence.GRAPH_DEF_FILE
        if not graph_path.exists():
            raise FileNotFoundError(f"No {persistence.GRAPH_DEF_FILE} found in {path}")
        exported = export.deserialize(bytearray(graph_path.read_bytes()))

        (variable_avals, _), _ = jax.tree_util.tree_unflatten(
            exported.in_tree, exported.in_avals
        )
        saved = set(persistence.read_variable_names(path))
        missing = [name for name in variable_avals if name not in saved]
        if missing:
            raise WeightsLoadingError(
                f"Saved weights in {path} miss variables expected by the graph: {missing}"
            )

        variables = {}
        for name, aval in variable_avals.items():
            values = persistence.read_variable(path, name, aval.dtype)
            if values.size != int(np.prod(aval.shape, dtype=np.int64)):
                raise WeightsLoadingError(
                    f"Variable '{name}' holds {values.size} values, "
                    f"expected shape {tuple(aval.shape)}"
                )
            variables[name] = values.reshape(aval.shape)
        logger.debug("Loaded %d variables from %s", len(variables), path)
        return cls(exported, variables)

    def node_names(self) -> list[str]:
        """Names of every node the exported graph can return."""
        outputs = jax.tree_util.tree_unflatten(self.exported.out_tree, self.exported.out_avals)
        return list(outputs)

    def predict_softly(self, input_data: np.ndarray, prediction_tensor_name: str = OUTPUT_NAME) -> np.ndarray:
        """Per-class scores of one example from the named node."""
        if self.is_closed:
            raise ModelStateError("The inference model is closed")
        if prediction_tensor_name not in self.node_names():
            raise TensorNotFoundError(
                f"No such tensor output named [{prediction_tensor_name}] in the graph!"
            )
        batch = np.asarray(input_data, dtype=np.float32).reshape((1, *self.input_shape))
        outputs = self.exported.call(self.variables, batch)
        return np.asarray(outputs[prediction_tensor_name])[0]

    def predict(self, input_data: np.ndarray, prediction_tensor_name: str = OUTPUT_NAME) -> int:
        """Predicted class index of one example."""
        return int(np.argmax(self.predict_softly(input_data, prediction_tensor_name)))

    def close(self):
        self.variables = {}
        self.is_closed = True

    def __enter__(self) -> "InferenceModel":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

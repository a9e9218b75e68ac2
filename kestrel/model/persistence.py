"""Saving and restoring graph definitions and variable values.

Directory layout:
    path/
      ├─ modelConfig.json      # Keras-style layer description (JSON format)
      ├─ graph.pb              # Serialized inference graph (graph formats)
      ├─ variableNames.txt     # One variable name per line, dump order
      └─ <variableName>.txt    # Space-separated flattened values
"""

from __future__ import annotations

import logging
import shutil
from enum import Enum
from pathlib import Path

import numpy as np

from kestrel.core.exceptions import TensorNotFoundError, WeightsLoadingError
from kestrel.core.graph import Graph, OPTIMIZER_PREFIX

logger = logging.getLogger(__name__)

GRAPH_DEF_FILE = "graph.pb"
VARIABLE_NAMES_FILE = "variableNames.txt"
MODEL_CONFIG_FILE = "modelConfig.json"


class SavingFormat(Enum):
    """What ``save`` writes into the model directory."""
    GRAPH_CUSTOM_VARIABLES = "graph_custom_variables"
    GRAPH = "graph"
    JSON_CONFIG_CUSTOM_VARIABLES = "json_config_custom_variables"


class WritingMode(Enum):
    """How ``save`` treats an existing model directory."""
    FAIL_IF_EXISTS = "fail_if_exists"
    OVERRIDE = "override"
    APPEND = "append"


def prepare_directory(path: str | Path, writing_mode: WritingMode) -> Path:
    """Create the model directory according to ``writing_mode``.

    Raises:
        FileExistsError: If the directory exists in FAIL_IF_EXISTS mode
    """
    path = Path(path)
    if writing_mode == WritingMode.FAIL_IF_EXISTS:
        if path.exists():
            raise FileExistsError(
                f"The directory exists on path {path.absolute()}, it could contain a "
                f"valuable model! Use WritingMode.OVERRIDE to replace it."
            )
        path.mkdir(parents=True)
    elif writing_mode == WritingMode.OVERRIDE:
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True)
    elif writing_mode == WritingMode.APPEND:
        path.mkdir(parents=True, exist_ok=True)
    else:
        raise ValueError(f"Unknown writing mode: {writing_mode}")
    return path


def save_graph_def(graph: Graph, path: str | Path, input_name: str):
    """Write the serialized inference graph to ``graph.pb``."""
    path = Path(path)
    (path / GRAPH_DEF_FILE).write_bytes(graph.to_graph_def(input_name))


def format_values(values: np.ndarray) -> str:
    """Row-major values separated by single spaces, last value unterminated.

    Each value uses numpy's shortest round-trip representation for its dtype.
    """
    return " ".join(str(value) for value in np.asarray(values).reshape(-1))


def parse_values(text: str, dtype: np.dtype) -> np.ndarray:
    return np.asarray(text.split(), dtype=np.float64).astype(dtype)


def save_variables(graph: Graph, path: str | Path, save_optimizer_state: bool) -> list[str]:
    """Dump layer (and optionally optimizer) variables as text files.

    Returns:
        names: Variable names in dump order
    """
    path = Path(path)
    names = graph.layer_variables()
    if save_optimizer_state:
        names = names + graph.optimizer_variables()

    with open(path / VARIABLE_NAMES_FILE, "w") as index_file:
        for name in names:
            index_file.write(name + "\n")
            (path / f"{name}.txt").write_text(format_values(graph.get_variable(name)))

    logger.debug("Saved %d variables to %s", len(names), path)
    return names


def read_variable_names(path: str | Path) -> list[str]:
    """Read ``variableNames.txt`` from a model directory."""
    index_path = Path(path) / VARIABLE_NAMES_FILE
    if not index_path.exists():
        raise FileNotFoundError(f"No {VARIABLE_NAMES_FILE} found in {path}")
    return [line.strip() for line in index_path.read_text().splitlines() if line.strip()]


def read_variable(path: str | Path, name: str, dtype: np.dtype = np.float32) -> np.ndarray:
    """Read the flattened values of one variable."""
    variable_path = Path(path) / f"{name}.txt"
    if not variable_path.exists():
        raise FileNotFoundError(f"No values file for variable '{name}' in {path}")
    return parse_values(variable_path.read_text(), dtype)


def load_weights(graph: Graph, path: str | Path, load_optimizer_state: bool) -> list[str]:
    """Restore variable values saved by ``save_variables``.

    Every selected file is read and checked before the graph is touched, so
    a failed load leaves the previous values in place. Optimizer variables
    are skipped when not requested, and always for frozen layers.

    Args:
        graph: Compiled graph with declared variables
        path: Model directory
        load_optimizer_state: Whether to restore optimizer variables

    Returns:
        loaded: Names of the restored variables

    Raises:
        WeightsLoadingError: If layer variables of the graph are not in the index
        TensorNotFoundError: If the index names a variable the graph lacks
        FileNotFoundError: If a selected values file is missing
    """
    names = read_variable_names(path)
    layer_names = [name for name in names if graph.is_layer_variable(name)]
    optimizer_names = [
        name for name in names
        if not graph.is_layer_variable(name) and name.startswith(OPTIMIZER_PREFIX)
    ]
    unknown = [name for name in names if name not in layer_names and name not in optimizer_names]
    if unknown:
        raise TensorNotFoundError(f"No layer variable named '{unknown[0]}' in the graph")

    missing = [name for name in graph.layer_variables() if name not in layer_names]
    if missing:
        raise WeightsLoadingError(
            f"Saved weights in {path} miss variables expected by the graph: {missing}"
        )

    values = {}
    for name in layer_names:
        values[name] = read_variable(path, name, graph.variable_spec(name).dtype)

    if not load_optimizer_state:
        if optimizer_names:
            logger.debug("Skipped %d optimizer variables", len(optimizer_names))
    else:
        frozen = graph.frozen_optimizer_variables()
        for name in optimizer_names:
            if name in frozen:
                logger.debug("Skipped optimizer variable of frozen layer: %s", name)
                continue
            # cast to the slot dtype on assignment
            values[name] = read_variable(path, name, np.float64)

    graph.assign_variables(values)
    return list(values)

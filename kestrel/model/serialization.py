"""Keras-style JSON model configuration (``modelConfig.json``)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kestrel.core.exceptions import ModelConfigurationError
from kestrel.layers import LAYER_CLASSES, Input, Layer

if TYPE_CHECKING:
    from kestrel.model.sequential import Sequential

KERAS_VERSION = "2.2.4-tf"
BACKEND = "jax"


def model_to_config(model: "Sequential") -> dict[str, Any]:
    """Describe the layer stack of a model as a Keras Sequential config."""
    layers = [model.input_layer, *model.layers]
    return {
        "class_name": "Sequential",
        "config": {
            "name": "sequential",
            "layers": [
                {"class_name": layer.keras_class_name, "config": layer.get_config()}
                for layer in layers
            ],
        },
        "keras_version": KERAS_VERSION,
        "backend": BACKEND,
    }


def config_to_layers(config: dict[str, Any]) -> tuple[Input, list[Layer]]:
    """Rebuild (input layer, other layers) from a Sequential config.

    Raises:
        ModelConfigurationError: If the config is not a Sequential starting
            with an InputLayer or names an unsupported layer class
    """
    if config.get("class_name") != "Sequential":
        raise ModelConfigurationError(
            f"Only Sequential configurations are supported, got {config.get('class_name')}"
        )
    layer_configs = config["config"]["layers"]
    if not layer_configs:
        raise ModelConfigurationError("Model configuration contains no layers")

    layers = []
    for layer_config in layer_configs:
        class_name = layer_config["class_name"]
        if class_name not in LAYER_CLASSES:
            raise ModelConfigurationError(f"Unsupported layer class '{class_name}'")
        layers.append(LAYER_CLASSES[class_name].from_config(layer_config["config"]))

    if not isinstance(layers[0], Input):
        raise ModelConfigurationError("Model configuration should start from an InputLayer")
    return layers[0], layers[1:]


def save_model_configuration(model: "Sequential", path: str | Path):
    """Write ``model_to_config(model)`` as indented JSON."""
    with open(path, "w") as f:
        json.dump(model_to_config(model), f, indent=2)


def load_model_layers(path: str | Path) -> tuple[Input, list[Layer]]:
    with open(path) as f:
        return config_to_layers(json.load(f))


def load_model_configuration(path: str | Path) -> "Sequential":
    """Load an uncompiled, untrained Sequential model from a JSON config."""
    from kestrel.model.sequential import Sequential

    input_layer, layers = load_model_layers(path)
    return Sequential.of(input_layer, layers)

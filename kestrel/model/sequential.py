"""Sequential: a linear stack of layers compiled into a Graph.

Lifecycle:
- Assembly (``Sequential.of``): names layers, checks name uniqueness
- ``compile``: propagates shapes, builds forward pass, loss and targets
- ``init`` / ``fit(init_weights=True)`` / ``load_weights``: variable values
- ``fit``, ``evaluate``, ``predict*``: batch loops over the compiled graph
- ``save``: graph definition, JSON configuration and variable dumps
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Sequence

import jax
import numpy as np
from tqdm import tqdm

from kestrel.callbacks import Callback
from kestrel.config import TrainingConfig
from kestrel.core.exceptions import (
    BatchShapeMismatchError,
    LayerNotFoundError,
    ModelConfigurationError,
    ModelStateError,
    RepeatableLayerNameError,
    TensorNotFoundError,
)
from kestrel.core.graph import Graph
from kestrel.core.shape import format_shape, num_elements
from kestrel.dataset import DataBatch, Dataset
from kestrel.history import (
    BatchEvent,
    BatchTrainingEvent,
    EpochTrainingEvent,
    EvaluationResult,
    History,
    TrainingHistory,
)
from kestrel.layers import INPUT_NAME, Dense, Input, Layer, default_activation_name
from kestrel.losses import Loss, Losses
from kestrel.metrics import Metric, Metrics
from kestrel.model import persistence
from kestrel.model.persistence import SavingFormat, WritingMode
from kestrel.optimizers import Optimizer

logger = logging.getLogger(__name__)

LABEL_NAME = "y"
OUTPUT_NAME = "output"
TRAINING_LOSS = "training_loss"
METRIC_NAME = "metric"

DEFAULT_SEED = 12


class Sequential:
    """A linear stack of layers trained as one model.

    Use ``Sequential.of`` to assemble a model; it names unnamed layers and
    links them back to the model.

    Args:
        input_layer: Input layer declaring the per-example input shape
        *layers: Remaining layers in forward order
        seed: Seed of the variable initialization RNG

    Example:
        >>> model = Sequential.of(
        ...     Input(4),
        ...     Dense(8, Activations.RELU),
        ...     Dense(3, Activations.LINEAR),
        ... )
        >>> model.compile(Adam(), Losses.SOFT_MAX_CROSS_ENTROPY_WITH_LOGITS, Metrics.ACCURACY)
        >>> history = model.fit(train, epochs=10, batch_size=32)
        >>> result = model.evaluate(test, batch_size=32)
    """

    def __init__(self, input_layer: Input, *layers: Layer, seed: int = DEFAULT_SEED):
        if not isinstance(input_layer, Input):
            raise ModelConfigurationError("Model should start from the Input layer")
        self.input_layer = input_layer
        self.layers: list[Layer] = list(layers)

        self._layers_by_name: dict[str, Layer] = {}
        for layer in [input_layer, *self.layers]:
            if layer.name in self._layers_by_name:
                raise RepeatableLayerNameError(layer.name)
            self._layers_by_name[layer.name] = layer

        self.seed = seed
        self._rng = jax.random.PRNGKey(seed)
        self.graph = Graph()
        self.loss: Loss | None = None
        self.metric: Metric | None = None
        self.optimizer: Optimizer | None = None
        self.callback: Callback = Callback()
        self.targets: list[str] = []
        self.num_classes = 0

        self.is_compiled = False
        self.is_initialized = False
        self.stop_training = False

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, *args: Any, seed: int = DEFAULT_SEED) -> "Sequential":
        """Assemble a model.

        Accepts ``of(input, layer, ...)``, ``of(input, [layers])`` or
        ``of([input, layer, ...])``. Unnamed layers are named
        ``<type>_<n>`` with ``n`` counting the unnamed layers of this call.

        Raises:
            ModelConfigurationError: Empty layer list or no leading Input
            RepeatableLayerNameError: Two layers share a name
        """
        if len(args) == 1 and isinstance(args[0], (list, tuple)):
            all_layers = list(args[0])
            if not all_layers:
                raise ModelConfigurationError("Model should contain layers!")
            input_layer, layers = all_layers[0], all_layers[1:]
        elif len(args) == 2 and isinstance(args[1], (list, tuple)):
            input_layer, layers = args[0], list(args[1])
        elif args:
            input_layer, layers = args[0], list(args[1:])
        else:
            raise ModelConfigurationError("Model should contain layers!")

        if not isinstance(input_layer, Input):
            raise ModelConfigurationError("Model should start from the Input layer")

        _assign_layer_names(layers)
        model = cls(input_layer, *layers, seed=seed)
        for layer in layers:
            layer.parent_model = model
        return model

    @classmethod
    def load_model_configuration(cls, path: str | Path) -> "Sequential":
        """Load an uncompiled model from a JSON configuration file."""
        from kestrel.model.serialization import load_model_configuration

        return load_model_configuration(path)

    @classmethod
    def load_default_model_configuration(cls, model_directory: str | Path) -> "Sequential":
        """Load an uncompiled model from ``modelConfig.json`` in a directory."""
        return cls.load_model_configuration(Path(model_directory) / persistence.MODEL_CONFIG_FILE)

    def get_layer(self, layer_name: str) -> Layer:
        """Return the layer named ``layer_name``.

        Raises:
            LayerNotFoundError: If no layer has this name
        """
        if layer_name not in self._layers_by_name:
            raise LayerNotFoundError(f"No such layer {layer_name} in the model.")
        return self._layers_by_name[layer_name]

    # ------------------------------------------------------------------
    # Compile and initialization
    # ------------------------------------------------------------------

    def compile(
        self,
        optimizer: Optimizer,
        loss: Loss | Losses,
        metric: Metric | Metrics,
        callback: Callback | None = None
    ):
        """Bind loss, metric and optimizer and build the graph.

        Recompiling replaces the previous graph entirely; variables must be
        initialized or loaded again.

        Raises:
            ModelConfigurationError: If the last layer is not a Dense layer
                with an activation
        """
        if self.is_compiled:
            logger.info("Model was recompiled.")
        if self.is_compiled or self.graph.node_names():
            self._reset_graph()

        self._validate_model_architecture()
        self.num_classes = self.layers[-1].output_size

        self.loss = Losses.convert(loss)
        self.metric = Metrics.convert(metric)
        self.optimizer = optimizer
        self.callback = callback if callback is not None else Callback()

        self.input_layer.define_variables(self.graph)
        input_shape = self.input_layer.compute_output_shape()
        self.input_layer.output_shape = (None, *input_shape)
        if self.input_layer.name != INPUT_NAME:
            self.graph.add_alias(self.input_layer.name, INPUT_NAME)

        for layer in self.layers:
            layer.define_variables(self.graph, input_shape)
            input_shape = layer.compute_output_shape(input_shape)
            layer.output_shape = (None, *input_shape)
            logger.debug("%s; output_shape: %s", layer, format_shape(layer.output_shape))

        self.graph.add_placeholder(LABEL_NAME, (None, self.num_classes))
        raw_output = self._transform_input_with_layers(INPUT_NAME)

        self.graph.add_op(TRAINING_LOSS, self.loss.apply, inputs=(raw_output, LABEL_NAME))
        if self.loss.produces_raw_logits:
            self.graph.add_op(OUTPUT_NAME, jax.nn.softmax, inputs=(raw_output,))
        else:
            self.graph.add_alias(OUTPUT_NAME, raw_output)
        self.graph.add_op(METRIC_NAME, self.metric.apply, inputs=(OUTPUT_NAME, LABEL_NAME))

        self.targets = self.optimizer.prepare_targets(self.graph, TRAINING_LOSS)
        self.is_compiled = True

    def _validate_model_architecture(self):
        if not self.layers or not isinstance(self.layers[-1], Dense):
            raise ModelConfigurationError(
                "DL architectures are not finished with Dense layer are not supported yet!"
            )
        if not self.layers[-1].has_activation():
            raise ModelConfigurationError("Last layer must have an activation function.")

    def _transform_input_with_layers(self, input_name: str) -> str:
        """Register every layer's transform; return the last node name."""
        out = input_name
        for layer in self.layers:
            self.graph.add_op(
                layer.name,
                layer.transform_input,
                inputs=(out,),
                variables=layer.variable_names,
            )
            if layer.has_activation():
                self.graph.add_alias(default_activation_name(layer), layer.name)
            out = layer.name
        return out

    def _reset_graph(self):
        self.graph.close()
        self.graph = Graph()
        self.targets = []
        self.is_compiled = False
        self.is_initialized = False

    def init(self):
        """Initialize all layer variables.

        Raises:
            ModelStateError: If not compiled or already initialized
        """
        self._check_compiled()
        if self.is_initialized:
            raise ModelStateError("Model is initialized already!")
        logger.debug("Initialization of graph variables")
        self.graph.initialize_layer_variables(self._next_rng())
        self.is_initialized = True

    def _next_rng(self) -> jax.Array:
        self._rng, init_rng = jax.random.split(self._rng)
        return init_rng

    # ------------------------------------------------------------------
    # Training and evaluation
    # ------------------------------------------------------------------

    def fit(
        self,
        dataset: Dataset,
        epochs: int = 5,
        batch_size: int = 32,
        validation_dataset: Dataset | None = None,
        validation_batch_size: int | None = None,
        verbose: bool = True,
        init_weights: bool = True,
        init_optimizer: bool = True,
        config: TrainingConfig | None = None
    ) -> TrainingHistory:
        """Train the model for a number of epochs.

        Args:
            dataset: Training data
            epochs: Number of epochs (1-indexed in events)
            batch_size: Training batch size; a shorter final batch is allowed
            validation_dataset: Optional data evaluated after every epoch
            validation_batch_size: Validation batch size (None = batch_size)
            verbose: Log per-batch statistics at INFO (else DEBUG) and show progress
            init_weights: Initialize layer variables before training
            init_optimizer: Initialize optimizer variables before training
            config: Optional TrainingConfig overriding the keyword arguments

        Returns:
            history: Batch and epoch events of this call

        Raises:
            ModelStateError: If not compiled, or weights are neither
                initialized nor requested to be
            BatchShapeMismatchError: If a batch disagrees with the model shapes
        """
        if config is not None:
            epochs = config.epochs
            batch_size = config.batch_size
            validation_batch_size = config.validation_batch_size
            verbose = config.verbose
            init_weights = config.init_weights
            init_optimizer = config.init_optimizer

        self._check_compiled()

        if init_weights:
            logger.debug("Initialization of graph variables")
            self.graph.initialize_layer_variables(self._next_rng())
            self.is_initialized = True
        elif not self.is_initialized:
            raise ModelStateError(
                "Model variables are not initialized. Call 'init' or 'load_weights', "
                "or fit with init_weights=True."
            )

        if init_optimizer:
            self.graph.initialize_optimizer_variables()
        elif not self.graph.optimizer_initialized:
            logger.info("No optimizer state to resume from, initializing optimizer variables")
            self.graph.initialize_optimizer_variables()

        batch_log_level = logging.INFO if verbose else logging.DEBUG
        history = TrainingHistory()

        self.callback.on_train_begin()

        for epoch in tqdm(range(1, epochs + 1), desc="Training", disable=not verbose):
            if self._is_stopped():
                break
            self.callback.on_epoch_begin(epoch, history)
            batch_iter = dataset.batch_iterator(batch_size)

            batch_counter = 0
            loss_accum = 0.0
            metric_accum = 0.0

            while batch_iter.has_next() and not self._is_stopped():
                self.callback.on_train_batch_begin(batch_counter, batch_size, history)
                batch = next(batch_iter)
                x, y = self._calculate_xy(batch)

                loss_value, metric_value = self._train_on_batch(x, y)
                loss_accum += loss_value
                metric_accum += metric_value

                event = BatchTrainingEvent(epoch, batch_counter, loss_value, metric_value)
                history.append_batch(event)
                logger.log(
                    batch_log_level,
                    "Batch stat: { loss: %s metric: %s }", loss_value, metric_value
                )
                self.callback.on_train_batch_end(batch_counter, batch_size, event, history)
                batch_counter += 1

            avg_loss = _average(loss_accum, batch_counter)
            avg_metric = _average(metric_accum, batch_counter)

            if validation_dataset is not None:
                result = self.evaluate(validation_dataset, validation_batch_size or batch_size)
                val_loss = result.loss
                val_metric = result.metrics[Metrics.convert_back(self.metric)]
                logger.info(
                    "epochs: %d loss: %.4f metric: %.4f val loss: %.4f val metric: %.4f",
                    epoch, avg_loss, avg_metric, val_loss, val_metric
                )
                epoch_event = EpochTrainingEvent(epoch, avg_loss, avg_metric, val_loss, val_metric)
            else:
                logger.info("epochs: %d loss: %.4f metric: %.4f", epoch, avg_loss, avg_metric)
                epoch_event = EpochTrainingEvent(epoch, avg_loss, avg_metric)

            history.append_epoch(epoch_event)
            self.callback.on_epoch_end(epoch, epoch_event, history)

        self.callback.on_train_end(history)
        return history

    def _train_on_batch(self, x: np.ndarray, y: np.ndarray) -> tuple[float, float]:
        """Run one optimizer step; return (loss, metric) of the batch."""
        loss_value, metric_value = self.graph.run(
            {INPUT_NAME: x, LABEL_NAME: y},
            fetches=(TRAINING_LOSS, METRIC_NAME),
            targets=self.targets,
        )
        return float(loss_value), float(metric_value)

    def _is_stopped(self) -> bool:
        return self.stop_training or self.callback.stop_training

    def evaluate(self, dataset: Dataset, batch_size: int = 256) -> EvaluationResult:
        """Average loss and metric over ``dataset`` without updating weights.

        Raises:
            ModelStateError: If not compiled or not initialized
        """
        self._check_compiled()
        self._check_initialized()
        evaluation_history = History()

        self.callback.on_test_begin()

        batch_iter = dataset.batch_iterator(batch_size)
        loss_accum = 0.0
        metric_accum = 0.0
        batch_counter = 0

        while batch_iter.has_next():
            self.callback.on_test_batch_begin(batch_counter, batch_size, evaluation_history)
            batch = next(batch_iter)
            x, y = self._calculate_xy(batch)

            metric_value, loss_value = self.graph.run(
                {INPUT_NAME: x, LABEL_NAME: y},
                fetches=(METRIC_NAME, TRAINING_LOSS),
            )
            metric_value = float(metric_value)
            loss_value = float(loss_value)
            metric_accum += metric_value
            loss_accum += loss_value

            event = BatchEvent(batch_counter, loss_value, metric_value)
            evaluation_history.append_batch(event)
            self.callback.on_test_batch_end(batch_counter, batch_size, event, evaluation_history)
            batch_counter += 1

        self.callback.on_test_end(evaluation_history)
        return EvaluationResult(
            loss=_average(loss_accum, batch_counter),
            metrics={
                Metrics.convert_back(self.metric): _average(metric_accum, batch_counter)
            },
        )

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def predict_all(self, dataset: Dataset, batch_size: int) -> np.ndarray:
        """Predicted class index of every example.

        Raises:
            ValueError: If the dataset size is not a multiple of batch_size
        """
        self._check_compiled()
        self._check_initialized()
        if batch_size < 1 or dataset.size() % batch_size != 0:
            raise ValueError("The amount of images must be a multiple of batch size.")

        self.callback.on_predict_begin()

        predictions = np.full(dataset.size(), np.iinfo(np.int64).min, dtype=np.int64)
        batch_iter = dataset.batch_iterator(batch_size)
        batch_counter = 0

        while batch_iter.has_next():
            self.callback.on_predict_batch_begin(batch_counter, batch_size)
            batch = next(batch_iter)
            x = self._calculate_x(batch)

            (probabilities,) = self.graph.run({INPUT_NAME: x}, fetches=(OUTPUT_NAME,))
            offset = batch_size * batch_counter
            predictions[offset:offset + batch.size] = np.argmax(probabilities, axis=1)

            self.callback.on_predict_batch_end(batch_counter, batch_size)
            batch_counter += 1

        self.callback.on_predict_end()
        return predictions

    def predict(self, input_data: np.ndarray, prediction_tensor_name: str | None = None) -> int:
        """Predicted class index of one example."""
        soft_prediction = self.predict_softly(input_data, prediction_tensor_name)
        return int(np.argmax(soft_prediction))

    def predict_softly(
        self,
        input_data: np.ndarray,
        prediction_tensor_name: str | None = None
    ) -> np.ndarray:
        """Per-class scores of one example.

        Args:
            input_data: One example, flat or shaped like the Input layer
            prediction_tensor_name: Optional graph node to fetch instead of
                the default prediction

        Raises:
            TensorNotFoundError: If the named node does not exist
        """
        soft_prediction, _ = self._predict_softly_and_get_activations(
            input_data, False, prediction_tensor_name
        )
        return soft_prediction

    def predict_and_get_activations(
        self,
        input_data: np.ndarray,
        prediction_tensor_name: str | None = None
    ) -> tuple[int, list[np.ndarray]]:
        """Predicted class plus the activations of every activation layer but the last."""
        soft_prediction, activations = self._predict_softly_and_get_activations(
            input_data, True, prediction_tensor_name
        )
        return int(np.argmax(soft_prediction)), activations

    def _predict_softly_and_get_activations(
        self,
        input_data: np.ndarray,
        visualization_is_enabled: bool,
        prediction_tensor_name: str | None
    ) -> tuple[np.ndarray, list[np.ndarray]]:
        self._check_compiled()
        self._check_initialized()

        if prediction_tensor_name:
            if not self.graph.has_node(prediction_tensor_name):
                raise TensorNotFoundError(
                    f"No such tensor output named [{prediction_tensor_name}] in the graph!"
                )
            prediction_name = prediction_tensor_name
        else:
            prediction_name = OUTPUT_NAME

        fetches = [prediction_name]
        if visualization_is_enabled:
            fetches += [
                default_activation_name(layer)
                for layer in self.layers[:-1]
                if layer.has_activation()
            ]

        x = self._reshape_x(np.asarray(input_data, dtype=np.float32).reshape(-1), 1)
        tensors = self.graph.run({INPUT_NAME: x}, fetches=fetches)
        return tensors[0][0], list(tensors[1:])

    def _calculate_xy(self, batch: DataBatch) -> tuple[np.ndarray, np.ndarray]:
        """Shape batch buffers as ``[batch, *input]`` and ``[batch, classes]``."""
        x = self._calculate_x(batch)
        y_shape = (batch.size, self.num_classes)
        if num_elements(y_shape) != batch.y.size:
            raise BatchShapeMismatchError(
                f"The calculated [from the Sequential model] label batch shape "
                f"{list(y_shape)} doesn't match actual data buffer size {batch.y.size}. "
                f"\nPlease, check the input label data or correct amount of classes "
                f"[amount of neurons] in last Dense layer, if you have a classification problem."
                f"\nHighly likely, you have different amount of classes presented in data "
                f"and described in model as desired output.",
                expected_shape=y_shape,
                buffer_size=batch.y.size,
            )
        return x, batch.y.reshape(y_shape)

    def _calculate_x(self, batch: DataBatch) -> np.ndarray:
        return self._reshape_x(batch.x, batch.size)

    def _reshape_x(self, buffer: np.ndarray, batch_size: int) -> np.ndarray:
        x_shape = (batch_size, *self.input_layer.input_shape)
        if num_elements(x_shape) != buffer.size:
            raise BatchShapeMismatchError(
                f"The calculated [from the Sequential model] data batch shape "
                f"{list(x_shape)} doesn't match actual data buffer size {buffer.size}. "
                f"Please, check input data.",
                expected_shape=x_shape,
                buffer_size=buffer.size,
            )
        return buffer.reshape(x_shape)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(
        self,
        model_directory: str | Path,
        saving_format: SavingFormat = SavingFormat.GRAPH_CUSTOM_VARIABLES,
        save_optimizer_state: bool = False,
        writing_mode: WritingMode = WritingMode.FAIL_IF_EXISTS
    ):
        """Save the model into ``model_directory``.

        Raises:
            FileExistsError: If the directory exists in FAIL_IF_EXISTS mode
        """
        from kestrel.model.serialization import save_model_configuration

        self._check_compiled()
        needs_variables = saving_format != SavingFormat.GRAPH
        if needs_variables:
            self._check_initialized()

        path = persistence.prepare_directory(model_directory, writing_mode)

        if saving_format in (SavingFormat.GRAPH_CUSTOM_VARIABLES, SavingFormat.GRAPH):
            persistence.save_graph_def(self.graph, path, INPUT_NAME)
        elif saving_format == SavingFormat.JSON_CONFIG_CUSTOM_VARIABLES:
            save_model_configuration(self, path / persistence.MODEL_CONFIG_FILE)
        else:
            raise ValueError(f"Unknown saving format: {saving_format}")

        if needs_variables:
            persistence.save_variables(self.graph, path, save_optimizer_state)
        logger.info("Model saved to %s (%s)", path, saving_format.value)

    def load_weights(self, model_directory: str | Path, load_optimizer_state: bool = False):
        """Restore variable values saved by ``save``.

        The model must be compiled with the architecture used when saving.
        """
        self._check_compiled()
        persistence.load_weights(self.graph, model_directory, load_optimizer_state)
        self.is_initialized = True

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def summary(self, layer_name_type_size: int = 30, output_shape_size: int = 26) -> list[str]:
        """Log and return a per-layer description table.

        Raises:
            ModelStateError: If not compiled
        """
        if not self.is_compiled:
            raise ModelStateError(
                "The model is not compiled yet. Compile the model to use this method."
            )
        separator = "=" * 65
        logger.info(separator)
        logger.info("Model: Sequential")
        logger.info("_" * 65)
        logger.info("Layer (type)                 Output Shape              Param #   ")
        logger.info(separator)

        total_trainable = 0
        total_frozen = 0
        descriptions = []
        for layer in self.layers:
            if layer.trainable:
                total_trainable += layer.param_count()
            else:
                total_frozen += layer.param_count()
            description = _describe_layer(layer, layer_name_type_size, output_shape_size)
            descriptions.append(description)
            logger.info(description)
            logger.info("_" * 65)

        logger.info(separator)
        logger.info("Total trainable params: %d", total_trainable)
        logger.info("Total frozen params: %d", total_frozen)
        logger.info("Total params: %d", total_trainable + total_frozen)
        logger.info(separator)
        return descriptions

    def close(self):
        """Release the graph and its variables."""
        self.graph.close()
        self.is_initialized = False

    def __enter__(self) -> "Sequential":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _check_compiled(self):
        if not self.is_compiled:
            raise ModelStateError(
                "The model is not compiled yet. Call 'compile' method to compile the model."
            )

    def _check_initialized(self):
        if not self.is_initialized:
            raise ModelStateError(
                "Model variables are not initialized. Call 'init', 'fit' or 'load_weights' first."
            )

    def __repr__(self) -> str:
        return (
            f"Sequential(\n"
            f"  input={self.input_layer.input_shape},\n"
            f"  layers={[layer.name for layer in self.layers]},\n"
            f"  compiled={self.is_compiled}, initialized={self.is_initialized}\n"
            f")"
        )


def _assign_layer_names(layers: Sequence[Layer]):
    counter = 1
    for layer in layers:
        if not layer.name:
            layer.name = f"{type(layer).__name__.lower()}_{counter}"
            counter += 1


def _average(total: float, count: int) -> float:
    return total / count if count else math.nan


def _describe_layer(layer: Layer, name_type_size: int, output_shape_size: int) -> str:
    first_part = f"{layer.name}({type(layer).__name__})"
    second_part = format_shape(layer.output_shape or ())
    return (
        first_part.ljust(name_type_size - 1)
        + second_part.ljust(output_shape_size)
        + str(layer.param_count())
    )

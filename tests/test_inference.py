"""Tests for serving predictions from a saved model directory."""

from __future__ import annotations

import numpy as np
import pytest

from kestrel import Dataset, InferenceModel, Sequential
from kestrel.core import ModelStateError, TensorNotFoundError, WeightsLoadingError
from kestrel.layers import Activations, Dense, Input
from kestrel.losses import Losses
from kestrel.metrics import Metrics
from kestrel.model import SavingFormat
from kestrel.model import persistence
from kestrel.optimizers import Adam


@pytest.fixture
def saved_model(tmp_path):
    """Train a small classifier and save it in the default format."""
    rng = np.random.default_rng(0)
    x = rng.normal(size=(20, 4)).astype(np.float32)
    dataset = Dataset.from_labels(x, (x[:, 0] > 0).astype(np.int64), num_classes=2)

    model = Sequential.of(
        Input(4),
        Dense(8, Activations.RELU),
        Dense(2, Activations.LINEAR),
    )
    model.compile(Adam(0.01), Losses.SOFT_MAX_CROSS_ENTROPY_WITH_LOGITS, Metrics.ACCURACY)
    model.fit(dataset, epochs=2, batch_size=5, verbose=False)
    model.save(tmp_path / "model")
    return model, dataset, tmp_path / "model"


def test_inference_matches_trained_model(saved_model):
    """Loaded graph predictions equal the in-memory model's."""
    model, dataset, path = saved_model

    with InferenceModel.load(path) as inference:
        for x in dataset.x[:5]:
            np.testing.assert_allclose(
                inference.predict_softly(x), model.predict_softly(x), rtol=1e-6, atol=1e-6
            )
            assert inference.predict(x) == model.predict(x)


def test_inference_exposes_named_nodes(saved_model):
    """Intermediate activations can be fetched by node name."""
    model, dataset, path = saved_model
    inference = InferenceModel.load(path)

    assert "output" in inference.node_names()
    assert "training_loss" not in inference.node_names()
    hidden = inference.predict_softly(dataset.x[0], "Activation_dense_1")
    assert hidden.shape == (8,)


def test_inference_unknown_node(saved_model):
    """Unknown node names raise TensorNotFoundError."""
    _, dataset, path = saved_model
    inference = InferenceModel.load(path)

    with pytest.raises(TensorNotFoundError):
        inference.predict_softly(dataset.x[0], "missing")


def test_inference_closed_model(saved_model):
    """A closed inference model refuses to predict."""
    _, dataset, path = saved_model
    inference = InferenceModel.load(path)
    inference.close()

    with pytest.raises(ModelStateError):
        inference.predict(dataset.x[0])


def test_inference_requires_graph_file(saved_model, tmp_path):
    """JSON-format directories carry no graph.pb."""
    model, _, _ = saved_model
    model.save(tmp_path / "json", saving_format=SavingFormat.JSON_CONFIG_CUSTOM_VARIABLES)

    with pytest.raises(FileNotFoundError):
        InferenceModel.load(tmp_path / "json")


def test_inference_requires_all_variables(saved_model):
    """A truncated variable index is reported."""
    _, _, path = saved_model
    index = path / persistence.VARIABLE_NAMES_FILE
    index.write_text("\n".join(persistence.read_variable_names(path)[:1]) + "\n")

    with pytest.raises(WeightsLoadingError):
        InferenceModel.load(path)

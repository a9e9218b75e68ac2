"""Tests for the Graph container."""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
import optax
import pytest

from kestrel.core import (
    BackendExecutionError,
    Graph,
    ModelConfigurationError,
    ModelStateError,
    TensorNotFoundError,
)


def linear_init(rng):
    return {
        "kernel": jax.random.normal(rng, (3, 2)),
        "bias": jnp.zeros((2,)),
    }


def make_graph(frozen: bool = False) -> Graph:
    """x(3) -> linear(2) -> squared-error loss against y."""
    graph = Graph()
    graph.add_placeholder("x", (None, 3))
    graph.add_placeholder("y", (None, 2))
    names = graph.declare_variables("dense", linear_init, trainable=True)
    graph.add_op(
        "dense",
        lambda params, x: x @ params["kernel"] + params["bias"],
        inputs=("x",),
        variables=names,
    )
    if frozen:
        frozen_names = graph.declare_variables(
            "scale", lambda rng: {"gain": jnp.ones((2,))}, trainable=False
        )
        graph.add_op(
            "scaled",
            lambda params, x: x * params["gain"],
            inputs=("dense",),
            variables=frozen_names,
        )
        head = "scaled"
    else:
        head = "dense"
    graph.add_op("loss", lambda p, y: jnp.mean((p - y) ** 2), inputs=(head, "y"))
    return graph


# ============================================================================
# Construction
# ============================================================================

def test_declare_variables_prefixes_layer_name():
    """Declared variables should be named <layer>_<short>."""
    graph = Graph()
    names = graph.declare_variables("dense", linear_init)

    assert names == {"kernel": "dense_kernel", "bias": "dense_bias"}
    assert graph.variable_spec("dense_kernel").shape == (3, 2)
    assert graph.layer_variables() == ["dense_bias", "dense_kernel"]


def test_duplicate_node_name_rejected():
    """Adding a node under an existing name should fail."""
    graph = Graph()
    graph.add_placeholder("x", (None, 3))

    with pytest.raises(ModelConfigurationError):
        graph.add_op("x", lambda x: x, inputs=("x",))


def test_op_with_unknown_input_rejected():
    """Ops can only read previously declared nodes."""
    graph = Graph()

    with pytest.raises(TensorNotFoundError):
        graph.add_op("out", lambda x: x, inputs=("missing",))


def test_variable_partitions():
    """Trainable and frozen variables should be reported separately."""
    graph = make_graph(frozen=True)

    assert graph.trainable_layer_variables() == ["dense_bias", "dense_kernel"]
    assert graph.frozen_layer_variables() == ["scale_gain"]


def test_alias_and_dependencies():
    """Aliases should expose a node and inherit its dependencies."""
    graph = make_graph()
    graph.add_alias("prediction", "dense")

    assert graph.has_node("prediction")
    assert graph.depends_on("prediction", "x")
    assert not graph.depends_on("prediction", "y")
    assert graph.depends_on("loss", "y")
    assert "loss" not in graph.inference_nodes("x")
    assert "prediction" in graph.inference_nodes("x")


# ============================================================================
# Variable lifecycle
# ============================================================================

def test_run_before_initialization_fails():
    """Running with uninitialized variables should raise ModelStateError."""
    graph = make_graph()

    with pytest.raises(ModelStateError):
        graph.run({"x": np.ones((1, 3), np.float32)}, fetches=["dense"])


def test_initialization_is_deterministic_per_key():
    """The same key should produce the same variables."""
    first = make_graph()
    second = make_graph()
    first.initialize_layer_variables(jax.random.PRNGKey(7))
    second.initialize_layer_variables(jax.random.PRNGKey(7))

    np.testing.assert_array_equal(
        first.get_variable("dense_kernel"), second.get_variable("dense_kernel")
    )


def test_optimizer_requires_layer_variables():
    """Optimizer state can only be created from initialized weights."""
    graph = make_graph()
    graph.set_optimizer(optax.sgd(0.1))

    with pytest.raises(ModelStateError):
        graph.initialize_optimizer_variables()


def test_optimizer_variables_track_trainable_only():
    """Optimizer slots should exist for trainable variables only."""
    graph = make_graph(frozen=True)
    graph.set_optimizer(optax.adam(0.01))
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    graph.initialize_optimizer_variables()

    names = graph.optimizer_variables()
    assert names
    assert all(name.startswith("optimizer") for name in names)
    assert any("dense_kernel" in name for name in names)
    assert not any("scale_gain" in name for name in names)


def test_assign_variable_reshapes_flat_values():
    """Flat values should be reshaped to the declared variable shape."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    graph.assign_variable("dense_kernel", np.arange(6, dtype=np.float32))

    np.testing.assert_array_equal(
        graph.get_variable("dense_kernel"),
        np.arange(6, dtype=np.float32).reshape(3, 2),
    )


def test_assign_variable_size_mismatch():
    """Assigning the wrong number of values should raise ValueError."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))

    with pytest.raises(ValueError, match="expects 6 values"):
        graph.assign_variable("dense_kernel", np.zeros(5))


def test_frozen_optimizer_variable_detection():
    """Slots tracking a frozen variable are frozen-layer state."""
    graph = make_graph(frozen=True)
    graph.set_optimizer(optax.adam(0.01))

    assert graph.is_frozen_optimizer_variable("optimizer_0_mu_scale_gain")
    assert not graph.is_frozen_optimizer_variable("optimizer_0_mu_dense_kernel")
    assert not graph.is_frozen_optimizer_variable("optimizer_0_count")
    assert not graph.is_frozen_optimizer_variable("scale_gain")


def test_frozen_optimizer_variables_match_whole_names():
    """A trainable variable whose name ends with a frozen name keeps its slots."""
    graph = Graph()
    graph.declare_variables("dense_1", lambda rng: {"kernel": jnp.ones((2,))}, trainable=False)
    graph.declare_variables("my_dense_1", lambda rng: {"kernel": jnp.ones((2,))}, trainable=True)
    graph.set_optimizer(optax.adam(0.01))

    frozen = graph.frozen_optimizer_variables()

    assert "optimizer_0_mu_dense_1_kernel" in frozen
    assert "optimizer_0_mu_my_dense_1_kernel" not in frozen
    assert "optimizer_0_nu_my_dense_1_kernel" not in frozen


def test_layer_named_like_optimizer_stays_in_layer_partition():
    """Variables of a layer named optimizer_* are layer variables."""
    graph = Graph()
    graph.declare_variables("optimizer_head", lambda rng: {"kernel": jnp.zeros((2,))}, trainable=True)
    graph.set_optimizer(optax.adam(0.01))
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    graph.initialize_optimizer_variables()

    graph.assign_variable("optimizer_head_kernel", np.array([1.0, 2.0], np.float32))

    assert graph.is_layer_variable("optimizer_head_kernel")
    assert not graph.is_optimizer_variable("optimizer_head_kernel")
    assert graph.is_optimizer_variable("optimizer_0_mu_optimizer_head_kernel")
    np.testing.assert_array_equal(graph.get_variable("optimizer_head_kernel"), [1.0, 2.0])


def test_assign_variables_is_all_or_nothing():
    """A failing batch assignment leaves every variable unchanged."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    before = graph.get_variable("dense_kernel")

    with pytest.raises(ValueError):
        graph.assign_variables({
            "dense_kernel": np.zeros(6, np.float32),
            "dense_bias": np.zeros(5, np.float32),
        })

    np.testing.assert_array_equal(graph.get_variable("dense_kernel"), before)


# ============================================================================
# Execution
# ============================================================================

def test_fetch_returns_numpy_values():
    """Fetches should be computed from the current variables."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    graph.assign_variable("dense_kernel", np.ones(6, np.float32))

    (out,) = graph.run({"x": np.ones((2, 3), np.float32)}, fetches=["dense"])

    assert isinstance(out, np.ndarray)
    np.testing.assert_allclose(out, np.full((2, 2), 3.0))


def test_missing_feed_fails():
    """Fetching a node whose placeholder is not fed should fail."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))

    with pytest.raises(ModelStateError, match="must be fed"):
        graph.run({"x": np.ones((1, 3), np.float32)}, fetches=["loss"])


def test_unknown_fetch_fails():
    """Unknown fetch names should raise TensorNotFoundError."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))

    with pytest.raises(TensorNotFoundError):
        graph.run({"x": np.ones((1, 3), np.float32)}, fetches=["nope"])


def test_target_updates_trainable_variables_only():
    """An optimizer step should change trainable and keep frozen variables."""
    graph = make_graph(frozen=True)
    graph.set_optimizer(optax.sgd(0.1))
    target = graph.add_optimizer_target("train", "loss")
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    graph.initialize_optimizer_variables()
    kernel_before = graph.get_variable("dense_kernel")
    gain_before = graph.get_variable("scale_gain")

    feeds = {"x": np.ones((4, 3), np.float32), "y": np.zeros((4, 2), np.float32)}
    (loss_before,) = graph.run(feeds, fetches=["loss"], targets=[target])
    (loss_after,) = graph.run(feeds, fetches=["loss"])

    assert not np.allclose(graph.get_variable("dense_kernel"), kernel_before)
    np.testing.assert_array_equal(graph.get_variable("scale_gain"), gain_before)
    assert loss_after < loss_before


def test_backend_failure_is_wrapped():
    """Errors raised inside the backend should surface as BackendExecutionError."""
    graph = Graph()
    graph.add_placeholder("x", (None, 3))
    graph.add_op("bad", lambda x: x @ jnp.ones((5, 5)), inputs=("x",))

    with pytest.raises(BackendExecutionError) as info:
        graph.run({"x": np.ones((1, 3), np.float32)}, fetches=["bad"])
    assert info.value.__cause__ is not None


def test_closed_graph_rejects_run():
    """A closed graph releases its variables and cannot run."""
    graph = make_graph()
    graph.initialize_layer_variables(jax.random.PRNGKey(0))
    graph.close()

    assert graph.variables == {}
    with pytest.raises(ModelStateError):
        graph.run({"x": np.ones((1, 3), np.float32)}, fetches=["dense"])


def test_graph_def_serializes_inference_nodes():
    """The exported graph should be non-empty bytes."""
    graph = make_graph()

    payload = graph.to_graph_def("x")

    assert isinstance(payload, bytes)
    assert len(payload) > 0

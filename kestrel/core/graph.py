"""Graph: the named op graph and variable store behind a model.

Handles:
- Placeholders, ops and aliases addressed by name
- Layer variables partitioned into trainable and frozen sets
- Optimizer state kept for trainable variables only
- Running fetches and optimizer targets as JIT-compiled functions
- Exporting the inference sub-graph as a portable artifact
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import jax
import jax.numpy as jnp
import numpy as np
import optax
from jax import export

from .exceptions import (
    BackendExecutionError,
    KestrelError,
    ModelConfigurationError,
    ModelStateError,
    TensorNotFoundError,
)

logger = logging.getLogger(__name__)

OPTIMIZER_PREFIX = "optimizer"

InitFn = Callable[[jax.Array], dict[str, Any]]


@dataclass(frozen=True)
class Placeholder:
    """External input of the graph, bound at run time."""
    name: str
    shape: tuple[int | None, ...]
    dtype: Any = jnp.float32


@dataclass(frozen=True)
class Op:
    """A named node computing ``fn(*inputs)``.

    When ``variables`` is given (even empty) the node is parameterised and
    is called as ``fn(params, *inputs)``, ``params`` mapping each short name
    to the current value of the graph variable it refers to.
    """
    name: str
    fn: Callable[..., Any]
    inputs: tuple[str, ...]
    variables: dict[str, str] | None = None


@dataclass(frozen=True)
class VariableGroup:
    """Variables declared together by one layer."""
    layer_name: str
    init_fn: InitFn
    names: dict[str, str]
    trainable: bool


@dataclass(frozen=True)
class Target:
    """An optimizer step minimising the node ``loss_name``."""
    name: str
    loss_name: str


class Graph:
    """Named computation graph with classified variables.

    Every variable belongs to exactly one of three partitions: trainable
    layer variables, frozen layer variables and optimizer variables.
    Optimizer variable names start with ``"optimizer"`` and contain the
    name of the layer variable they track.

    Example:
        >>> graph = Graph()
        >>> graph.add_placeholder("x", (None, 4))
        >>> graph.add_op("double", lambda x: 2 * x, inputs=("x",))
        >>> graph.run({"x": np.ones((1, 4))}, fetches=["double"])
    """

    def __init__(self):
        self._placeholders: dict[str, Placeholder] = {}
        self._ops: dict[str, Op] = {}
        self._groups: list[VariableGroup] = []
        self._specs: dict[str, jax.ShapeDtypeStruct] = {}
        self._trainable: dict[str, bool] = {}
        self._targets: dict[str, Target] = {}
        self._executables: dict[tuple, Callable] = {}
        self.variables: dict[str, jax.Array] = {}
        self.optimizer_state: Any = None
        self.tx: optax.GradientTransformation | None = None
        self.is_closed = False

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def add_placeholder(
        self,
        name: str,
        shape: Sequence[int | None],
        dtype: Any = jnp.float32
    ) -> Placeholder:
        """Declare an external input bound through ``run`` feeds."""
        self._check_new_name(name)
        placeholder = Placeholder(name, tuple(shape), dtype)
        self._placeholders[name] = placeholder
        return placeholder

    def add_op(
        self,
        name: str,
        fn: Callable[..., Any],
        inputs: Sequence[str],
        variables: dict[str, str] | None = None
    ) -> Op:
        """Declare a node computed from previously declared nodes.

        Args:
            name: Unique node name
            fn: Pure JAX function of the inputs (and params if ``variables``)
            inputs: Names of the nodes feeding ``fn``, in argument order
            variables: Optional {short_name: variable_name} mapping

        Returns:
            op: The declared Op
        """
        self._check_new_name(name)
        for input_name in inputs:
            if not self.has_node(input_name):
                raise TensorNotFoundError(
                    f"Op '{name}' depends on unknown node '{input_name}'"
                )
        for variable_name in (variables or {}).values():
            if variable_name not in self._specs:
                raise TensorNotFoundError(
                    f"Op '{name}' depends on unknown variable '{variable_name}'"
                )
        op = Op(
            name, fn, tuple(inputs), dict(variables) if variables is not None else None
        )
        self._ops[name] = op
        self._executables.clear()
        return op

    def add_alias(self, name: str, target: str) -> Op:
        """Expose an existing node under a second name."""
        return self.add_op(name, _identity, inputs=(target,))

    def declare_variables(
        self,
        layer_name: str,
        init_fn: InitFn,
        trainable: bool = True
    ) -> dict[str, str]:
        """Declare the variables of one layer.

        Shapes are inferred abstractly with ``jax.eval_shape``; no values are
        created until ``initialize_layer_variables`` runs. Variables are
        named in sorted short-name order.

        Args:
            layer_name: Owning layer, used as the variable name prefix
            init_fn: Function(rng) -> {short_name: array}
            trainable: Whether the optimizer updates these variables

        Returns:
            names: {short_name: full variable name}
        """
        specs = jax.eval_shape(init_fn, jax.random.PRNGKey(0))
        names = {}
        for short_name in sorted(specs):
            spec = specs[short_name]
            full_name = f"{layer_name}_{short_name}"
            if full_name in self._specs:
                raise ModelConfigurationError(
                    f"Variable '{full_name}' is declared twice"
                )
            self._specs[full_name] = jax.ShapeDtypeStruct(spec.shape, spec.dtype)
            self._trainable[full_name] = trainable
            names[short_name] = full_name
        self._groups.append(VariableGroup(layer_name, init_fn, names, trainable))
        return names

    def set_optimizer(self, tx: optax.GradientTransformation):
        """Bind the optax transformation used by every target."""
        self.tx = tx
        self.optimizer_state = None
        self._executables.clear()

    def add_optimizer_target(self, name: str, loss_name: str) -> str:
        """Declare an update step minimising ``loss_name``.

        Returns:
            name: Target name to pass to ``run(targets=...)``
        """
        if self.tx is None:
            raise ModelStateError("Call 'set_optimizer' before adding targets")
        if loss_name not in self._ops:
            raise TensorNotFoundError(f"Unknown loss node '{loss_name}'")
        if name in self._targets:
            raise ModelConfigurationError(f"Target '{name}' already exists")
        self._targets[name] = Target(name, loss_name)
        return name

    def _check_new_name(self, name: str):
        self._check_open()
        if self.has_node(name):
            raise ModelConfigurationError(
                f"Node '{name}' already exists in the graph"
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has_node(self, name: str) -> bool:
        """Whether a placeholder or op with this name exists."""
        return name in self._placeholders or name in self._ops

    def node_names(self) -> list[str]:
        return [*self._placeholders, *self._ops]

    def placeholder(self, name: str) -> Placeholder:
        if name not in self._placeholders:
            raise TensorNotFoundError(f"No placeholder named '{name}'")
        return self._placeholders[name]

    def depends_on(self, name: str, placeholder: str) -> bool:
        """Whether node ``name`` transitively reads ``placeholder``."""
        if name == placeholder:
            return True
        if name not in self._ops:
            return False
        return any(self.depends_on(i, placeholder) for i in self._ops[name].inputs)

    def layer_variables(self) -> list[str]:
        """All layer variable names in declaration order."""
        return list(self._specs)

    def trainable_layer_variables(self) -> list[str]:
        return [name for name in self._specs if self._trainable[name]]

    def frozen_layer_variables(self) -> list[str]:
        return [name for name in self._specs if not self._trainable[name]]

    def variable_spec(self, name: str) -> jax.ShapeDtypeStruct:
        if name not in self._specs:
            raise TensorNotFoundError(f"No layer variable named '{name}'")
        return self._specs[name]

    def optimizer_variables(self) -> list[str]:
        """Names of all optimizer variables (empty before initialization)."""
        return [name for name, _ in self._optimizer_leaves()]

    def is_layer_variable(self, name: str) -> bool:
        return name in self._specs

    def is_optimizer_variable(self, name: str) -> bool:
        """Whether ``name`` belongs to the optimizer partition.

        Layer variables always win, so a layer whose name starts with the
        optimizer prefix keeps its variables in the layer partition.
        """
        if name in self._specs:
            return False
        if self.optimizer_state is not None:
            return name in {leaf_name for leaf_name, _ in self._optimizer_leaves()}
        return name.startswith(OPTIMIZER_PREFIX)

    def frozen_optimizer_variables(self) -> set[str]:
        """Optimizer variable names the bound optimizer would keep for frozen variables.

        Frozen variables have no slots in the live state, so the names are
        derived abstractly from the optimizer applied to every layer variable.
        """
        frozen = set(self.frozen_layer_variables())
        if self.tx is None or not frozen:
            return set()
        state = jax.eval_shape(self.tx.init, dict(self._specs))
        leaves, _ = jax.tree_util.tree_flatten_with_path(state)
        return {
            _path_name(path) for path, _ in leaves
            if _owning_variable(path, self._specs) in frozen
        }

    def is_frozen_optimizer_variable(self, name: str) -> bool:
        """Whether ``name`` is optimizer state tied to a frozen layer variable."""
        return name in self.frozen_optimizer_variables()

    @property
    def layer_variables_initialized(self) -> bool:
        return all(name in self.variables for name in self._specs)

    @property
    def optimizer_initialized(self) -> bool:
        return self.optimizer_state is not None

    # ------------------------------------------------------------------
    # Variable lifecycle
    # ------------------------------------------------------------------

    def initialize_layer_variables(self, rng: jax.Array):
        """Create fresh values for every declared layer variable.

        Args:
            rng: JAX random key, split once per declaring layer
        """
        self._check_open()
        variables = {}
        for group in self._groups:
            rng, init_rng = jax.random.split(rng)
            values = group.init_fn(init_rng)
            for short_name, full_name in group.names.items():
                variables[full_name] = values[short_name]
        self.variables = variables
        logger.debug("Initialized %d layer variables", len(variables))

    def initialize_optimizer_variables(self):
        """Create fresh optimizer state for the trainable layer variables.

        Layer variables must be initialized first since optimizer slots take
        their shapes and dtypes from the current values.
        """
        self._check_open()
        if self.tx is None:
            raise ModelStateError("No optimizer is bound to the graph")
        if not self.layer_variables_initialized:
            raise ModelStateError(
                "Layer variables must be initialized before optimizer variables"
            )
        self.optimizer_state = self.tx.init(self._trainable_params(self.variables))
        logger.debug("Initialized %d optimizer variables", len(self.optimizer_variables()))

    def get_variable(self, name: str) -> np.ndarray:
        """Current value of a layer or optimizer variable."""
        if name in self._specs:
            if name not in self.variables:
                raise ModelStateError(f"Variable '{name}' is not initialized")
            return np.asarray(self.variables[name])
        for leaf_name, leaf in self._optimizer_leaves():
            if leaf_name == name:
                return np.asarray(leaf)
        raise TensorNotFoundError(f"No variable named '{name}'")

    def assign_variable(self, name: str, values: np.ndarray):
        """Overwrite a variable from (possibly flattened) values.

        Raises:
            TensorNotFoundError: If no such variable exists
            ValueError: If the number of values differs from the declared size
        """
        self.assign_variables({name: values})

    def assign_variables(self, values: dict[str, np.ndarray]):
        """Overwrite several variables at once.

        All values are checked before anything is stored, so on failure the
        graph keeps its previous variables. Optimizer state is created from
        the incoming layer values when it does not exist yet.

        Raises:
            TensorNotFoundError: If a name matches no variable
            ValueError: If a value count differs from the declared size
        """
        self._check_open()
        variables = dict(self.variables)
        optimizer_values = {}
        for name, value in values.items():
            value = np.asarray(value)
            if name in self._specs:
                spec = self._specs[name]
                variables[name] = jnp.asarray(
                    _reshape(name, value, spec.shape), dtype=spec.dtype
                )
            elif self.is_optimizer_variable(name):
                optimizer_values[name] = value
            else:
                raise TensorNotFoundError(f"No variable named '{name}'")

        optimizer_state = self.optimizer_state
        if optimizer_values:
            if optimizer_state is None:
                if self.tx is None:
                    raise ModelStateError("No optimizer is bound to the graph")
                if not all(name in variables for name in self._specs):
                    raise ModelStateError("Optimizer variables are not initialized")
                optimizer_state = self.tx.init(self._trainable_params(variables))
                logger.debug("Created optimizer state from assigned layer variables")
            optimizer_state = _replace_leaves(optimizer_state, optimizer_values)

        self.variables = variables
        self.optimizer_state = optimizer_state

    def _optimizer_leaves(self) -> list[tuple[str, Any]]:
        if self.optimizer_state is None:
            return []
        leaves, _ = jax.tree_util.tree_flatten_with_path(self.optimizer_state)
        return [(_path_name(path), leaf) for path, leaf in leaves]

    def _trainable_params(self, variables: dict[str, Any]) -> dict[str, Any]:
        return {name: variables[name] for name in self.trainable_layer_variables()}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        feeds: dict[str, Any],
        fetches: Sequence[str] = (),
        targets: Sequence[str] = ()
    ) -> list[np.ndarray]:
        """Run the graph with bound placeholders.

        Fetched values are computed from the variables as they were before
        any target ran. Targets update the layer variables and optimizer state
        in place.

        Args:
            feeds: {placeholder_name: array}
            fetches: Node names whose values are returned
            targets: Optimizer targets to execute

        Returns:
            values: Fetched values as numpy arrays, in ``fetches`` order

        Raises:
            TensorNotFoundError: Unknown fetch or target
            ModelStateError: Missing feed or uninitialized variables
            BackendExecutionError: JAX failed while executing
        """
        self._check_open()
        fetches = tuple(fetches)
        targets = tuple(targets)
        for name in fetches:
            if not self.has_node(name):
                raise TensorNotFoundError(f"No node named '{name}' in the graph")
        for name in targets:
            if name not in self._targets:
                raise TensorNotFoundError(f"No target named '{name}' in the graph")

        required = (*fetches, *(self._targets[t].loss_name for t in targets))
        missing = [
            name for name in self._required_placeholders(required)
            if name not in feeds
        ]
        if missing:
            raise ModelStateError(f"Placeholders {missing} must be fed")
        if not self.layer_variables_initialized:
            raise ModelStateError(
                "Graph variables are not initialized. Call 'init' first."
            )
        if targets and self.optimizer_state is None:
            raise ModelStateError("Optimizer variables are not initialized")

        key = (fetches, targets, tuple(sorted(feeds)))
        if key not in self._executables:
            self._executables[key] = self._build_executable(fetches, targets)
        executable = self._executables[key]

        try:
            if targets:
                self.variables, self.optimizer_state, outputs = executable(
                    self.variables, self.optimizer_state, dict(feeds)
                )
            else:
                outputs = executable(self.variables, dict(feeds))
            return [np.asarray(output) for output in outputs]
        except KestrelError:
            raise
        except (RuntimeError, TypeError, ValueError) as err:
            logger.error("Graph execution failed: %s", err)
            raise BackendExecutionError(f"Graph execution failed: {err}") from err

    def _build_executable(
        self,
        fetches: tuple[str, ...],
        targets: tuple[str, ...]
    ) -> Callable:
        if not targets:
            @jax.jit
            def fetch_step(variables, feeds):
                env = self._evaluate(variables, feeds, fetches)
                return [env[name] for name in fetches]

            return fetch_step

        loss_names = [self._targets[name].loss_name for name in targets]
        tx = self.tx

        @jax.jit
        def train_step(variables, opt_state, feeds):
            outputs = None
            for loss_name in loss_names:
                def forward_and_loss(trainable_params, loss_name=loss_name):
                    env = self._evaluate(
                        {**variables, **trainable_params}, feeds, (loss_name, *fetches)
                    )
                    return env[loss_name], env

                trainable_params = self._trainable_params(variables)
                (_, env), grads = jax.value_and_grad(
                    forward_and_loss, has_aux=True
                )(trainable_params)
                if outputs is None:
                    outputs = [env[name] for name in fetches]

                updates, opt_state = tx.update(grads, opt_state, trainable_params)
                variables = {
                    **variables,
                    **optax.apply_updates(trainable_params, updates),
                }
            return variables, opt_state, outputs

        return train_step

    def _execution_order(self, names: Sequence[str]) -> list[str]:
        """Ops needed for ``names``, in declaration order."""
        needed = set()
        stack = list(names)
        while stack:
            name = stack.pop()
            if name in needed or name not in self._ops:
                continue
            needed.add(name)
            stack.extend(self._ops[name].inputs)
        return [name for name in self._ops if name in needed]

    def _required_placeholders(self, names: Sequence[str]) -> list[str]:
        required = [name for name in names if name in self._placeholders]
        for op_name in self._execution_order(names):
            for input_name in self._ops[op_name].inputs:
                if input_name in self._placeholders and input_name not in required:
                    required.append(input_name)
        return required

    def _evaluate(
        self,
        variables: dict[str, Any],
        feeds: dict[str, Any],
        names: Sequence[str]
    ) -> dict[str, Any]:
        env = {name: feeds[name] for name in self._placeholders if name in feeds}
        for name in self._execution_order(names):
            op = self._ops[name]
            args = [env[input_name] for input_name in op.inputs]
            if op.variables is not None:
                params = {short: variables[full] for short, full in op.variables.items()}
                env[name] = op.fn(params, *args)
            else:
                env[name] = op.fn(*args)
        return env

    # ------------------------------------------------------------------
    # Serialization and lifecycle
    # ------------------------------------------------------------------

    def inference_nodes(self, input_name: str) -> list[str]:
        """Ops computable from ``input_name`` alone."""
        others = [name for name in self._placeholders if name != input_name]
        return [
            name for name in self._ops
            if not any(self.depends_on(name, other) for other in others)
        ]

    def to_graph_def(self, input_name: str) -> bytes:
        """Serialize the inference sub-graph with ``jax.export``.

        The exported function takes ``(variables, inputs)`` with a symbolic
        batch dimension and returns every inference node by name.
        """
        self._check_open()
        placeholder = self.placeholder(input_name)
        outputs = self.inference_nodes(input_name)
        (batch,) = export.symbolic_shape("batch")
        input_spec = jax.ShapeDtypeStruct((batch, *placeholder.shape[1:]), placeholder.dtype)

        def graph_fn(variables, inputs):
            env = self._evaluate(variables, {input_name: inputs}, outputs)
            return {name: env[name] for name in outputs}

        exported = export.export(jax.jit(graph_fn))(dict(self._specs), input_spec)
        return bytes(exported.serialize())

    def close(self):
        """Release variables, optimizer state and compiled executables."""
        self._executables.clear()
        self.variables = {}
        self.optimizer_state = None
        self.is_closed = True

    def _check_open(self):
        if self.is_closed:
            raise ModelStateError("The graph is closed")

    def __repr__(self) -> str:
        return (
            f"Graph(\n"
            f"  placeholders={list(self._placeholders)},\n"
            f"  ops={list(self._ops)},\n"
            f"  trainable={self.trainable_layer_variables()},\n"
            f"  frozen={self.frozen_layer_variables()},\n"
            f"  targets={list(self._targets)}\n"
            f")"
        )


def _identity(x):
    return x


def _reshape(name: str, values: np.ndarray, shape: Sequence[int]) -> np.ndarray:
    expected = int(np.prod(shape, dtype=np.int64))
    if values.size != expected:
        raise ValueError(
            f"Variable '{name}' expects {expected} values for shape {tuple(shape)}, "
            f"got {values.size}"
        )
    return values.reshape(shape)


def _path_name(path: Sequence[Any]) -> str:
    """Flatten a pytree key path into an optimizer variable name."""
    parts = [OPTIMIZER_PREFIX]
    for entry in path:
        if isinstance(entry, jax.tree_util.DictKey):
            parts.append(str(entry.key))
        elif isinstance(entry, jax.tree_util.GetAttrKey):
            parts.append(entry.name)
        elif isinstance(entry, jax.tree_util.SequenceKey):
            parts.append(str(entry.idx))
        elif isinstance(entry, jax.tree_util.FlattenedIndexKey):
            parts.append(str(entry.key))
        else:
            parts.append(str(entry))
    return "_".join(parts)


def _owning_variable(path: Sequence[Any], names: Any) -> str | None:
    """The layer variable an optimizer slot at ``path`` tracks, if any."""
    for entry in reversed(path):
        if isinstance(entry, jax.tree_util.DictKey) and entry.key in names:
            return entry.key
    return None


def _replace_leaves(state: Any, values: dict[str, np.ndarray]) -> Any:
    """Copy of optimizer ``state`` with the named leaves replaced."""
    leaves, treedef = jax.tree_util.tree_flatten_with_path(state)
    remaining = dict(values)
    new_leaves = []
    for path, leaf in leaves:
        name = _path_name(path)
        if name in remaining:
            leaf = jnp.asarray(
                _reshape(name, remaining.pop(name), jnp.shape(leaf)), dtype=leaf.dtype
            )
        new_leaves.append(leaf)
    if remaining:
        raise TensorNotFoundError(
            f"No optimizer variable named '{sorted(remaining)[0]}'"
        )
    return jax.tree_util.tree_unflatten(treedef, new_leaves)

"""Optimizers: build optax transformations and bind them to a graph."""

from __future__ import annotations

from abc import ABC, abstractmethod

import optax

from kestrel.core.graph import Graph

TRAIN_TARGET = "train"


class Optimizer(ABC):
    """Produces the gradient-update targets of a compiled model.

    Args:
        clip_gradient: Optional maximum global gradient norm
    """

    def __init__(self, clip_gradient: float | None = None):
        self.clip_gradient = clip_gradient

    @abstractmethod
    def build(self) -> optax.GradientTransformation:
        ...

    def prepare_targets(self, graph: Graph, loss_name: str) -> list[str]:
        """Bind this optimizer to ``graph`` and declare its update targets.

        Args:
            graph: Graph holding the trainable variables
            loss_name: Node to minimise

        Returns:
            targets: Names to run for one optimization step
        """
        tx = self.build()
        if self.clip_gradient is not None:
            tx = optax.chain(optax.clip_by_global_norm(self.clip_gradient), tx)
        graph.set_optimizer(tx)
        return [graph.add_optimizer_target(TRAIN_TARGET, loss_name)]

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v}" for k, v in vars(self).items())
        return f"{type(self).__name__}({params})"


class SGD(Optimizer):
    def __init__(self, learning_rate: float = 0.2, clip_gradient: float | None = None):
        super().__init__(clip_gradient)
        self.learning_rate = learning_rate

    def build(self) -> optax.GradientTransformation:
        return optax.sgd(self.learning_rate)


class Momentum(Optimizer):
    def __init__(
        self,
        learning_rate: float = 0.001,
        momentum: float = 0.99,
        use_nesterov: bool = True,
        clip_gradient: float | None = None
    ):
        super().__init__(clip_gradient)
        self.learning_rate = learning_rate
        self.momentum = momentum
        self.use_nesterov = use_nesterov

    def build(self) -> optax.GradientTransformation:
        return optax.sgd(self.learning_rate, momentum=self.momentum, nesterov=self.use_nesterov)


class Adam(Optimizer):
    def __init__(
        self,
        learning_rate: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-07,
        clip_gradient: float | None = None
    ):
        super().__init__(clip_gradient)
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon

    def build(self) -> optax.GradientTransformation:
        return optax.adam(self.learning_rate, b1=self.beta1, b2=self.beta2, eps=self.epsilon)


class RMSProp(Optimizer):
    def __init__(
        self,
        learning_rate: float = 0.001,
        decay: float = 0.9,
        momentum: float = 0.0,
        epsilon: float = 1e-10,
        centered: bool = False,
        clip_gradient: float | None = None
    ):
        super().__init__(clip_gradient)
        self.learning_rate = learning_rate
        self.decay = decay
        self.momentum = momentum
        self.epsilon = epsilon
        self.centered = centered

    def build(self) -> optax.GradientTransformation:
        return optax.rmsprop(
            self.learning_rate,
            decay=self.decay,
            eps=self.epsilon,
            momentum=self.momentum or None,
            centered=self.centered,
        )


class AdaGrad(Optimizer):
    def __init__(
        self,
        learning_rate: float = 0.1,
        initial_accumulator_value: float = 0.01,
        clip_gradient: float | None = None
    ):
        super().__init__(clip_gradient)
        self.learning_rate = learning_rate
        self.initial_accumulator_value = initial_accumulator_value

    def build(self) -> optax.GradientTransformation:
        return optax.adagrad(
            self.learning_rate,
            initial_accumulator_value=self.initial_accumulator_value,
        )

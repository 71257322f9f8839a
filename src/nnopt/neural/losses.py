"""Squared-error loss indices.

The loss is the error term plus an optional L2 penalty on the parameters:

    loss = error(outputs, targets) + regularization_weight * ||parameters||^2

Gradients are taken with ``jax.value_and_grad`` with respect to the flat
parameter vector, through the network's jitted ``apply``.
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING

import jax
import jax.numpy as jnp

from nnopt.neural.protocols import BackPropagation


if TYPE_CHECKING:
    from jaxtyping import Array, Float

    from nnopt.data.dataset import InMemoryDataSet
    from nnopt.neural.network import NNXNetwork
    from nnopt.neural.protocols import Batch, ForwardPropagation


class SquaredErrorBase(abc.ABC):
    """Loss index over an ``NNXNetwork`` and a data set.

    The network must expose ``apply(parameters, inputs)``, which
    ``NNXNetwork`` does.

    Attributes:
        network: Network being trained
        data_set: Samples the loss is computed on
        regularization_weight: Weight of the L2 penalty
    """

    def __init__(
        self,
        network: NNXNetwork | None = None,
        data_set: InMemoryDataSet | None = None,
        regularization_weight: float = 0.0,
    ):
        if regularization_weight < 0:
            raise ValueError("regularization_weight must be non-negative")
        self.data_set = data_set
        self.regularization_weight = regularization_weight
        self.set_network(network)

    def set_network(self, network: NNXNetwork | None) -> None:
        self.network = network
        self._value_and_grad = (
            None
            if network is None
            else jax.jit(jax.value_and_grad(self._loss_and_error, has_aux=True))
        )

    def set_data_set(self, data_set: InMemoryDataSet) -> None:
        self.data_set = data_set

    @abc.abstractmethod
    def _error(
        self,
        outputs: Float[Array, "samples outputs"],
        targets: Float[Array, "samples outputs"],
    ) -> Float[Array, ""]:
        """Error term of the loss for a batch."""

    def _regularization(self, parameters: Float[Array, " n"]) -> Float[Array, ""]:
        return self.regularization_weight * jnp.sum(jnp.square(parameters))

    def _loss_and_error(
        self,
        parameters: Float[Array, " n"],
        inputs: Float[Array, "samples inputs"],
        targets: Float[Array, "samples outputs"],
    ) -> tuple[Float[Array, ""], Float[Array, ""]]:
        error = self._error(self.network.apply(parameters, inputs), targets)
        return error + self._regularization(parameters), error

    def calculate_error(
        self, batch: Batch, forward_propagation: ForwardPropagation
    ) -> float:
        return float(self._error(forward_propagation.outputs, batch.targets))

    def calculate_loss(
        self, batch: Batch, forward_propagation: ForwardPropagation
    ) -> float:
        error = self._error(forward_propagation.outputs, batch.targets)
        return float(error + self._regularization(forward_propagation.parameters))

    def back_propagate(
        self, batch: Batch, forward_propagation: ForwardPropagation
    ) -> BackPropagation:
        if self._value_and_grad is None:
            raise ValueError("Loss index has no network")
        parameters = forward_propagation.parameters
        (loss, error), gradient = self._value_and_grad(
            parameters, batch.inputs, batch.targets
        )
        return BackPropagation(
            error=float(error),
            loss=float(loss),
            gradient=gradient,
            parameters=parameters,
        )


class SumSquaredError(SquaredErrorBase):
    """``sum((outputs - targets) ** 2)``"""

    def _error(self, outputs, targets):
        return jnp.sum(jnp.square(outputs - targets))


class MeanSquaredError(SquaredErrorBase):
    """Sum of squared errors divided by the number of samples."""

    def _error(self, outputs, targets):
        return jnp.sum(jnp.square(outputs - targets)) / outputs.shape[0]

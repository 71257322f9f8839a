"""
nnopt Testing Configuration

Enables 64-bit JAX before any array is created, so that line searches and
inverse-Hessian updates are tested at double precision, and provides small
networks, loss indices and data sets shared by the test modules.
"""

import logging

import jax.numpy as jnp
import numpy as np
import pytest
from flax import nnx

from nnopt import configure_jax


configure_jax(enable_x64=True)

from nnopt.data.dataset import InMemoryDataSet  # noqa: E402
from nnopt.neural.losses import MeanSquaredError, SumSquaredError  # noqa: E402
from nnopt.neural.network import LinearModel, NNXNetwork  # noqa: E402
from nnopt.neural.protocols import BackPropagation, ForwardPropagation  # noqa: E402


class QuadraticNetwork:
    """Network whose outputs are its parameters, independent of the batch."""

    def __init__(self, parameters):
        self.parameters = jnp.asarray(parameters, dtype=jnp.float64)
        self.forward_calls = 0

    def get_parameters(self):
        return self.parameters

    def set_parameters(self, parameters):
        self.parameters = jnp.asarray(parameters)

    def get_parameters_count(self):
        return int(self.parameters.shape[0])

    def forward_propagate(self, batch, parameters=None):
        self.forward_calls += 1
        if parameters is None:
            parameters = self.parameters
        return ForwardPropagation(parameters=parameters, outputs=parameters[None, :])

    def save(self, file_name):
        np.save(file_name, np.asarray(self.parameters), allow_pickle=False)


class QuadraticLoss:
    """``loss(p) = ||p - center||^2``."""

    def __init__(self, network, center, data_set=None):
        self.network = network
        self.data_set = data_set
        self.center = jnp.asarray(center, dtype=jnp.float64)

    def calculate_error(self, batch, forward_propagation):
        return float(jnp.sum(jnp.square(forward_propagation.parameters - self.center)))

    def calculate_loss(self, batch, forward_propagation):
        return self.calculate_error(batch, forward_propagation)

    def back_propagate(self, batch, forward_propagation):
        parameters = forward_propagation.parameters
        error = self.calculate_error(batch, forward_propagation)
        return BackPropagation(
            error=error,
            loss=error,
            gradient=2.0 * (parameters - self.center),
            parameters=parameters,
        )


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Configure logging for individual tests."""
    logging.getLogger("nnopt").setLevel(logging.DEBUG)
    logging.getLogger("jax").setLevel(logging.ERROR)


@pytest.fixture
def rngs():
    """Provide RNG fixture for tests."""
    return nnx.Rngs(0)


@pytest.fixture
def quadratic_loss():
    """Quadratic bowl centred at (3, 4), starting from the origin."""
    return QuadraticLoss(QuadraticNetwork([0.0, 0.0]), [3.0, 4.0])


@pytest.fixture
def and_data_set():
    """Logical AND truth table."""
    inputs = np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])
    targets = np.array([[0.0], [0.0], [0.0], [1.0]])
    return InMemoryDataSet(inputs, targets)


@pytest.fixture
def regression_data_set():
    """Samples of ``y = 2 x1 - x2 + 0.5``, exactly representable by a line."""
    inputs = np.array(
        [
            [0.0, 0.0],
            [0.0, 1.0],
            [1.0, 0.0],
            [1.0, 1.0],
            [2.0, 1.0],
            [1.0, 2.0],
            [-1.0, 0.0],
            [0.0, -1.0],
        ]
    )
    targets = (2.0 * inputs[:, 0] - inputs[:, 1] + 0.5)[:, None]
    return InMemoryDataSet(inputs, targets, seed=1)


@pytest.fixture
def linear_network(rngs):
    """Two-input, one-output linear network."""
    return NNXNetwork(LinearModel(2, 1, rngs=rngs))


@pytest.fixture
def regression_loss(linear_network, regression_data_set):
    """Sum squared error of the linear network on the regression samples."""
    return SumSquaredError(linear_network, regression_data_set)


@pytest.fixture
def and_loss(linear_network, and_data_set):
    """Mean squared error of the linear network on the AND truth table."""
    return MeanSquaredError(linear_network, and_data_set)

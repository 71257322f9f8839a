"""Tests for the flat-parameter NNX network adapter."""

import pickle

import jax.numpy as jnp
import numpy as np
import pytest
from flax import nnx

from nnopt.neural.network import LinearModel, MultilayerPerceptron, NNXNetwork
from nnopt.neural.protocols import Batch, Network


class TestModels:
    """Test the reference NNX modules."""

    def test_linear_model_shape(self, rngs):
        """A linear layer maps inputs to outputs."""
        model = LinearModel(3, 2, rngs=rngs)
        assert model(jnp.ones((5, 3))).shape == (5, 2)

    def test_parameters_use_double_precision(self, rngs):
        """With x64 enabled parameters are float64."""
        model = LinearModel(2, 1, rngs=rngs)
        assert model.linear.kernel.value.dtype == jnp.float64

    def test_perceptron_shape(self, rngs):
        """Hidden layers are chained to a linear output layer."""
        model = MultilayerPerceptron([2, 4, 3, 1], rngs=rngs)
        assert len(model.layers) == 3
        assert model(jnp.ones((6, 2))).shape == (6, 1)

    def test_perceptron_needs_two_sizes(self, rngs):
        """Input and output sizes are required."""
        with pytest.raises(ValueError, match="at least 2 elements"):
            MultilayerPerceptron([2], rngs=rngs)

    def test_unknown_activation(self, rngs):
        """Activations are chosen by name."""
        with pytest.raises(ValueError, match="Unknown activation"):
            MultilayerPerceptron([2, 1], activation="swish-ish", rngs=rngs)


class TestNNXNetwork:
    """Test flattening and restoring parameters."""

    def test_parameters_count(self, rngs):
        """Kernels and biases are all counted."""
        assert NNXNetwork(LinearModel(2, 1, rngs=rngs)).get_parameters_count() == 3
        network = NNXNetwork(MultilayerPerceptron([2, 3, 1], rngs=rngs))
        assert network.get_parameters_count() == 13

    def test_satisfies_protocol(self, linear_network):
        """The adapter is a Network."""
        assert isinstance(linear_network, Network)

    def test_set_parameters(self, linear_network):
        """Parameters are replaced as one vector."""
        linear_network.set_parameters([1.0, 2.0, 3.0])
        np.testing.assert_array_equal(
            linear_network.get_parameters(), [1.0, 2.0, 3.0]
        )

    def test_set_parameters_wrong_size(self, linear_network):
        """The vector must match the parameter count."""
        with pytest.raises(ValueError, match="Expected 3 parameters"):
            linear_network.set_parameters(jnp.zeros(4))

    def test_outputs_follow_parameters(self, linear_network):
        """Outputs are computed from the flat vector."""
        module = linear_network.to_module()
        kernel = module.linear.kernel.value
        bias = module.linear.bias.value
        inputs = jnp.array([[1.0, 2.0], [-1.0, 0.5]])
        np.testing.assert_allclose(
            linear_network.calculate_outputs(inputs), inputs @ kernel + bias
        )

    def test_forward_propagate_does_not_modify(self, linear_network):
        """Evaluating at trial parameters keeps the network's own."""
        before = linear_network.get_parameters()
        batch = Batch(inputs=jnp.ones((2, 2)), targets=jnp.zeros((2, 1)))

        forward = linear_network.forward_propagate(batch, jnp.zeros(3))

        np.testing.assert_array_equal(forward.outputs, jnp.zeros((2, 1)))
        np.testing.assert_array_equal(linear_network.get_parameters(), before)

    def test_to_module_carries_values(self, linear_network):
        """The exported module holds the current parameters."""
        linear_network.set_parameters([0.5, -0.5, 2.0])
        module = linear_network.to_module()
        assert float(module.linear.bias.value[0]) == 2.0

    def test_save_and_load(self, linear_network, tmp_path):
        """Saved parameters load into a network of the same shape."""
        path = tmp_path / "network.pkl"
        linear_network.set_parameters([1.0, 2.0, 3.0])
        linear_network.save(path)

        restored = NNXNetwork(LinearModel(2, 1, rngs=nnx.Rngs(7)))
        restored.load_parameters(path)
        np.testing.assert_array_equal(restored.get_parameters(), [1.0, 2.0, 3.0])

        with open(path, "rb") as f:
            assert pickle.load(f)["parameters_count"] == 3

    def test_load_missing_file(self, linear_network, tmp_path):
        """A missing file is reported as such."""
        with pytest.raises(FileNotFoundError):
            linear_network.load_parameters(tmp_path / "missing.pkl")

    def test_load_corrupted_file(self, linear_network, tmp_path):
        """Truncated files are rejected."""
        path = tmp_path / "network.pkl"
        path.write_bytes(b"")
        with pytest.raises(ValueError, match="Failed to load network"):
            linear_network.load_parameters(path)

    def test_load_wrong_size(self, linear_network, tmp_path, rngs):
        """Parameters of another architecture are rejected."""
        path = tmp_path / "network.pkl"
        NNXNetwork(MultilayerPerceptron([2, 3, 1], rngs=rngs)).save(path)
        with pytest.raises(ValueError, match="Expected 3 parameters"):
            linear_network.load_parameters(path)

"""Flax NNX models seen through the flat-parameter ``Network`` protocol.

The optimizers work on one flat parameter vector. ``NNXNetwork`` splits an
``nnx.Module`` into its graph definition, its ``nnx.Param`` state and the
remaining state, flattens the parameters with ``ravel_pytree`` and merges
them back for every forward pass.
"""

from __future__ import annotations

import logging
import pickle
from pathlib import Path
from typing import TYPE_CHECKING

import jax
import jax.numpy as jnp
import numpy as np
from flax import nnx
from jax.flatten_util import ravel_pytree

from nnopt.neural.protocols import ForwardPropagation


if TYPE_CHECKING:
    from collections.abc import Callable

    from jaxtyping import Array, ArrayLike, Float

    from nnopt.neural.protocols import Batch


logger = logging.getLogger(__name__)


def _default_param_dtype() -> jnp.dtype:
    # float64 when x64 is enabled, float32 otherwise
    return jax.dtypes.canonicalize_dtype(jnp.float64)


class LinearModel(nnx.Module):
    """Single affine layer ``y = x W + b``."""

    def __init__(
        self,
        inputs_number: int,
        outputs_number: int,
        *,
        rngs: nnx.Rngs,
        param_dtype: jnp.dtype | None = None,
    ):
        super().__init__()
        self.linear = nnx.Linear(
            in_features=inputs_number,
            out_features=outputs_number,
            param_dtype=param_dtype or _default_param_dtype(),
            rngs=rngs,
        )

    def __call__(self, x: jax.Array) -> jax.Array:
        return self.linear(x)


_ACTIVATIONS: dict[str, Callable[[jax.Array], jax.Array]] = {
    "tanh": jnp.tanh,
    "sigmoid": jax.nn.sigmoid,
    "relu": jax.nn.relu,
    "gelu": jax.nn.gelu,
    "linear": lambda x: x,
}


class MultilayerPerceptron(nnx.Module):
    """Fully connected network with a linear output layer.

    Attributes:
        layer_sizes: Layer sizes including input and output dimensions
        activation: Name of the hidden-layer activation
        layers: Linear layers
    """

    def __init__(
        self,
        layer_sizes: list[int],
        activation: str = "tanh",
        *,
        rngs: nnx.Rngs,
        param_dtype: jnp.dtype | None = None,
    ):
        """Initialize the perceptron.

        Args:
            layer_sizes: e.g. ``[inputs, hidden, outputs]``
            activation: One of 'tanh', 'sigmoid', 'relu', 'gelu', 'linear'
            rngs: Random number generator state (keyword-only)
            param_dtype: Parameter dtype; float64 when x64 is enabled
        """
        super().__init__()

        if len(layer_sizes) < 2:
            raise ValueError(
                "layer_sizes must have at least 2 elements (input and output)"
            )
        if activation not in _ACTIVATIONS:
            raise ValueError(f"Unknown activation function: {activation}")

        self.layer_sizes = layer_sizes
        self.activation = activation

        param_dtype = param_dtype or _default_param_dtype()
        self.layers = nnx.List(
            [
                nnx.Linear(
                    in_features=layer_sizes[i],
                    out_features=layer_sizes[i + 1],
                    param_dtype=param_dtype,
                    rngs=rngs,
                )
                for i in range(len(layer_sizes) - 1)
            ]
        )

    def __call__(self, x: jax.Array) -> jax.Array:
        activation_fn = _ACTIVATIONS[self.activation]
        for i, layer in enumerate(self.layers):
            x = layer(x)
            if i < len(self.layers) - 1:
                x = activation_fn(x)
        return x


class NNXNetwork:
    """Flat-parameter adapter around an ``nnx.Module``.

    The adapter owns the parameter vector; the wrapped module is only used as
    a template. ``to_module`` returns a module carrying the current values.

    Example:
        >>> model = LinearModel(2, 1, rngs=nnx.Rngs(0))
        >>> network = NNXNetwork(model)
        >>> network.get_parameters_count()
        3
    """

    def __init__(self, model: nnx.Module):
        graphdef, params, rest = nnx.split(model, nnx.Param, ...)
        flat, unravel = ravel_pytree(params)

        self._graphdef = graphdef
        self._rest = rest
        self._unravel = unravel
        self._parameters = flat

        def apply(
            parameters: Float[Array, " parameters"],
            inputs: Float[Array, "samples inputs"],
        ) -> Float[Array, "samples outputs"]:
            parameters = parameters.astype(flat.dtype)
            module = nnx.merge(graphdef, unravel(parameters), rest)
            return module(inputs)

        self.apply = jax.jit(apply)

    def get_parameters(self) -> Float[Array, " parameters"]:
        return self._parameters

    def set_parameters(self, parameters: ArrayLike) -> None:
        parameters = jnp.asarray(parameters, dtype=self._parameters.dtype)
        if parameters.shape != self._parameters.shape:
            raise ValueError(
                f"Expected {self._parameters.shape[0]} parameters, "
                f"got shape {parameters.shape}"
            )
        self._parameters = parameters

    def get_parameters_count(self) -> int:
        return int(self._parameters.shape[0])

    def forward_propagate(
        self,
        batch: Batch,
        parameters: Float[Array, " parameters"] | None = None,
    ) -> ForwardPropagation:
        """Compute the outputs for ``batch`` at ``parameters``.

        The network's own parameters are used when ``parameters`` is None;
        they are never modified.
        """
        if parameters is None:
            parameters = self._parameters
        return ForwardPropagation(
            parameters=parameters, outputs=self.apply(parameters, batch.inputs)
        )

    def calculate_outputs(self, inputs: ArrayLike) -> Float[Array, "samples outputs"]:
        return self.apply(self._parameters, jnp.asarray(inputs))

    def to_module(self) -> nnx.Module:
        return nnx.merge(self._graphdef, self._unravel(self._parameters), self._rest)

    def save(self, file_name: str | Path) -> None:
        """Pickle the parameter vector to ``file_name``."""
        with open(file_name, "wb") as f:
            pickle.dump(
                {
                    "parameters": np.asarray(self._parameters),
                    "parameters_count": self.get_parameters_count(),
                },
                f,
            )

    def load_parameters(self, file_name: str | Path) -> None:
        """Load parameters written by ``save``.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is corrupted or has the wrong size
        """
        path = Path(file_name)
        if not path.exists():
            raise FileNotFoundError(f"Network file not found: {file_name}")

        logger.warning(
            "Loading network with pickle - ensure file is from trusted source"
        )
        try:
            with open(path, "rb") as f:
                data = pickle.load(f)  # noqa: S301  # nosec B301
        except (pickle.UnpicklingError, EOFError) as e:
            raise ValueError(f"Failed to load network: {e}") from e

        self.set_parameters(data["parameters"])

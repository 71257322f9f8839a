"""Collaborator protocols consumed by the optimization engine.

The optimizers never depend on a concrete network, loss or data set class.
They talk to these narrow protocols, and anything structurally compatible can
be trained: the reference implementations in ``nnopt.neural.network``,
``nnopt.neural.losses`` and ``nnopt.data.dataset``, or a user's own.

Key Types:
    - Batch: Inputs and targets for one subset of samples
    - ForwardPropagation: Outputs computed at a given parameter vector
    - BackPropagation: Error, loss and gradient at a given parameter vector
    - Network: Flat-parameter view of a model
    - LossIndex: Error/loss/gradient evaluation over a data set
    - DataSet: Sample split and batch assembly
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable, TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    import numpy as np
    from jaxtyping import Array, Float


@dataclass(frozen=True)
class Batch:
    """Input and target tensors for a subset of samples.

    Attributes:
        inputs: Array of shape (samples, inputs)
        targets: Array of shape (samples, targets)
    """

    inputs: Float[Array, "samples inputs"]
    targets: Float[Array, "samples targets"]

    @property
    def samples_number(self) -> int:
        return int(self.inputs.shape[0])


@dataclass(frozen=True)
class ForwardPropagation:
    """Network outputs for a batch, evaluated at ``parameters``."""

    parameters: Float[Array, " parameters"]
    outputs: Float[Array, "samples outputs"]


@dataclass(frozen=True)
class BackPropagation:
    """Error, regularized loss and loss gradient at ``parameters``.

    Attributes:
        error: Data term of the loss
        loss: Error plus regularization, the quantity being minimized
        gradient: Gradient of ``loss`` with respect to the flat parameters
        parameters: Parameter vector the values were computed at
    """

    error: float
    loss: float
    gradient: Float[Array, " parameters"]
    parameters: Float[Array, " parameters"]


@runtime_checkable
class Network(Protocol):
    """Model seen as a function of one flat parameter vector."""

    def get_parameters(self) -> Float[Array, " parameters"]: ...

    def set_parameters(self, parameters: Float[Array, " parameters"]) -> None: ...

    def get_parameters_count(self) -> int: ...

    def forward_propagate(
        self,
        batch: Batch,
        parameters: Float[Array, " parameters"] | None = None,
    ) -> ForwardPropagation: ...

    def save(self, file_name: str | Path) -> None: ...


@runtime_checkable
class DataSet(Protocol):
    """Samples split into training and selection subsets."""

    def get_training_indices(self) -> np.ndarray: ...

    def get_selection_indices(self) -> np.ndarray: ...

    def has_selection(self) -> bool: ...

    def get_batches(
        self,
        indices: Sequence[int] | np.ndarray,
        batch_size: int,
        shuffle: bool,
        seed: int | None = None,
    ) -> np.ndarray: ...

    def fill(self, indices: Sequence[int] | np.ndarray) -> Batch: ...


@runtime_checkable
class LossIndex(Protocol):
    """Loss of a network over a data set."""

    network: Network | None
    data_set: DataSet | None

    def back_propagate(
        self, batch: Batch, forward_propagation: ForwardPropagation
    ) -> BackPropagation: ...

    def calculate_error(
        self, batch: Batch, forward_propagation: ForwardPropagation
    ) -> float: ...

    def calculate_loss(
        self, batch: Batch, forward_propagation: ForwardPropagation
    ) -> float: ...

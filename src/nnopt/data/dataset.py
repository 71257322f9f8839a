"""In-memory data set with training/selection/testing splits."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import jax.numpy as jnp
import numpy as np

from nnopt.neural.protocols import Batch


if TYPE_CHECKING:
    from collections.abc import Sequence

    from jaxtyping import ArrayLike


logger = logging.getLogger(__name__)


class InMemoryDataSet:
    """Input/target samples held as host arrays.

    All samples are used for training until a split is set with
    ``set_split`` or ``split_samples_random``.

    Attributes:
        inputs: Array of shape (samples, inputs)
        targets: Array of shape (samples, targets)
    """

    def __init__(self, inputs: ArrayLike, targets: ArrayLike, seed: int = 0):
        inputs = np.asarray(inputs, dtype=float)
        targets = np.asarray(targets, dtype=float)
        if inputs.ndim == 1:
            inputs = inputs[:, None]
        if targets.ndim == 1:
            targets = targets[:, None]
        if inputs.shape[0] != targets.shape[0]:
            raise ValueError(
                f"inputs and targets have different sample counts: "
                f"{inputs.shape[0]} != {targets.shape[0]}"
            )

        self.inputs = inputs
        self.targets = targets
        self._rng = np.random.default_rng(seed)

        samples_number = inputs.shape[0]
        self._training_indices = np.arange(samples_number)
        self._selection_indices = np.zeros(0, dtype=int)
        self._testing_indices = np.zeros(0, dtype=int)

    @property
    def samples_number(self) -> int:
        return int(self.inputs.shape[0])

    def get_training_indices(self) -> np.ndarray:
        return self._training_indices

    def get_selection_indices(self) -> np.ndarray:
        return self._selection_indices

    def get_testing_indices(self) -> np.ndarray:
        return self._testing_indices

    def has_selection(self) -> bool:
        return self._selection_indices.size > 0

    def set_split(
        self,
        training_indices: Sequence[int] | np.ndarray,
        selection_indices: Sequence[int] | np.ndarray = (),
        testing_indices: Sequence[int] | np.ndarray = (),
    ) -> None:
        """Assign samples to the training, selection and testing subsets.

        Raises:
            ValueError: If an index is out of range or used twice
        """
        training = np.asarray(training_indices, dtype=int)
        selection = np.asarray(selection_indices, dtype=int)
        testing = np.asarray(testing_indices, dtype=int)

        used = np.concatenate([training, selection, testing])
        if used.size and (used.min() < 0 or used.max() >= self.samples_number):
            raise ValueError("Sample index out of range")
        if np.unique(used).size != used.size:
            raise ValueError("A sample is assigned to more than one subset")

        self._training_indices = training
        self._selection_indices = selection
        self._testing_indices = testing

    def split_samples_random(
        self,
        training_ratio: float = 0.6,
        selection_ratio: float = 0.2,
        testing_ratio: float = 0.2,
    ) -> None:
        """Shuffle the samples and split them by the given ratios."""
        total = training_ratio + selection_ratio + testing_ratio
        if total <= 0 or min(training_ratio, selection_ratio, testing_ratio) < 0:
            raise ValueError("Split ratios must be non-negative with a positive sum")

        permutation = self._rng.permutation(self.samples_number)
        training_number = int(round(self.samples_number * training_ratio / total))
        selection_number = int(round(self.samples_number * selection_ratio / total))

        self.set_split(
            permutation[:training_number],
            permutation[training_number : training_number + selection_number],
            permutation[training_number + selection_number :],
        )
        logger.debug(
            f"Split {self.samples_number} samples: {training_number} training, "
            f"{selection_number} selection, "
            f"{self.samples_number - training_number - selection_number} testing"
        )

    def get_batches(
        self,
        indices: Sequence[int] | np.ndarray,
        batch_size: int,
        shuffle: bool,
        seed: int | None = None,
    ) -> np.ndarray:
        """Partition ``indices`` into batches of ``batch_size`` samples.

        Samples left over after the last full batch are dropped.

        Returns:
            Array of shape (batches, batch_size)
        """
        indices = np.asarray(indices, dtype=int)
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        batch_size = min(batch_size, indices.size)

        if shuffle:
            rng = self._rng if seed is None else np.random.default_rng(seed)
            indices = rng.permutation(indices)

        batches_number = indices.size // batch_size if batch_size else 0
        return indices[: batches_number * batch_size].reshape(
            batches_number, batch_size
        )

    def fill(self, indices: Sequence[int] | np.ndarray) -> Batch:
        indices = np.asarray(indices, dtype=int)
        return Batch(
            inputs=jnp.asarray(self.inputs[indices]),
            targets=jnp.asarray(self.targets[indices]),
        )

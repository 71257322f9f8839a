"""Stochastic gradient descent optimizer.

Unlike the full-batch optimizers, the update is applied once per mini-batch:
each epoch reshuffles the training indices into batches of
``batch_samples_number`` samples (the remainder is dropped) and applies the
``decayed_momentum_sgd`` rule to every batch gradient. Selection error and
stopping criteria are evaluated once per epoch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from functools import partial
from typing import ClassVar, TYPE_CHECKING

import jax
import optax

from nnopt.optimization.base import OptimizationAlgorithm
from nnopt.optimization.directions import decayed_momentum_sgd, DecayedMomentumState
from nnopt.optimization.errors import ConfigurationError
from nnopt.optimization.kernels import l2_norm
from nnopt.optimization.results import TrainingResults
from nnopt.optimization.serialization import add_element, parse_bool, read_element
from nnopt.optimization.stopping import (
    EpochStatus,
    SelectionErrorTracker,
    StoppingCriteria,
)


if TYPE_CHECKING:
    from collections.abc import Callable
    import xml.etree.ElementTree as ET

    from jaxtyping import Array, Float

    from nnopt.neural.protocols import LossIndex
    from nnopt.optimization.base import NormThresholds
    from nnopt.optimization.kernels import ExecutionContext


logger = logging.getLogger(__name__)

# Momentum set when a configuration only says momentum is applied.
DEFAULT_MOMENTUM = 0.9


@dataclass(frozen=True)
class SGDConfig:
    """Configuration of the stochastic update rule.

    Attributes:
        initial_learning_rate: Learning rate of the first mini-batch
        initial_decay: Learning-rate decay per mini-batch
        momentum: Momentum coefficient, 0 disables momentum
        nesterov: Apply Nesterov's look-ahead correction
        batch_samples_number: Samples per mini-batch
        shuffle_seed: Seed of the per-epoch shuffle; None draws a fresh
            permutation every run
    """

    initial_learning_rate: float = 0.01
    initial_decay: float = 0.0
    momentum: float = 0.0
    nesterov: bool = False
    batch_samples_number: int = 1000
    shuffle_seed: int | None = None

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.initial_learning_rate <= 0:
            raise ConfigurationError("initial_learning_rate must be positive")
        if self.initial_decay < 0:
            raise ConfigurationError("initial_decay must be non-negative")
        if self.momentum < 0:
            raise ConfigurationError("momentum must be non-negative")
        if self.batch_samples_number <= 0:
            raise ConfigurationError("batch_samples_number must be positive")

    @property
    def apply_momentum(self) -> bool:
        return self.momentum > 0


@dataclass
class StochasticGradientDescentData:
    """Working state of one stochastic ``perform_training`` call.

    Attributes:
        parameters: Current parameters
        optimizer_state: State of the update rule; holds the iteration count
            and the previous increment
        epoch: Current epoch
    """

    parameters: Float[Array, " n"]
    optimizer_state: DecayedMomentumState
    epoch: int = 0

    @property
    def iteration(self) -> int:
        return int(self.optimizer_state.iteration)

    @property
    def learning_rate(self) -> float:
        return float(self.optimizer_state.learning_rate)


class StochasticGradientDescent(OptimizationAlgorithm):
    """Mini-batch gradient descent with decay, momentum and Nesterov.

    Example:
        >>> optimizer = StochasticGradientDescent(
        ...     loss_index, config=SGDConfig(momentum=0.9, batch_samples_number=32)
        ... )
        >>> results = optimizer.perform_training()
    """

    xml_tag = "StochasticGradientDescent"
    xml_fields = (
        "ApplyEarlyStopping",
        "LossGoal",
        "MaximumSelectionErrorIncreases",
        "MaximumEpochsNumber",
        "MaximumTime",
        "ReserveTrainingErrorHistory",
        "ReserveSelectionErrorHistory",
        "ReturnMinimumSelectionErrorNN",
        "Display",
        "DisplayPeriod",
    )
    default_stopping_criteria: ClassVar[StoppingCriteria] = StoppingCriteria(
        loss_goal=0.0
    )
    default_reserve_selection_error_history: ClassVar[bool] = True

    def __init__(
        self,
        loss_index: LossIndex | None = None,
        *,
        config: SGDConfig | None = None,
        stopping_criteria: StoppingCriteria | None = None,
        thresholds: NormThresholds | None = None,
        context: ExecutionContext | None = None,
    ):
        super().__init__(
            loss_index,
            stopping_criteria=stopping_criteria,
            thresholds=thresholds,
            context=context,
        )
        self.config = config or SGDConfig()

    def _update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)

    def set_initial_learning_rate(self, value: float) -> None:
        self._update_config(initial_learning_rate=value)

    def set_initial_decay(self, value: float) -> None:
        self._update_config(initial_decay=value)

    def set_momentum(self, value: float) -> None:
        self._update_config(momentum=value)

    def set_nesterov(self, value: bool) -> None:
        self._update_config(nesterov=bool(value))

    def set_batch_samples_number(self, value: int) -> None:
        self._update_config(batch_samples_number=value)

    def set_shuffle_seed(self, value: int | None) -> None:
        self._update_config(shuffle_seed=value)

    def build_transformation(self) -> optax.GradientTransformation:
        return decayed_momentum_sgd(
            learning_rate=self.config.initial_learning_rate,
            decay=self.config.initial_decay,
            momentum=self.config.momentum,
            nesterov=self.config.nesterov,
        )

    def init_optimization_data(
        self,
        parameters: Float[Array, " n"],
        transformation: optax.GradientTransformation,
    ) -> StochasticGradientDescentData:
        return StochasticGradientDescentData(
            parameters=parameters, optimizer_state=transformation.init(parameters)
        )

    def _epoch_seed(self, epoch: int) -> int | None:
        if self.config.shuffle_seed is None:
            return None
        return self.config.shuffle_seed + epoch

    def perform_training(self) -> TrainingResults:
        self.check()
        loss_index = self.loss_index
        network = loss_index.network
        data_set = loss_index.data_set
        criteria = self.stopping_criteria

        training_indices = data_set.get_training_indices()
        if len(training_indices) == 0:
            raise ConfigurationError("Data set has no training samples")
        batch_size = min(len(training_indices), self.config.batch_samples_number)

        training_batch = data_set.fill(training_indices)
        has_selection = data_set.has_selection()
        selection_batch = (
            data_set.fill(data_set.get_selection_indices()) if has_selection else None
        )

        transformation = self.build_transformation()
        update = jax.jit(transformation.update)
        data = self.init_optimization_data(
            self.context.put(network.get_parameters()), transformation
        )

        results = TrainingResults.allocate(
            self.xml_tag,
            criteria.maximum_epochs_number,
            self.reserve_training_error_history,
            self.reserve_selection_error_history,
        )
        tracker = SelectionErrorTracker()
        checkpointer = self._make_checkpointer()

        if self.display:
            logger.info(
                f"Training with {self.xml_tag}: batch size {batch_size}, "
                f"learning rate {self.config.initial_learning_rate}"
            )

        start_time = time.perf_counter()

        initial_error = float(
            loss_index.calculate_error(
                training_batch,
                network.forward_propagate(training_batch, data.parameters),
            )
        )
        selection_error = None
        if has_selection:
            selection_error = self._calculate_selection_error(
                selection_batch, data.parameters
            )
            tracker.update(selection_error, data.parameters)
        results.record(0, initial_error, selection_error)

        training_error = initial_error
        gradient_norm = 0.0
        elapsed_time = 0.0

        for epoch in range(1, criteria.maximum_epochs_number + 1):
            data.epoch = epoch
            batches = data_set.get_batches(
                training_indices, batch_size, True, self._epoch_seed(epoch)
            )

            error_sum = 0.0
            loss_sum = 0.0
            for batch_indices in batches:
                batch = data_set.fill(batch_indices)
                forward_propagation = network.forward_propagate(
                    batch, data.parameters
                )
                back_propagation = loss_index.back_propagate(
                    batch, forward_propagation
                )
                gradient_norm = l2_norm(back_propagation.gradient, self.context)
                self._check_gradient_norm(gradient_norm, epoch)

                updates, data.optimizer_state = update(
                    back_propagation.gradient, data.optimizer_state
                )
                data.parameters = optax.apply_updates(data.parameters, updates)

                error_sum += float(back_propagation.error)
                loss_sum += float(back_propagation.loss)

            training_error = error_sum / len(batches)
            training_loss = loss_sum / len(batches)

            self._check_parameters_norm(l2_norm(data.parameters, self.context), epoch)
            self._check_learning_rate(data.learning_rate, epoch)

            selection_error = None
            if has_selection:
                selection_error = self._calculate_selection_error(
                    selection_batch, data.parameters
                )
                tracker.update(selection_error, data.parameters)

            results.record(epoch, training_error, selection_error)
            elapsed_time = time.perf_counter() - start_time

            condition = self._evaluate_stopping_criteria(
                EpochStatus(
                    epoch=epoch,
                    training_loss=training_loss,
                    gradient_norm=gradient_norm,
                    elapsed_time=elapsed_time,
                    selection_error_increases=tracker.increases,
                    has_selection=has_selection,
                )
            )
            self._log_epoch(
                epoch,
                training_error,
                selection_error,
                data.learning_rate,
                elapsed_time,
                stopping=condition is not None,
            )

            network.set_parameters(data.parameters)
            if checkpointer is not None:
                checkpointer.maybe_save(network, epoch)

            if condition is not None:
                return self._finish(
                    results,
                    data.parameters,
                    tracker,
                    epoch,
                    condition,
                    training_error,
                    selection_error,
                    gradient_norm,
                    elapsed_time,
                )

        # Only reached with maximum_epochs_number == 0.
        back_propagation = loss_index.back_propagate(
            training_batch,
            network.forward_propagate(training_batch, data.parameters),
        )
        gradient_norm = l2_norm(back_propagation.gradient, self.context)
        condition = self._evaluate_stopping_criteria(
            EpochStatus(
                epoch=0,
                training_loss=training_error,
                gradient_norm=gradient_norm,
                elapsed_time=elapsed_time,
                selection_error_increases=tracker.increases,
                has_selection=has_selection,
            )
        )
        return self._finish(
            results,
            data.parameters,
            tracker,
            0,
            condition,
            training_error,
            selection_error,
            gradient_norm,
            elapsed_time,
        )

    def _write_method_xml(self, root: ET.Element) -> None:
        add_element(root, "BatchSize", self.config.batch_samples_number)
        add_element(root, "ApplyMomentum", self.config.apply_momentum)
        add_element(root, "InitialLearningRate", self.config.initial_learning_rate)
        add_element(root, "InitialDecay", self.config.initial_decay)
        add_element(root, "Momentum", self.config.momentum)
        add_element(root, "Nesterov", self.config.nesterov)

    def _read_method_xml(self, root: ET.Element) -> list[Callable[[], None]]:
        config = self.config
        momentum = config.momentum
        apply_momentum = read_element(root, "ApplyMomentum", parse_bool)
        if apply_momentum is not None:
            momentum = DEFAULT_MOMENTUM if apply_momentum else 0.0
        parsed = SGDConfig(
            initial_learning_rate=read_element(
                root, "InitialLearningRate", float, config.initial_learning_rate
            ),
            initial_decay=read_element(
                root, "InitialDecay", float, config.initial_decay
            ),
            momentum=read_element(root, "Momentum", float, momentum),
            nesterov=read_element(root, "Nesterov", parse_bool, config.nesterov),
            batch_samples_number=read_element(
                root, "BatchSize", int, config.batch_samples_number
            ),
            shuffle_seed=config.shuffle_seed,
        )
        return [partial(setattr, self, "config", parsed)]

    def _method_rows(self) -> list[tuple[str, str]]:
        return [
            ("Batch samples number", str(self.config.batch_samples_number)),
            ("Initial learning rate", str(self.config.initial_learning_rate)),
            ("Initial decay", str(self.config.initial_decay)),
            ("Apply momentum", "true" if self.config.apply_momentum else "false"),
            ("Momentum", str(self.config.momentum)),
            ("Nesterov", "true" if self.config.nesterov else "false"),
        ]

"""Stopping criteria shared by every optimizer's training loop.

The criteria are evaluated once per epoch in a fixed priority order and the
first satisfied criterion is reported:

    1. Minimum parameters increment norm
    2. Loss goal
    3. Gradient norm goal
    4. Maximum selection error increases (early stopping)
    5. Maximum epochs number
    6. Maximum time

The order makes the reported condition deterministic when several criteria are
met at the same epoch.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from nnopt.optimization.errors import ConfigurationError


if TYPE_CHECKING:
    from jaxtyping import Array, Float


class StoppingCondition(Enum):
    """Reason a training run stopped."""

    MINIMUM_PARAMETERS_INCREMENT_NORM = "MinimumParametersIncrementNorm"
    LOSS_GOAL = "LossGoal"
    GRADIENT_NORM_GOAL = "GradientNormGoal"
    MAXIMUM_SELECTION_ERROR_INCREASES = "MaximumSelectionErrorIncreases"
    MAXIMUM_EPOCHS_NUMBER = "MaximumEpochsNumber"
    MAXIMUM_TIME = "MaximumTime"

    def describe(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    StoppingCondition.MINIMUM_PARAMETERS_INCREMENT_NORM: (
        "Minimum parameters increment norm reached"
    ),
    StoppingCondition.LOSS_GOAL: "Loss goal reached",
    StoppingCondition.GRADIENT_NORM_GOAL: "Gradient norm goal reached",
    StoppingCondition.MAXIMUM_SELECTION_ERROR_INCREASES: (
        "Maximum selection error increases reached"
    ),
    StoppingCondition.MAXIMUM_EPOCHS_NUMBER: "Maximum number of epochs reached",
    StoppingCondition.MAXIMUM_TIME: "Maximum training time reached",
}


@dataclass(frozen=True)
class StoppingCriteria:
    """Thresholds of the stopping criteria.

    Attributes:
        minimum_parameters_increment_norm: Stop when an epoch moves the
            parameters by at most this norm
        minimum_loss_decrease: Kept for configuration files; not part of the
            evaluation order
        loss_goal: Stop when the training loss is at most this value
        gradient_norm_goal: Stop when the gradient norm is at most this value
        maximum_selection_error_increases: Stop after this many consecutive
            selection error increases
        maximum_epochs_number: Stop at this epoch
        maximum_time: Stop after this many seconds
        apply_early_stopping: Whether selection error increases are checked
    """

    minimum_parameters_increment_norm: float = 0.0
    minimum_loss_decrease: float = 0.0
    loss_goal: float = -math.inf
    gradient_norm_goal: float = 0.0
    maximum_selection_error_increases: int = 1_000_000
    maximum_epochs_number: int = 1000
    maximum_time: float = 3600.0
    apply_early_stopping: bool = True

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.minimum_parameters_increment_norm < 0:
            raise ConfigurationError(
                "minimum_parameters_increment_norm must be non-negative"
            )
        if self.minimum_loss_decrease < 0:
            raise ConfigurationError("minimum_loss_decrease must be non-negative")
        if self.gradient_norm_goal < 0:
            raise ConfigurationError("gradient_norm_goal must be non-negative")
        if self.maximum_selection_error_increases < 0:
            raise ConfigurationError(
                "maximum_selection_error_increases must be non-negative"
            )
        if self.maximum_epochs_number < 0:
            raise ConfigurationError("maximum_epochs_number must be non-negative")
        if self.maximum_time < 0:
            raise ConfigurationError("maximum_time must be non-negative")


@dataclass(frozen=True)
class EpochStatus:
    """Values the criteria are checked against at the end of an epoch.

    ``parameters_increment_norm`` is None for optimizers that do not measure
    it; the corresponding criterion is then skipped.
    """

    epoch: int
    training_loss: float
    gradient_norm: float
    elapsed_time: float
    parameters_increment_norm: float | None = None
    selection_error_increases: int = 0
    has_selection: bool = False


def evaluate_stopping_criteria(
    criteria: StoppingCriteria, status: EpochStatus
) -> StoppingCondition | None:
    """Return the first satisfied stopping condition, or None to continue."""
    if (
        status.parameters_increment_norm is not None
        and status.parameters_increment_norm
        <= criteria.minimum_parameters_increment_norm
    ):
        return StoppingCondition.MINIMUM_PARAMETERS_INCREMENT_NORM

    if status.training_loss <= criteria.loss_goal:
        return StoppingCondition.LOSS_GOAL

    if status.gradient_norm <= criteria.gradient_norm_goal:
        return StoppingCondition.GRADIENT_NORM_GOAL

    if (
        criteria.apply_early_stopping
        and status.has_selection
        and status.selection_error_increases
        >= criteria.maximum_selection_error_increases
    ):
        return StoppingCondition.MAXIMUM_SELECTION_ERROR_INCREASES

    if status.epoch >= criteria.maximum_epochs_number:
        return StoppingCondition.MAXIMUM_EPOCHS_NUMBER

    if status.elapsed_time >= criteria.maximum_time:
        return StoppingCondition.MAXIMUM_TIME

    return None


class SelectionErrorTracker:
    """Track selection error increases and the best selection error seen.

    Attributes:
        increases: Consecutive epochs whose selection error rose
        optimum_selection_error: Lowest selection error recorded
        optimal_parameters: Parameters at which the optimum was recorded
    """

    def __init__(self):
        self.increases = 0
        self.optimum_selection_error = math.inf
        self.optimal_parameters: Float[Array, " n"] | None = None
        self._old_selection_error: float | None = None

    def update(self, selection_error: float, parameters: Float[Array, " n"]) -> None:
        """Record the selection error measured at ``parameters``."""
        if (
            self._old_selection_error is not None
            and selection_error > self._old_selection_error
        ):
            self.increases += 1
        else:
            self.increases = 0

        if selection_error <= self.optimum_selection_error:
            self.optimum_selection_error = selection_error
            self.optimal_parameters = parameters

        self._old_selection_error = selection_error

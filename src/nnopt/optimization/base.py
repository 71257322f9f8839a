"""Training-loop orchestration shared by every optimizer.

``OptimizationAlgorithm`` holds the collaborators, the stopping criteria, the
numerical thresholds and the display/checkpoint settings, and implements the
pieces of the epoch loop that do not depend on the update rule.

``LineSearchOptimizationAlgorithm`` adds the full-batch loop used by the
conjugate gradient and quasi-Newton optimizers: each epoch computes a unit
descent direction, finds a step along it with the line search and moves the
parameters. Subclasses only supply the direction.
"""

from __future__ import annotations

import abc
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from functools import partial
from pathlib import Path
from typing import Any, ClassVar, TYPE_CHECKING

from nnopt.optimization.checkpoint import NetworkCheckpointer
from nnopt.optimization.errors import ConfigurationError, NumericalDivergenceError
from nnopt.optimization.kernels import ExecutionContext, l2_norm, normalized
from nnopt.optimization.line_search import (
    LineSearch,
    LineSearchConfig,
    LineSearchMethod,
)
from nnopt.optimization.results import format_elapsed_time, TrainingResults
from nnopt.optimization.serialization import (
    add_element,
    check_root,
    line_search_from_xml,
    line_search_to_xml,
    parse_bool,
    read_document,
    read_element,
    write_document,
)
from nnopt.optimization.stopping import (
    EpochStatus,
    evaluate_stopping_criteria,
    SelectionErrorTracker,
    StoppingCondition,
    StoppingCriteria,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from jaxtyping import Array, Float

    from nnopt.neural.protocols import BackPropagation, Batch, LossIndex


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormThresholds:
    """Warning and error thresholds on the magnitudes seen during training.

    Reaching a warning threshold logs a warning. Reaching an error threshold on
    the parameters or gradient norm aborts training with
    ``NumericalDivergenceError``; the error learning rate bounds the line
    search expansion.
    """

    warning_parameters_norm: float = 1e6
    warning_gradient_norm: float = 1e6
    warning_learning_rate: float = 1e6
    error_parameters_norm: float = 1e9
    error_gradient_norm: float = 1e9
    error_learning_rate: float = 1e9

    def __post_init__(self):
        """Validate configuration parameters."""
        for name in (
            "warning_parameters_norm",
            "warning_gradient_norm",
            "warning_learning_rate",
            "error_parameters_norm",
            "error_gradient_norm",
            "error_learning_rate",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative")


@dataclass(frozen=True)
class _XMLField:
    label: str
    attribute: str
    parse: Callable[[str], Any]


_CRITERIA = "stopping_criteria."

# XML tag -> (table label, attribute path, parser)
XML_FIELDS: dict[str, _XMLField] = {
    "ReturnMinimumSelectionErrorNN": _XMLField(
        "Return minimum selection error network", "choose_best_selection", parse_bool
    ),
    "ApplyEarlyStopping": _XMLField(
        "Apply early stopping", _CRITERIA + "apply_early_stopping", parse_bool
    ),
    "MinimumParametersIncrementNorm": _XMLField(
        "Minimum parameters increment norm",
        _CRITERIA + "minimum_parameters_increment_norm",
        float,
    ),
    "MinimumLossDecrease": _XMLField(
        "Minimum loss decrease", _CRITERIA + "minimum_loss_decrease", float
    ),
    "LossGoal": _XMLField("Loss goal", _CRITERIA + "loss_goal", float),
    "GradientNormGoal": _XMLField(
        "Gradient norm goal", _CRITERIA + "gradient_norm_goal", float
    ),
    "MaximumSelectionErrorIncreases": _XMLField(
        "Maximum selection error increases",
        _CRITERIA + "maximum_selection_error_increases",
        int,
    ),
    "MaximumEpochsNumber": _XMLField(
        "Maximum epochs number", _CRITERIA + "maximum_epochs_number", int
    ),
    "MaximumTime": _XMLField("Maximum time", _CRITERIA + "maximum_time", float),
    "ReserveTrainingErrorHistory": _XMLField(
        "Reserve training error history", "reserve_training_error_history", parse_bool
    ),
    "ReserveSelectionErrorHistory": _XMLField(
        "Reserve selection error history",
        "reserve_selection_error_history",
        parse_bool,
    ),
    "Display": _XMLField("Display", "display", parse_bool),
    "DisplayPeriod": _XMLField("Display period", "display_period", int),
}


def _check_display_period(value: int) -> None:
    if value < 1:
        raise ConfigurationError("display_period must be at least 1")


class OptimizationAlgorithm(abc.ABC):
    """Base class of the optimizers.

    Collaborators are injected at construction or with ``set_loss_index``;
    the loss index carries the network and the data set. Every setter
    validates its value and raises ``ConfigurationError`` on rejection.

    Attributes:
        loss_index: Loss being minimized; exposes ``network`` and ``data_set``
        stopping_criteria: Thresholds of the stopping criteria
        thresholds: Warning and error thresholds
        context: Execution context for the numeric kernels
        choose_best_selection: Restore the parameters with the lowest selection
            error at the end of training
        reserve_training_error_history: Keep the per-epoch training error
        reserve_selection_error_history: Keep the per-epoch selection error
        display: Log progress with ``logger.info``
        display_period: Epochs between two progress lines
        save_period: Epochs between two network checkpoints, None to disable
        neural_network_file_name: Destination of the checkpoints
    """

    xml_tag: ClassVar[str]
    xml_fields: ClassVar[tuple[str, ...]] = tuple(XML_FIELDS)
    default_stopping_criteria: ClassVar[StoppingCriteria] = StoppingCriteria()
    default_reserve_selection_error_history: ClassVar[bool] = False

    def __init__(
        self,
        loss_index: LossIndex | None = None,
        *,
        stopping_criteria: StoppingCriteria | None = None,
        thresholds: NormThresholds | None = None,
        context: ExecutionContext | None = None,
    ):
        self.loss_index = loss_index
        self.stopping_criteria = stopping_criteria or self.default_stopping_criteria
        self.thresholds = thresholds or NormThresholds()
        self.context = context or ExecutionContext()

        self.choose_best_selection = False
        self.reserve_training_error_history = True
        self.reserve_selection_error_history = (
            self.default_reserve_selection_error_history
        )

        self.display = True
        self.display_period = 5
        self.save_period: int | None = None
        self.neural_network_file_name: Path = Path("neural_network.pkl")

    # Collaborators

    def set_loss_index(self, loss_index: LossIndex) -> None:
        if loss_index is None:
            raise ConfigurationError("loss_index must not be None")
        self.loss_index = loss_index

    def check(self) -> None:
        """Raise ``ConfigurationError`` unless every collaborator is wired."""
        if self.loss_index is None:
            raise ConfigurationError(f"{type(self).__name__} has no loss index")
        if getattr(self.loss_index, "network", None) is None:
            raise ConfigurationError("Loss index has no network")
        if getattr(self.loss_index, "data_set", None) is None:
            raise ConfigurationError("Loss index has no data set")

    # Stopping criteria setters

    def _update_criteria(self, **changes: Any) -> None:
        self.stopping_criteria = replace(self.stopping_criteria, **changes)

    def set_minimum_parameters_increment_norm(self, value: float) -> None:
        self._update_criteria(minimum_parameters_increment_norm=value)

    def set_minimum_loss_decrease(self, value: float) -> None:
        self._update_criteria(minimum_loss_decrease=value)

    def set_loss_goal(self, value: float) -> None:
        self._update_criteria(loss_goal=value)

    def set_gradient_norm_goal(self, value: float) -> None:
        self._update_criteria(gradient_norm_goal=value)

    def set_maximum_selection_error_increases(self, value: int) -> None:
        self._update_criteria(maximum_selection_error_increases=value)

    def set_maximum_epochs_number(self, value: int) -> None:
        self._update_criteria(maximum_epochs_number=value)

    def set_maximum_time(self, value: float) -> None:
        self._update_criteria(maximum_time=value)

    def set_apply_early_stopping(self, value: bool) -> None:
        self._update_criteria(apply_early_stopping=bool(value))

    # Threshold setters

    def _update_thresholds(self, **changes: float) -> None:
        self.thresholds = replace(self.thresholds, **changes)

    def set_warning_parameters_norm(self, value: float) -> None:
        self._update_thresholds(warning_parameters_norm=value)

    def set_warning_gradient_norm(self, value: float) -> None:
        self._update_thresholds(warning_gradient_norm=value)

    def set_warning_learning_rate(self, value: float) -> None:
        self._update_thresholds(warning_learning_rate=value)

    def set_error_parameters_norm(self, value: float) -> None:
        self._update_thresholds(error_parameters_norm=value)

    def set_error_gradient_norm(self, value: float) -> None:
        self._update_thresholds(error_gradient_norm=value)

    def set_error_learning_rate(self, value: float) -> None:
        self._update_thresholds(error_learning_rate=value)

    # Training output setters

    def set_choose_best_selection(self, value: bool) -> None:
        self.choose_best_selection = bool(value)

    def set_reserve_training_error_history(self, value: bool) -> None:
        self.reserve_training_error_history = bool(value)

    def set_reserve_selection_error_history(self, value: bool) -> None:
        self.reserve_selection_error_history = bool(value)

    def set_reserve_all_training_history(self, value: bool) -> None:
        self.set_reserve_training_error_history(value)
        self.set_reserve_selection_error_history(value)

    def set_display(self, value: bool) -> None:
        self.display = bool(value)

    def set_display_period(self, value: int) -> None:
        _check_display_period(value)
        self.display_period = int(value)

    def set_save_period(self, value: int | None) -> None:
        if value is not None and value < 1:
            raise ConfigurationError("save_period must be at least 1")
        self.save_period = value

    def set_neural_network_file_name(self, file_name: str | Path) -> None:
        self.neural_network_file_name = Path(file_name)

    # Training

    @abc.abstractmethod
    def perform_training(self) -> TrainingResults:
        """Train the network of the loss index and return the results."""

    def _make_checkpointer(self) -> NetworkCheckpointer | None:
        if self.save_period is None:
            return None
        return NetworkCheckpointer(self.neural_network_file_name, self.save_period)

    def _check_parameters_norm(self, norm: float, epoch: int) -> None:
        if not norm < self.thresholds.error_parameters_norm:
            raise NumericalDivergenceError(
                f"Epoch {epoch}: parameters norm {norm:.6g} reached the error "
                f"threshold {self.thresholds.error_parameters_norm:.6g}"
            )
        if norm >= self.thresholds.warning_parameters_norm:
            logger.warning(f"Epoch {epoch}: parameters norm is {norm:.6g}")

    def _check_gradient_norm(self, norm: float, epoch: int) -> None:
        if not norm < self.thresholds.error_gradient_norm:
            raise NumericalDivergenceError(
                f"Epoch {epoch}: gradient norm {norm:.6g} reached the error "
                f"threshold {self.thresholds.error_gradient_norm:.6g}"
            )
        if norm >= self.thresholds.warning_gradient_norm:
            logger.warning(f"Epoch {epoch}: gradient norm is {norm:.6g}")

    def _check_learning_rate(self, learning_rate: float, epoch: int) -> None:
        if learning_rate >= self.thresholds.warning_learning_rate:
            logger.warning(f"Epoch {epoch}: learning rate is {learning_rate:.6g}")

    def _calculate_selection_error(
        self, batch: Batch, parameters: Float[Array, " n"]
    ) -> float:
        forward_propagation = self.loss_index.network.forward_propagate(
            batch, parameters
        )
        return float(self.loss_index.calculate_error(batch, forward_propagation))

    def _evaluate_stopping_criteria(
        self, status: EpochStatus
    ) -> StoppingCondition | None:
        condition = evaluate_stopping_criteria(self.stopping_criteria, status)
        if condition is not None and self.display:
            logger.info(f"Epoch {status.epoch}: {condition.describe()}")
        return condition

    def _log_epoch(
        self,
        epoch: int,
        training_error: float,
        selection_error: float | None,
        learning_rate: float,
        elapsed_time: float,
        stopping: bool,
    ) -> None:
        if not self.display:
            return
        if epoch % self.display_period != 0 and not stopping:
            return
        message = (
            f"Epoch {epoch}/{self.stopping_criteria.maximum_epochs_number}: "
            f"Training error: {training_error:.6f}"
        )
        if selection_error is not None:
            message += f", Selection error: {selection_error:.6f}"
        message += (
            f", Learning rate: {learning_rate:.6g}, "
            f"Elapsed time: {format_elapsed_time(elapsed_time)}"
        )
        logger.info(message)

    def _finish(
        self,
        results: TrainingResults,
        parameters: Float[Array, " n"],
        tracker: SelectionErrorTracker,
        epoch: int,
        condition: StoppingCondition,
        training_error: float,
        selection_error: float | None,
        gradient_norm: float,
        elapsed_time: float,
    ) -> TrainingResults:
        """Fill ``results`` and write the final parameters to the network."""
        results.resize_training_history(epoch + 1)
        results.epochs_number = epoch
        results.stopping_condition = condition
        results.elapsed_time = elapsed_time
        results.final_training_error = float(training_error)
        results.final_gradient_norm = float(gradient_norm)
        if selection_error is not None:
            results.final_selection_error = float(selection_error)
            results.optimum_selection_error = tracker.optimum_selection_error
            results.optimal_parameters = tracker.optimal_parameters

        if self.choose_best_selection and tracker.optimal_parameters is not None:
            parameters = tracker.optimal_parameters
            results.final_selection_error = tracker.optimum_selection_error
            logger.debug(
                f"Restored parameters with selection error "
                f"{tracker.optimum_selection_error:.6g}"
            )

        results.final_parameters = parameters
        results.final_parameters_norm = l2_norm(parameters, self.context)
        self.loss_index.network.set_parameters(parameters)

        if self.display:
            logger.info(results.write_final_results())
        return results

    # Serialization

    def _get_field(self, tag: str) -> Any:
        attribute = XML_FIELDS[tag].attribute
        if attribute.startswith(_CRITERIA):
            return getattr(self.stopping_criteria, attribute[len(_CRITERIA) :])
        return getattr(self, attribute)

    def _write_method_xml(self, root: ET.Element) -> None:
        """Write the settings specific to the update rule."""

    def _read_method_xml(self, root: ET.Element) -> list[Callable[[], None]]:
        """Parse the settings written by ``_write_method_xml``.

        Nothing is assigned here; the returned callables apply the parsed
        values once the whole document has been validated.
        """
        return []

    def to_xml(self) -> ET.Element:
        """Serialize every tunable setting into an XML element."""
        root = ET.Element(self.xml_tag)
        self._write_method_xml(root)
        for tag in self.xml_fields:
            add_element(root, tag, self._get_field(tag))
        return root

    def from_xml(self, root: ET.Element) -> None:
        """Load the settings written by ``to_xml``.

        Missing elements keep their current value. The document is parsed
        and validated in full before any setting changes, so a rejected
        document leaves the optimizer as it was.

        Raises:
            ConfigurationError: If the element is not a ``xml_tag`` element or
                holds an invalid value
        """
        check_root(root, self.xml_tag)
        assignments = self._read_method_xml(root)

        criteria_changes = {}
        attribute_changes = {}
        for tag in self.xml_fields:
            field = XML_FIELDS[tag]
            value = read_element(root, tag, field.parse)
            if value is None:
                continue
            if field.attribute.startswith(_CRITERIA):
                criteria_changes[field.attribute[len(_CRITERIA) :]] = value
            else:
                attribute_changes[field.attribute] = value
        criteria = replace(self.stopping_criteria, **criteria_changes)
        if "display_period" in attribute_changes:
            _check_display_period(attribute_changes["display_period"])

        self.stopping_criteria = criteria
        for assign in assignments:
            assign()
        for attribute, value in attribute_changes.items():
            getattr(self, f"set_{attribute}")(value)

    def write_xml(self, file_name: str | Path) -> None:
        write_document(self.to_xml(), file_name)

    def load(self, file_name: str | Path) -> None:
        self.from_xml(read_document(file_name))

    def _method_rows(self) -> list[tuple[str, str]]:
        return []

    def to_string_matrix(self) -> list[tuple[str, str]]:
        """Label/value rows describing the configuration."""
        rows = self._method_rows()
        for tag in self.xml_fields:
            value = self._get_field(tag)
            if isinstance(value, bool):
                value = "true" if value else "false"
            rows.append((XML_FIELDS[tag].label, str(value)))
        return rows


@dataclass
class LineSearchOptimizationData:
    """Working state of one full-batch ``perform_training`` call.

    Attributes:
        parameters: Current parameters
        old_parameters: Parameters before the last update
        old_gradient: Gradient of the previous epoch
        old_training_direction: Direction of the previous epoch
        learning_rate: Step accepted in the last epoch
        parameters_increment_norm: Norm of the last parameter increment
        epoch: Current epoch
        direction_resets: Times the descent check fell back to steepest
            descent
    """

    parameters: Float[Array, " n"]
    old_parameters: Float[Array, " n"] | None = None
    old_gradient: Float[Array, " n"] | None = None
    old_training_direction: Float[Array, " n"] | None = None
    learning_rate: float = 0.0
    parameters_increment_norm: float = 0.0
    epoch: int = 0
    direction_resets: int = 0


class LineSearchOptimizationAlgorithm(OptimizationAlgorithm):
    """Full-batch optimizer moving along a unit direction chosen by line search.

    Attributes:
        line_search: Step-length search along the training direction
        first_learning_rate: Initial step at epoch 0 and after a failed search
    """

    default_stopping_criteria: ClassVar[StoppingCriteria] = StoppingCriteria(
        maximum_time=1000.0
    )

    def __init__(
        self,
        loss_index: LossIndex | None = None,
        *,
        line_search_config: LineSearchConfig | None = None,
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
        self.line_search = LineSearch(loss_index, line_search_config, self.context)
        self.first_learning_rate = 0.01

    def set_loss_index(self, loss_index: LossIndex) -> None:
        super().set_loss_index(loss_index)
        self.line_search.set_loss_index(loss_index)

    def set_line_search_method(self, method: LineSearchMethod | str) -> None:
        self.line_search.set_method(method)

    def set_first_learning_rate(self, value: float) -> None:
        if not value > 0:
            raise ConfigurationError("first_learning_rate must be positive")
        self.first_learning_rate = float(value)

    @abc.abstractmethod
    def init_optimization_data(
        self, parameters: Float[Array, " n"]
    ) -> LineSearchOptimizationData:
        """Working state for a run starting at ``parameters``."""

    @abc.abstractmethod
    def calculate_training_direction(
        self, data: LineSearchOptimizationData, gradient: Float[Array, " n"]
    ) -> tuple[Float[Array, " n"], bool]:
        """Unit descent direction for ``data.epoch`` and whether it was reset."""

    def advance(
        self,
        data: LineSearchOptimizationData,
        batch: Batch,
        back_propagation: BackPropagation,
    ) -> None:
        """Move ``data.parameters`` one step along the training direction.

        Reads the gradient and loss of ``back_propagation``; writes the
        parameters, the increment norm, the learning rate and the history the
        next epoch's direction depends on.
        """
        gradient = back_propagation.gradient
        direction, reset = self.calculate_training_direction(data, gradient)
        if reset:
            data.direction_resets += 1
            logger.debug(f"Epoch {data.epoch}: training direction reset")

        initial_step = (
            data.learning_rate
            if data.epoch > 0 and data.learning_rate > 0
            else self.first_learning_rate
        )
        point = self.line_search.find_step(
            batch,
            data.parameters,
            back_propagation.loss,
            direction,
            initial_step,
            maximum_learning_rate=self.thresholds.error_learning_rate,
        )

        if point.learning_rate == 0:
            logger.debug(
                f"Epoch {data.epoch}: line search failed, retrying along the "
                f"negative gradient"
            )
            direction = normalized(-gradient, self.context)
            point = self.line_search.find_step(
                batch,
                data.parameters,
                back_propagation.loss,
                direction,
                self.first_learning_rate,
                maximum_learning_rate=self.thresholds.error_learning_rate,
            )

        self._check_learning_rate(point.learning_rate, data.epoch)

        increment = point.learning_rate * direction
        data.old_parameters = data.parameters
        data.parameters = data.parameters + increment
        data.parameters_increment_norm = l2_norm(increment, self.context)
        data.old_gradient = gradient
        data.old_training_direction = direction
        data.learning_rate = point.learning_rate

    def perform_training(self) -> TrainingResults:
        self.check()
        loss_index = self.loss_index
        network = loss_index.network
        data_set = loss_index.data_set
        criteria = self.stopping_criteria

        training_batch = data_set.fill(data_set.get_training_indices())
        has_selection = data_set.has_selection()
        selection_batch = (
            data_set.fill(data_set.get_selection_indices()) if has_selection else None
        )

        results = TrainingResults.allocate(
            self.xml_tag,
            criteria.maximum_epochs_number,
            self.reserve_training_error_history,
            self.reserve_selection_error_history,
        )
        data = self.init_optimization_data(
            self.context.put(network.get_parameters())
        )
        tracker = SelectionErrorTracker()
        checkpointer = self._make_checkpointer()

        if self.display:
            logger.info(f"Training with {self.xml_tag}")

        start_time = time.perf_counter()

        for epoch in range(criteria.maximum_epochs_number + 1):
            data.epoch = epoch

            self._check_parameters_norm(l2_norm(data.parameters, self.context), epoch)

            forward_propagation = network.forward_propagate(
                training_batch, data.parameters
            )
            back_propagation = loss_index.back_propagate(
                training_batch, forward_propagation
            )
            gradient_norm = l2_norm(back_propagation.gradient, self.context)
            self._check_gradient_norm(gradient_norm, epoch)

            selection_error = None
            if has_selection:
                selection_error = self._calculate_selection_error(
                    selection_batch, data.parameters
                )
                tracker.update(selection_error, data.parameters)

            self.advance(data, training_batch, back_propagation)

            results.record(epoch, back_propagation.error, selection_error)
            elapsed_time = time.perf_counter() - start_time

            condition = self._evaluate_stopping_criteria(
                EpochStatus(
                    epoch=epoch,
                    training_loss=float(back_propagation.loss),
                    gradient_norm=gradient_norm,
                    elapsed_time=elapsed_time,
                    parameters_increment_norm=data.parameters_increment_norm,
                    selection_error_increases=tracker.increases,
                    has_selection=has_selection,
                )
            )
            self._log_epoch(
                epoch,
                float(back_propagation.error),
                selection_error,
                data.learning_rate,
                elapsed_time,
                stopping=condition is not None,
            )

            network.set_parameters(data.parameters)
            if checkpointer is not None:
                checkpointer.maybe_save(network, epoch)

            if condition is not None:
                results.training_direction_resets = data.direction_resets
                return self._finish(
                    results,
                    data.parameters,
                    tracker,
                    epoch,
                    condition,
                    back_propagation.error,
                    selection_error,
                    gradient_norm,
                    elapsed_time,
                )

        raise AssertionError("maximum epochs number criterion was not evaluated")

    def _write_method_xml(self, root: ET.Element) -> None:
        root.append(line_search_to_xml(self.line_search.config))

    def _read_method_xml(self, root: ET.Element) -> list[Callable[[], None]]:
        config = line_search_from_xml(root, self.line_search.config)
        return [
            *super()._read_method_xml(root),
            partial(setattr, self.line_search, "config", config),
        ]

    def _method_rows(self) -> list[tuple[str, str]]:
        config = self.line_search.config
        return [
            ("Learning rate method", config.method.value),
            ("Learning rate tolerance", str(config.learning_rate_tolerance)),
            ("Loss tolerance", str(config.loss_tolerance)),
        ]

"""Conjugate gradient optimizer.

Full-batch training along Fletcher-Reeves or Polak-Ribiere conjugate
directions, with a line search for the step and a steepest-descent restart
every ``parameters_count`` epochs.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

from nnopt.optimization.base import (
    LineSearchOptimizationAlgorithm,
    LineSearchOptimizationData,
)
from nnopt.optimization.directions import (
    ConjugateGradientDirection,
    TrainingDirectionMethod,
)
from nnopt.optimization.serialization import add_element, read_element


if TYPE_CHECKING:
    from collections.abc import Callable
    import xml.etree.ElementTree as ET

    from jaxtyping import Array, Float

    from nnopt.neural.protocols import LossIndex
    from nnopt.optimization.base import NormThresholds
    from nnopt.optimization.kernels import ExecutionContext
    from nnopt.optimization.line_search import LineSearchConfig
    from nnopt.optimization.stopping import StoppingCriteria


@dataclass
class ConjugateGradientData(LineSearchOptimizationData):
    """Working state of a conjugate gradient run."""


class ConjugateGradient(LineSearchOptimizationAlgorithm):
    """Conjugate gradient training.

    Example:
        >>> optimizer = ConjugateGradient(loss_index, method="FR")
        >>> optimizer.set_maximum_epochs_number(100)
        >>> results = optimizer.perform_training()
    """

    xml_tag = "ConjugateGradient"

    def __init__(
        self,
        loss_index: LossIndex | None = None,
        *,
        method: TrainingDirectionMethod | str = TrainingDirectionMethod.PR,
        line_search_config: LineSearchConfig | None = None,
        stopping_criteria: StoppingCriteria | None = None,
        thresholds: NormThresholds | None = None,
        context: ExecutionContext | None = None,
    ):
        super().__init__(
            loss_index,
            line_search_config=line_search_config,
            stopping_criteria=stopping_criteria,
            thresholds=thresholds,
            context=context,
        )
        self.direction = ConjugateGradientDirection(method, self.context)

    @property
    def training_direction_method(self) -> TrainingDirectionMethod:
        return self.direction.method

    def set_training_direction_method(
        self, method: TrainingDirectionMethod | str
    ) -> None:
        self.direction.method = method

    def init_optimization_data(
        self, parameters: Float[Array, " n"]
    ) -> ConjugateGradientData:
        return ConjugateGradientData(parameters=parameters)

    def calculate_training_direction(
        self, data: ConjugateGradientData, gradient: Float[Array, " n"]
    ) -> tuple[Float[Array, " n"], bool]:
        return self.direction.calculate_training_direction(
            data.epoch, gradient, data.old_gradient, data.old_training_direction
        )

    def _write_method_xml(self, root: ET.Element) -> None:
        add_element(root, "TrainingDirectionMethod", self.training_direction_method)
        super()._write_method_xml(root)

    def _read_method_xml(self, root: ET.Element) -> list[Callable[[], None]]:
        assignments = super()._read_method_xml(root)
        method = read_element(root, "TrainingDirectionMethod", TrainingDirectionMethod)
        if method is not None:
            assignments.append(partial(self.set_training_direction_method, method))
        return assignments

    def _method_rows(self) -> list[tuple[str, str]]:
        return [
            ("Training direction method", self.training_direction_method.value),
            *super()._method_rows(),
        ]

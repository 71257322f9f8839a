"""Quasi-Newton optimizer.

Full-batch training along ``normalized(H @ -gradient)``, where ``H`` is a dense
inverse-Hessian approximation updated every epoch with the DFP or BFGS rule.
Memory and work per epoch are O(n^2) in the number of parameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

from nnopt.optimization.base import (
    LineSearchOptimizationAlgorithm,
    LineSearchOptimizationData,
)
from nnopt.optimization.directions import (
    InverseHessianApproximationMethod,
    QuasiNewtonDirection,
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


logger = logging.getLogger(__name__)

_LARGE_PARAMETERS_COUNT = 10_000


@dataclass
class QuasiNewtonMethodData(LineSearchOptimizationData):
    """Working state of a quasi-Newton run.

    Attributes:
        inverse_hessian: Approximation used for the current epoch's direction
        old_inverse_hessian: Approximation of the previous epoch
    """

    inverse_hessian: Float[Array, "n n"] | None = None
    old_inverse_hessian: Float[Array, "n n"] | None = None


class QuasiNewtonMethod(LineSearchOptimizationAlgorithm):
    """Quasi-Newton training with a DFP or BFGS inverse-Hessian update.

    Example:
        >>> optimizer = QuasiNewtonMethod(loss_index, method="DFP")
        >>> results = optimizer.perform_training()
    """

    xml_tag = "QuasiNewtonMethod"

    def __init__(
        self,
        loss_index: LossIndex | None = None,
        *,
        method: InverseHessianApproximationMethod | str = (
            InverseHessianApproximationMethod.BFGS
        ),
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
        self.direction = QuasiNewtonDirection(method, self.context)

    @property
    def inverse_hessian_approximation_method(
        self,
    ) -> InverseHessianApproximationMethod:
        return self.direction.method

    def set_inverse_hessian_approximation_method(
        self, method: InverseHessianApproximationMethod | str
    ) -> None:
        self.direction.method = method

    def init_optimization_data(
        self, parameters: Float[Array, " n"]
    ) -> QuasiNewtonMethodData:
        parameters_count = int(parameters.shape[0])
        if parameters_count > _LARGE_PARAMETERS_COUNT:
            logger.warning(
                f"Quasi-Newton method with {parameters_count} parameters stores a "
                f"{parameters_count}x{parameters_count} inverse Hessian"
            )
        return QuasiNewtonMethodData(
            parameters=parameters,
            inverse_hessian=self.direction.identity(parameters_count),
        )

    def calculate_training_direction(
        self, data: QuasiNewtonMethodData, gradient: Float[Array, " n"]
    ) -> tuple[Float[Array, " n"], bool]:
        data.old_inverse_hessian = data.inverse_hessian
        data.inverse_hessian = self.direction.calculate_inverse_hessian(
            data.epoch,
            data.old_parameters,
            data.parameters,
            data.old_gradient,
            gradient,
            data.old_inverse_hessian,
        )
        return self.direction.calculate_training_direction(
            data.inverse_hessian, gradient
        )

    def _write_method_xml(self, root: ET.Element) -> None:
        add_element(
            root,
            "InverseHessianApproximationMethod",
            self.inverse_hessian_approximation_method,
        )
        super()._write_method_xml(root)

    def _read_method_xml(self, root: ET.Element) -> list[Callable[[], None]]:
        assignments = super()._read_method_xml(root)
        method = read_element(
            root, "InverseHessianApproximationMethod", InverseHessianApproximationMethod
        )
        if method is not None:
            assignments.append(
                partial(self.set_inverse_hessian_approximation_method, method)
            )
        return assignments

    def _method_rows(self) -> list[tuple[str, str]]:
        return [
            (
                "Inverse Hessian approximation method",
                self.inverse_hessian_approximation_method.value,
            ),
            *super()._method_rows(),
        ]

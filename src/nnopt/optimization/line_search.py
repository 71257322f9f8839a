"""Step-length selection along a fixed training direction.

Given the current parameters, a unit training direction and an initial step
estimate, the line search finds a learning rate that decreases the loss:

1. Bracketing. The loss ``phi(t) = loss(parameters + t * direction)`` is
   evaluated at the initial step. If it decreased, the step is expanded by the
   golden ratio until the loss stops decreasing; otherwise it is contracted by
   the golden ratio until a decrease shows up.
2. Refinement. Inside the bracket ``a < u < b`` (with ``phi(u)`` below both
   ends) the minimum is located by golden-section search or by Brent's
   parabolic interpolation with a golden-section fallback.

When no decrease can be found before the step shrinks below
``learning_rate_tolerance`` the search reports a zero learning rate. Callers
must treat that as a failure, not as progress.

References:
    - Brent (1973): Algorithms for Minimization without Derivatives, ch. 5
    - Press et al.: Numerical Recipes, section 10.2
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import NamedTuple, TYPE_CHECKING

from nnopt.optimization.errors import ConfigurationError
from nnopt.optimization.kernels import ExecutionContext, l2_norm


if TYPE_CHECKING:
    from collections.abc import Callable

    from jaxtyping import Array, Float

    from nnopt.neural.protocols import Batch, LossIndex


logger = logging.getLogger(__name__)

GOLDEN_RATIO = (1.0 + math.sqrt(5.0)) / 2.0
# Fraction of an interval taken by a golden-section step: 2 - golden ratio.
GOLDEN_SECTION = 2.0 - GOLDEN_RATIO

_UNIT_NORM_TOLERANCE = 1e-4


class LineSearchMethod(Enum):
    """Bracket refinement algorithms."""

    GOLDEN_SECTION = "GoldenSection"
    BRENT_METHOD = "BrentMethod"


@dataclass(frozen=True)
class LineSearchConfig:
    """Configuration for the line search.

    Attributes:
        method: Bracket refinement algorithm
        learning_rate_tolerance: Width of the bracket at which refinement stops,
            and smallest step tried while contracting
        loss_tolerance: Loss spread inside the bracket at which refinement stops
        maximum_iterations: Upper bound on refinement iterations
    """

    method: LineSearchMethod = LineSearchMethod.BRENT_METHOD
    learning_rate_tolerance: float = 1e-6
    loss_tolerance: float = 1e-12
    maximum_iterations: int = 100

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.learning_rate_tolerance <= 0:
            raise ConfigurationError("learning_rate_tolerance must be positive")
        if self.loss_tolerance < 0:
            raise ConfigurationError("loss_tolerance must be non-negative")
        if self.maximum_iterations <= 0:
            raise ConfigurationError("maximum_iterations must be positive")


class DirectionalPoint(NamedTuple):
    """Learning rate along the training direction and the loss reached there."""

    learning_rate: float
    loss: float


class Triplet(NamedTuple):
    """Bracket ``a < u < b`` with ``phi(u)`` below ``phi(a)`` and ``phi(b)``."""

    a: DirectionalPoint
    u: DirectionalPoint
    b: DirectionalPoint

    @property
    def length(self) -> float:
        return self.b.learning_rate - self.a.learning_rate

    @property
    def loss_spread(self) -> float:
        return max(self.a.loss, self.b.loss) - self.u.loss


class LineSearch:
    """Bracketing line search with golden-section or Brent refinement.

    The search only needs the network's forward propagation and the loss
    index's loss evaluation; it never mutates the network.

    Example:
        >>> line_search = LineSearch(loss_index)
        >>> point = line_search.find_step(
        ...     batch, parameters, loss, direction, initial_step=0.01
        ... )
        >>> parameters = parameters + point.learning_rate * direction
    """

    def __init__(
        self,
        loss_index: LossIndex | None = None,
        config: LineSearchConfig | None = None,
        context: ExecutionContext | None = None,
    ):
        self.loss_index = loss_index
        self.config = config or LineSearchConfig()
        self.context = context or ExecutionContext()

    def set_loss_index(self, loss_index: LossIndex) -> None:
        self.loss_index = loss_index

    def set_method(self, method: LineSearchMethod | str) -> None:
        """Select the refinement algorithm by enum or by name."""
        if isinstance(method, str):
            try:
                method = LineSearchMethod(method)
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown line search method: {method}"
                ) from e
        self.config = replace(self.config, method=method)

    def find_step(
        self,
        batch: Batch,
        parameters: Float[Array, " n"],
        current_loss: float,
        direction: Float[Array, " n"],
        initial_step: float,
        *,
        maximum_learning_rate: float = math.inf,
    ) -> DirectionalPoint:
        """Find a learning rate that decreases the loss along ``direction``.

        Args:
            batch: Batch the loss is evaluated on
            parameters: Current parameter vector
            current_loss: Loss at ``parameters``
            direction: Unit training direction
            initial_step: First learning rate tried, must be positive
            maximum_learning_rate: Expansion stops once the step would exceed
                this value

        Returns:
            ``DirectionalPoint(learning_rate, loss)``; learning rate is zero
            when no decrease was found

        Raises:
            ValueError: If ``initial_step`` is not positive or ``direction`` is
                neither unit-normalized nor zero
            ConfigurationError: If no loss index is set
        """
        if self.loss_index is None:
            raise ConfigurationError("Line search has no loss index")
        if not initial_step > 0:
            raise ValueError(f"initial_step must be positive, got {initial_step}")

        direction_norm = l2_norm(direction, self.context)
        if direction_norm == 0:
            return DirectionalPoint(0.0, float(current_loss))
        if abs(direction_norm - 1.0) > _UNIT_NORM_TOLERANCE:
            raise ValueError(
                f"Training direction must be unit-normalized, norm is {direction_norm}"
            )

        parameters = self.context.put(parameters)
        direction = self.context.put(direction)

        def phi(learning_rate: float) -> float:
            return self._calculate_loss(
                batch, parameters + learning_rate * direction
            )

        bracket = self._bracket(
            phi, float(current_loss), float(initial_step), maximum_learning_rate
        )

        if bracket is None:
            logger.debug("Line search found no loss decrease")
            return DirectionalPoint(0.0, float(current_loss))

        if isinstance(bracket, DirectionalPoint):
            return bracket

        return self._refine(phi, bracket)

    def _calculate_loss(self, batch: Batch, parameters: Float[Array, " n"]) -> float:
        network = self.loss_index.network
        forward_propagation = network.forward_propagate(batch, parameters)
        return float(self.loss_index.calculate_loss(batch, forward_propagation))

    def _bracket(
        self,
        phi: Callable[[float], float],
        current_loss: float,
        initial_step: float,
        maximum_learning_rate: float,
    ) -> Triplet | DirectionalPoint | None:
        """Find a triplet enclosing a minimum along the direction.

        Returns a ``Triplet`` when the minimum is enclosed, a single point when
        the expansion hit ``maximum_learning_rate`` while still decreasing, and
        None when no decrease exists above the learning rate tolerance.
        """
        a = DirectionalPoint(0.0, current_loss)
        b = DirectionalPoint(initial_step, phi(initial_step))

        if b.loss < a.loss:
            u = b
            while True:
                step = u.learning_rate * GOLDEN_RATIO
                if step > maximum_learning_rate:
                    logger.debug(
                        f"Line search expansion stopped at learning rate "
                        f"{u.learning_rate}"
                    )
                    return u
                b = DirectionalPoint(step, phi(step))
                if b.loss >= u.loss:
                    return Triplet(a, u, b)
                a, u = u, b

        while b.learning_rate > self.config.learning_rate_tolerance:
            step = b.learning_rate / GOLDEN_RATIO
            u = DirectionalPoint(step, phi(step))
            if u.loss < a.loss:
                return Triplet(a, u, b)
            b = u

        return None

    def _refine(
        self, phi: Callable[[float], float], triplet: Triplet
    ) -> DirectionalPoint:
        """Shrink the bracket around its minimum and return the best point."""
        use_brent = self.config.method == LineSearchMethod.BRENT_METHOD

        for _ in range(self.config.maximum_iterations):
            if (
                triplet.length <= self.config.learning_rate_tolerance
                or triplet.loss_spread <= self.config.loss_tolerance
            ):
                break

            step = None
            if use_brent:
                step = self._parabolic_step(triplet)
            if step is None:
                step = self._golden_section_step(triplet)

            triplet = _update_triplet(
                triplet, DirectionalPoint(step, phi(step))
            )

        return triplet.u

    @staticmethod
    def _golden_section_step(triplet: Triplet) -> float:
        a, u, b = (point.learning_rate for point in triplet)
        if u - a > b - u:
            return u - GOLDEN_SECTION * (u - a)
        return u + GOLDEN_SECTION * (b - u)

    def _parabolic_step(self, triplet: Triplet) -> float | None:
        """Minimum of the parabola through the triplet, or None if unusable."""
        (a, fa), (u, fu), (b, fb) = triplet

        p = (u - a) ** 2 * (fu - fb) - (u - b) ** 2 * (fu - fa)
        q = 2.0 * ((u - a) * (fu - fb) - (u - b) * (fu - fa))

        if abs(q) < 1e-300:
            return None

        step = u - p / q

        # Reject points outside the bracket or too close to u to make progress.
        margin = 0.5 * self.config.learning_rate_tolerance
        if not (a + margin < step < b - margin) or abs(step - u) < margin:
            return None

        return step


def _update_triplet(triplet: Triplet, point: DirectionalPoint) -> Triplet:
    """Replace one end of the bracket with ``point`` keeping the invariant."""
    a, u, b = triplet

    if point.learning_rate < u.learning_rate:
        if point.loss < u.loss:
            return Triplet(a, point, u)
        return Triplet(point, u, b)

    if point.loss < u.loss:
        return Triplet(u, point, b)
    return Triplet(a, u, point)

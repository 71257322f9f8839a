"""Training direction strategies.

Three interchangeable ways of turning gradient history into a parameter
update:

    - ConjugateGradientDirection: Fletcher-Reeves or Polak-Ribiere conjugate
      directions with periodic steepest-descent restarts
    - QuasiNewtonDirection: DFP or BFGS inverse-Hessian approximation
    - decayed_momentum_sgd: per-mini-batch update rule with learning-rate
      decay, momentum and Nesterov acceleration, as an optax transformation

The formula variant (FR/PR, DFP/BFGS) is chosen once when the strategy is
configured; each epoch then calls the selected formula directly.

Every full-batch direction is unit-normalized and is checked to be a descent
direction (``dot(gradient, direction) < 0``). A direction failing the check is
replaced by the normalized negative gradient.

References:
    - Fletcher & Reeves (1964): Function minimization by conjugate gradients
    - Polak & Ribiere (1969): Note sur la convergence de methodes de
      directions conjuguees
    - Nocedal & Wright: Numerical Optimization, ch. 5 and 6
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import NamedTuple, TYPE_CHECKING

import jax
import jax.numpy as jnp
import optax

from nnopt.optimization.errors import ConfigurationError
from nnopt.optimization.kernels import dot, ExecutionContext, l2_norm, normalized


if TYPE_CHECKING:
    from collections.abc import Callable

    from jaxtyping import Array, Float, Int, PyTree


logger = logging.getLogger(__name__)


class TrainingDirectionMethod(Enum):
    """Conjugate gradient parameter formulas."""

    FR = "FR"
    PR = "PR"


class InverseHessianApproximationMethod(Enum):
    """Quasi-Newton inverse-Hessian update rules."""

    DFP = "DFP"
    BFGS = "BFGS"


def _parse_enum(enum_type: type[Enum], value: Enum | str) -> Enum:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError as e:
        names = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(
            f"Unknown {enum_type.__name__} '{value}', expected one of: {names}"
        ) from e


def ensure_descent_direction(
    gradient: Float[Array, " n"],
    direction: Float[Array, " n"],
    context: ExecutionContext | None = None,
) -> tuple[Float[Array, " n"], bool]:
    """Replace ``direction`` by steepest descent if it does not descend.

    Returns:
        Tuple of (direction, reset) where ``reset`` tells whether the
        steepest-descent fallback was taken
    """
    if dot(gradient, direction, context) < 0:
        return direction, False
    return normalized(-gradient, context), True


# Conjugate gradient


@jax.jit
def calculate_fr_parameter(
    old_gradient: Float[Array, " n"], gradient: Float[Array, " n"]
) -> Float[Array, ""]:
    """Fletcher-Reeves parameter bounded to [0, 1].

    ``dot(g, g) / dot(g_old, g_old)``, zero when the denominator is below the
    smallest normal float.
    """
    numerator = jnp.vdot(gradient, gradient)
    denominator = jnp.vdot(old_gradient, old_gradient)
    tiny = jnp.finfo(denominator.dtype).tiny
    degenerate = jnp.abs(denominator) < tiny
    parameter = jnp.where(
        degenerate, 0.0, numerator / jnp.where(degenerate, 1.0, denominator)
    )
    return jnp.clip(parameter, 0.0, 1.0)


@jax.jit
def calculate_pr_parameter(
    old_gradient: Float[Array, " n"], gradient: Float[Array, " n"]
) -> Float[Array, ""]:
    """Polak-Ribiere parameter bounded to [0, 1].

    ``dot(g - g_old, g) / dot(g_old, g_old)``, zero when the denominator is
    below the smallest normal float.
    """
    numerator = jnp.vdot(gradient - old_gradient, gradient)
    denominator = jnp.vdot(old_gradient, old_gradient)
    tiny = jnp.finfo(denominator.dtype).tiny
    degenerate = jnp.abs(denominator) < tiny
    parameter = jnp.where(
        degenerate, 0.0, numerator / jnp.where(degenerate, 1.0, denominator)
    )
    return jnp.clip(parameter, 0.0, 1.0)


_CONJUGATE_PARAMETERS = {
    TrainingDirectionMethod.FR: calculate_fr_parameter,
    TrainingDirectionMethod.PR: calculate_pr_parameter,
}


class ConjugateGradientDirection:
    """Conjugate gradient training direction with periodic restarts.

    The direction is reset to steepest descent at epoch 0 and every
    ``parameters_count`` epochs, which bounds the drift accumulated by the
    conjugate recurrence.

    Attributes:
        method: Formula used for the conjugate parameter
        context: Execution context for the kernels

    Example:
        >>> strategy = ConjugateGradientDirection(TrainingDirectionMethod.FR)
        >>> direction, reset = strategy.calculate_training_direction(
        ...     epoch, gradient, old_gradient, old_direction
        ... )
    """

    def __init__(
        self,
        method: TrainingDirectionMethod | str = TrainingDirectionMethod.PR,
        context: ExecutionContext | None = None,
    ):
        self.context = context or ExecutionContext()
        self.method = method

    @property
    def method(self) -> TrainingDirectionMethod:
        return self._method

    @method.setter
    def method(self, value: TrainingDirectionMethod | str) -> None:
        self._method = _parse_enum(TrainingDirectionMethod, value)
        self._conjugate_parameter = _CONJUGATE_PARAMETERS[self._method]

    def calculate_conjugate_parameter(
        self, old_gradient: Float[Array, " n"], gradient: Float[Array, " n"]
    ) -> float:
        return float(
            self._conjugate_parameter(
                self.context.put(old_gradient), self.context.put(gradient)
            )
        )

    def calculate_conjugate_direction(
        self,
        old_gradient: Float[Array, " n"],
        gradient: Float[Array, " n"],
        old_direction: Float[Array, " n"],
    ) -> Float[Array, " n"]:
        """Return ``normalized(-gradient + beta * old_direction)``."""
        beta = self._conjugate_parameter(
            self.context.put(old_gradient), self.context.put(gradient)
        )
        direction = -self.context.put(gradient) + beta * self.context.put(
            old_direction
        )
        return normalized(direction, self.context)

    def calculate_training_direction(
        self,
        epoch: int,
        gradient: Float[Array, " n"],
        old_gradient: Float[Array, " n"],
        old_direction: Float[Array, " n"],
    ) -> tuple[Float[Array, " n"], bool]:
        """Compute the unit descent direction for ``epoch``.

        Args:
            epoch: Current epoch, starting at 0
            gradient: Current loss gradient
            old_gradient: Gradient of the previous epoch
            old_direction: Direction of the previous epoch

        Returns:
            Tuple of (direction, reset) where ``reset`` tells whether the
            descent check replaced the conjugate direction
        """
        parameters_count = int(gradient.shape[0])

        if epoch == 0 or epoch % parameters_count == 0:
            return normalized(-self.context.put(gradient), self.context), False

        direction = self.calculate_conjugate_direction(
            old_gradient, gradient, old_direction
        )
        return ensure_descent_direction(gradient, direction, self.context)


# Quasi-Newton


@jax.jit
def _dfp_update(
    s: Float[Array, " n"], y: Float[Array, " n"], inverse_hessian: Float[Array, "n n"]
) -> tuple[Float[Array, "n n"], Float[Array, " n"], Float[Array, ""], Float[Array, ""]]:
    hessian_dot_y = inverse_hessian @ y
    s_dot_y = jnp.vdot(s, y)
    y_dot_hessian_dot_y = jnp.vdot(y, hessian_dot_y)
    updated = (
        inverse_hessian
        + jnp.outer(s, s) / s_dot_y
        - jnp.outer(hessian_dot_y, hessian_dot_y) / y_dot_hessian_dot_y
    )
    return updated, hessian_dot_y, s_dot_y, y_dot_hessian_dot_y


@jax.jit
def _bfgs_update(
    s: Float[Array, " n"], y: Float[Array, " n"], inverse_hessian: Float[Array, "n n"]
) -> tuple[Float[Array, "n n"], Float[Array, " n"], Float[Array, ""], Float[Array, ""]]:
    dfp, hessian_dot_y, s_dot_y, y_dot_hessian_dot_y = _dfp_update(
        s, y, inverse_hessian
    )
    u = s / s_dot_y - hessian_dot_y / y_dot_hessian_dot_y
    updated = dfp + y_dot_hessian_dot_y * jnp.outer(u, u)
    return updated, hessian_dot_y, s_dot_y, y_dot_hessian_dot_y


def _guarded_update(
    update: Callable[..., tuple[Array, ...]],
    old_parameters: Float[Array, " n"],
    parameters: Float[Array, " n"],
    old_gradient: Float[Array, " n"],
    gradient: Float[Array, " n"],
    old_inverse_hessian: Float[Array, "n n"],
) -> Float[Array, "n n"]:
    s = parameters - old_parameters
    y = gradient - old_gradient
    updated, _, s_dot_y, y_dot_hessian_dot_y = update(s, y, old_inverse_hessian)
    tiny = jnp.finfo(updated.dtype).tiny
    degenerate = (jnp.abs(s_dot_y) < tiny) | (jnp.abs(y_dot_hessian_dot_y) < tiny)
    degenerate = degenerate | ~jnp.all(jnp.isfinite(updated))
    identity = jnp.eye(updated.shape[0], dtype=updated.dtype)
    return jnp.where(degenerate, identity, updated)


def calculate_dfp_inverse_hessian(
    old_parameters: Float[Array, " n"],
    parameters: Float[Array, " n"],
    old_gradient: Float[Array, " n"],
    gradient: Float[Array, " n"],
    old_inverse_hessian: Float[Array, "n n"],
) -> Float[Array, "n n"]:
    """Davidon-Fletcher-Powell inverse-Hessian update.

    ``H + s s^T / (s.y) - (H y)(H y)^T / (y.H y)`` with
    ``s = parameters - old_parameters`` and ``y = gradient - old_gradient``.
    Degenerate denominators give the identity.
    """
    return _guarded_update(
        _dfp_update,
        old_parameters,
        parameters,
        old_gradient,
        gradient,
        old_inverse_hessian,
    )


def calculate_bfgs_inverse_hessian(
    old_parameters: Float[Array, " n"],
    parameters: Float[Array, " n"],
    old_gradient: Float[Array, " n"],
    gradient: Float[Array, " n"],
    old_inverse_hessian: Float[Array, "n n"],
) -> Float[Array, "n n"]:
    """Broyden-Fletcher-Goldfarb-Shanno inverse-Hessian update.

    The DFP update plus ``(y.H y) u u^T`` with
    ``u = s / (s.y) - H y / (y.H y)``. Degenerate denominators give the
    identity.
    """
    return _guarded_update(
        _bfgs_update,
        old_parameters,
        parameters,
        old_gradient,
        gradient,
        old_inverse_hessian,
    )


_INVERSE_HESSIAN_UPDATES = {
    InverseHessianApproximationMethod.DFP: calculate_dfp_inverse_hessian,
    InverseHessianApproximationMethod.BFGS: calculate_bfgs_inverse_hessian,
}


class QuasiNewtonDirection:
    """Quasi-Newton training direction from a dense inverse-Hessian estimate.

    The estimate is a ``(n, n)`` matrix, so memory and work per epoch grow as
    O(n^2). This is meant for networks with at most a few thousand
    parameters.
    """

    def __init__(
        self,
        method: InverseHessianApproximationMethod | str = (
            InverseHessianApproximationMethod.BFGS
        ),
        context: ExecutionContext | None = None,
    ):
        self.context = context or ExecutionContext()
        self.method = method

    @property
    def method(self) -> InverseHessianApproximationMethod:
        return self._method

    @method.setter
    def method(self, value: InverseHessianApproximationMethod | str) -> None:
        self._method = _parse_enum(InverseHessianApproximationMethod, value)
        self._update = _INVERSE_HESSIAN_UPDATES[self._method]

    def identity(self, parameters_count: int) -> Float[Array, "n n"]:
        return self.context.put(jnp.eye(parameters_count))

    def calculate_inverse_hessian(
        self,
        epoch: int,
        old_parameters: Float[Array, " n"],
        parameters: Float[Array, " n"],
        old_gradient: Float[Array, " n"],
        gradient: Float[Array, " n"],
        old_inverse_hessian: Float[Array, "n n"],
    ) -> Float[Array, "n n"]:
        """Inverse-Hessian approximation for ``epoch``.

        Identity at epoch 0, or when the parameter or gradient change is below
        machine epsilon; otherwise the configured rank-2 update.
        """
        parameters_count = int(parameters.shape[0])

        if epoch == 0:
            return self.identity(parameters_count)

        put = self.context.put
        eps = float(jnp.finfo(put(parameters).dtype).eps)

        if (
            l2_norm(put(parameters) - put(old_parameters), self.context) < eps
            or l2_norm(put(gradient) - put(old_gradient), self.context) < eps
        ):
            logger.debug(f"Epoch {epoch}: inverse Hessian reset to identity")
            return self.identity(parameters_count)

        return self._update(
            put(old_parameters),
            put(parameters),
            put(old_gradient),
            put(gradient),
            put(old_inverse_hessian),
        )

    def calculate_training_direction(
        self,
        inverse_hessian: Float[Array, "n n"],
        gradient: Float[Array, " n"],
    ) -> tuple[Float[Array, " n"], bool]:
        """Return ``normalized(H @ -gradient)`` and whether it was reset."""
        gradient = self.context.put(gradient)
        direction = normalized(
            self.context.put(inverse_hessian) @ -gradient, self.context
        )
        return ensure_descent_direction(gradient, direction, self.context)


# Stochastic gradient descent


class DecayedMomentumState(NamedTuple):
    """State of the stochastic update rule.

    Attributes:
        iteration: Mini-batch updates applied so far
        previous_increment: Increment of the previous mini-batch
        learning_rate: Effective learning rate of the last update
    """

    iteration: Int[Array, ""]
    previous_increment: PyTree
    learning_rate: Float[Array, ""]


def decayed_momentum_sgd(
    learning_rate: float = 0.01,
    decay: float = 0.0,
    momentum: float = 0.0,
    nesterov: bool = False,
) -> optax.GradientTransformation:
    """Stochastic gradient descent with decay, momentum and Nesterov.

    For each mini-batch:

        rate = learning_rate / (1 + iteration * decay)
        increment = -rate * gradient + momentum * previous_increment

    The momentum term is only added when ``momentum > 0``. The applied update
    is ``increment``, or ``momentum * increment - rate * gradient`` with
    Nesterov acceleration. ``iteration`` counts mini-batches.

    Args:
        learning_rate: Initial learning rate
        decay: Learning-rate decay per mini-batch
        momentum: Momentum coefficient
        nesterov: Whether to apply Nesterov's look-ahead correction

    Returns:
        Optax gradient transformation; apply with ``optax.apply_updates``
    """

    def init_fn(params: PyTree) -> DecayedMomentumState:
        return DecayedMomentumState(
            iteration=jnp.zeros([], jnp.int32),
            previous_increment=jax.tree.map(jnp.zeros_like, params),
            learning_rate=jnp.asarray(learning_rate),
        )

    def update_fn(
        updates: PyTree, state: DecayedMomentumState, params: PyTree | None = None
    ) -> tuple[PyTree, DecayedMomentumState]:
        del params
        rate = learning_rate / (1 + state.iteration * decay)
        increment = jax.tree.map(lambda g: -rate * g, updates)

        applied = increment
        if momentum > 0:
            increment = jax.tree.map(
                lambda i, p: i + momentum * p, increment, state.previous_increment
            )
            applied = increment
            if nesterov:
                applied = jax.tree.map(
                    lambda i, g: momentum * i - rate * g, increment, updates
                )

        new_state = DecayedMomentumState(
            iteration=state.iteration + 1,
            previous_increment=increment,
            learning_rate=rate,
        )
        return applied, new_state

    return optax.GradientTransformation(init_fn, update_fn)

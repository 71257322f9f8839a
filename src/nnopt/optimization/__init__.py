"""Optimization engine for nnopt.

Full-batch optimizers take one line-searched step per epoch along a unit
descent direction; the stochastic optimizer applies a direct update rule per
mini-batch. All share the stopping criteria, the thresholds and the results
record.

Key Components:
    - ConjugateGradient: Fletcher-Reeves / Polak-Ribiere conjugate directions
    - QuasiNewtonMethod: DFP / BFGS inverse-Hessian approximation
    - StochasticGradientDescent: Mini-batch descent with decay, momentum and
      Nesterov acceleration
    - LineSearch: Bracketing with golden-section or Brent refinement
    - StoppingCriteria: Thresholds evaluated once per epoch in fixed order
    - TrainingResults: Histories and final values of a run
"""

from nnopt.optimization.base import (
    LineSearchOptimizationAlgorithm,
    LineSearchOptimizationData,
    NormThresholds,
    OptimizationAlgorithm,
)
from nnopt.optimization.checkpoint import NetworkCheckpointer
from nnopt.optimization.conjugate_gradient import (
    ConjugateGradient,
    ConjugateGradientData,
)
from nnopt.optimization.directions import (
    calculate_bfgs_inverse_hessian,
    calculate_dfp_inverse_hessian,
    calculate_fr_parameter,
    calculate_pr_parameter,
    ConjugateGradientDirection,
    decayed_momentum_sgd,
    DecayedMomentumState,
    ensure_descent_direction,
    InverseHessianApproximationMethod,
    QuasiNewtonDirection,
    TrainingDirectionMethod,
)
from nnopt.optimization.errors import ConfigurationError, NumericalDivergenceError
from nnopt.optimization.kernels import dot, ExecutionContext, l2_norm, normalized
from nnopt.optimization.line_search import (
    DirectionalPoint,
    LineSearch,
    LineSearchConfig,
    LineSearchMethod,
)
from nnopt.optimization.quasi_newton_method import (
    QuasiNewtonMethod,
    QuasiNewtonMethodData,
)
from nnopt.optimization.results import TrainingResults
from nnopt.optimization.stochastic_gradient_descent import (
    SGDConfig,
    StochasticGradientDescent,
    StochasticGradientDescentData,
)
from nnopt.optimization.stopping import (
    EpochStatus,
    evaluate_stopping_criteria,
    SelectionErrorTracker,
    StoppingCondition,
    StoppingCriteria,
)


__all__ = [
    # Errors
    "ConfigurationError",
    # Optimizers
    "ConjugateGradient",
    "ConjugateGradientData",
    # Directions
    "ConjugateGradientDirection",
    "DecayedMomentumState",
    # Line search
    "DirectionalPoint",
    # Stopping
    "EpochStatus",
    # Kernels
    "ExecutionContext",
    "InverseHessianApproximationMethod",
    "LineSearch",
    "LineSearchConfig",
    "LineSearchMethod",
    "LineSearchOptimizationAlgorithm",
    "LineSearchOptimizationData",
    "NetworkCheckpointer",
    "NormThresholds",
    "NumericalDivergenceError",
    "OptimizationAlgorithm",
    "QuasiNewtonDirection",
    "QuasiNewtonMethod",
    "QuasiNewtonMethodData",
    "SGDConfig",
    "SelectionErrorTracker",
    "StochasticGradientDescent",
    "StochasticGradientDescentData",
    "StoppingCondition",
    "StoppingCriteria",
    "TrainingDirectionMethod",
    "TrainingResults",
    "calculate_bfgs_inverse_hessian",
    "calculate_dfp_inverse_hessian",
    "calculate_fr_parameter",
    "calculate_pr_parameter",
    "decayed_momentum_sgd",
    "dot",
    "ensure_descent_direction",
    "evaluate_stopping_criteria",
    "l2_norm",
    "normalized",
]

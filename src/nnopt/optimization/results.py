"""Outcome of a training run."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TYPE_CHECKING

import numpy as np

from nnopt.optimization.stopping import StoppingCondition


if TYPE_CHECKING:
    from jaxtyping import Array, Float


logger = logging.getLogger(__name__)


def format_elapsed_time(seconds: float) -> str:
    """Format a duration in seconds as ``HH:MM:SS``."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


@dataclass
class TrainingResults:
    """Histories and final values of one ``perform_training`` call.

    Histories hold one entry per epoch reached and are empty when not
    reserved. Entry 0 is the error before the first update.
    """

    optimization_method: str
    training_error_history: np.ndarray = field(
        default_factory=lambda: np.zeros(0)
    )
    selection_error_history: np.ndarray = field(
        default_factory=lambda: np.zeros(0)
    )
    final_parameters: Float[Array, " n"] | None = None
    final_parameters_norm: float = 0.0
    final_training_error: float = 0.0
    final_selection_error: float = 0.0
    final_gradient_norm: float = 0.0
    optimum_selection_error: float | None = None
    optimal_parameters: Float[Array, " n"] | None = None
    elapsed_time: float = 0.0
    epochs_number: int = 0
    stopping_condition: StoppingCondition | None = None
    training_direction_resets: int = 0

    @classmethod
    def allocate(
        cls,
        optimization_method: str,
        epochs_number: int,
        reserve_training_error_history: bool,
        reserve_selection_error_history: bool,
    ) -> TrainingResults:
        """Results with histories sized for ``epochs_number + 1`` entries."""
        size = epochs_number + 1
        return cls(
            optimization_method=optimization_method,
            training_error_history=np.zeros(
                size if reserve_training_error_history else 0
            ),
            selection_error_history=np.zeros(
                size if reserve_selection_error_history else 0
            ),
        )

    def record(
        self, epoch: int, training_error: float, selection_error: float | None
    ) -> None:
        """Store the errors of ``epoch`` in the reserved histories."""
        if self.training_error_history.size > epoch:
            self.training_error_history[epoch] = training_error
        if selection_error is not None and self.selection_error_history.size > epoch:
            self.selection_error_history[epoch] = selection_error

    def resize_training_history(self, new_size: int) -> None:
        """Truncate the reserved histories to ``new_size`` entries."""
        if self.training_error_history.size:
            self.training_error_history = self.training_error_history[:new_size].copy()
        if self.selection_error_history.size:
            self.selection_error_history = self.selection_error_history[
                :new_size
            ].copy()

    def write_stopping_condition(self) -> str:
        if self.stopping_condition is None:
            return "None"
        return self.stopping_condition.describe()

    def write_elapsed_time(self) -> str:
        return format_elapsed_time(self.elapsed_time)

    def to_string_matrix(self) -> list[tuple[str, str]]:
        """Label/value rows describing the final state."""
        rows = [
            ("Epochs number", str(self.epochs_number)),
            ("Elapsed time", self.write_elapsed_time()),
            ("Stopping criterion", self.write_stopping_condition()),
            ("Training error", f"{self.final_training_error:.6g}"),
            ("Selection error", f"{self.final_selection_error:.6g}"),
        ]
        if self.training_direction_resets:
            rows.append(
                ("Training direction resets", str(self.training_direction_resets))
            )
        if self.optimum_selection_error is not None:
            rows.append(
                ("Optimum selection error", f"{self.optimum_selection_error:.6g}")
            )
        return rows

    def write_final_results(self) -> str:
        """Human-readable summary of the run."""
        lines = [f"{self.optimization_method} results"]
        width = max(len(label) for label, _ in self.to_string_matrix())
        lines.extend(
            f"{label:<{width}}  {value}" for label, value in self.to_string_matrix()
        )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "optimization_method": self.optimization_method,
            "training_error_history": self.training_error_history.tolist(),
            "selection_error_history": self.selection_error_history.tolist(),
            "final_parameters": _to_list(self.final_parameters),
            "final_parameters_norm": self.final_parameters_norm,
            "final_training_error": self.final_training_error,
            "final_selection_error": self.final_selection_error,
            "final_gradient_norm": self.final_gradient_norm,
            "optimum_selection_error": self.optimum_selection_error,
            "elapsed_time": self.elapsed_time,
            "epochs_number": self.epochs_number,
            "training_direction_resets": self.training_direction_resets,
            "stopping_condition": (
                self.stopping_condition.value if self.stopping_condition else None
            ),
        }

    def save(self, file_name: str | Path) -> None:
        """Write the results as JSON."""
        path = Path(file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Training results saved to {path}")


def _to_list(vector: Float[Array, " n"] | None) -> list[float] | None:
    if vector is None:
        return None
    return np.asarray(vector).tolist()

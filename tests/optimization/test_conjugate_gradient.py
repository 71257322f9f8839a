"""Tests for the conjugate gradient optimizer."""

import logging

import numpy as np
import pytest
from flax import nnx

from nnopt.data.dataset import InMemoryDataSet
from nnopt.neural.losses import SumSquaredError
from nnopt.neural.network import LinearModel, NNXNetwork
from nnopt.optimization.conjugate_gradient import (
    ConjugateGradient,
    ConjugateGradientData,
)
from nnopt.optimization.directions import TrainingDirectionMethod
from nnopt.optimization.errors import ConfigurationError, NumericalDivergenceError
from nnopt.optimization.kernels import dot, l2_norm, normalized
from nnopt.optimization.line_search import DirectionalPoint
from nnopt.optimization.stopping import StoppingCondition


@pytest.fixture
def optimizer(regression_loss):
    optimizer = ConjugateGradient(regression_loss)
    optimizer.set_display(False)
    return optimizer


class _UnpicklableNetwork(NNXNetwork):
    def save(self, file_name):
        raise TypeError("cannot pickle object")


def _fail_line_searches(monkeypatch, line_search, failures):
    """Make the first ``failures`` searches report a zero step."""
    calls = []
    find_step = line_search.find_step

    def find_step_with_failures(
        batch, parameters, current_loss, direction, initial_step, **kwargs
    ):
        calls.append((direction, initial_step))
        if len(calls) <= failures:
            return DirectionalPoint(0.0, current_loss)
        return find_step(
            batch, parameters, current_loss, direction, initial_step, **kwargs
        )

    monkeypatch.setattr(line_search, "find_step", find_step_with_failures)
    return calls


def _second_epoch(optimizer):
    """Run epoch 0 and return the state, batch and gradient of epoch 1."""
    loss_index = optimizer.loss_index
    network = loss_index.network
    data_set = loss_index.data_set
    batch = data_set.fill(data_set.get_training_indices())
    data = optimizer.init_optimization_data(network.get_parameters())
    optimizer.advance(
        data,
        batch,
        loss_index.back_propagate(
            batch, network.forward_propagate(batch, data.parameters)
        ),
    )
    data.epoch = 1
    back_propagation = loss_index.back_propagate(
        batch, network.forward_propagate(batch, data.parameters)
    )
    return data, batch, back_propagation


class TestConjugateGradientConfiguration:
    """Test setters and collaborator checks."""

    def test_defaults(self):
        """Defaults follow the conjugate gradient configuration."""
        optimizer = ConjugateGradient()
        assert optimizer.training_direction_method == TrainingDirectionMethod.PR
        assert optimizer.stopping_criteria.maximum_time == 1000.0
        assert optimizer.thresholds.error_parameters_norm == 1e9
        assert optimizer.reserve_training_error_history is True
        assert optimizer.reserve_selection_error_history is False
        assert optimizer.first_learning_rate == 0.01

    def test_method_from_constructor(self):
        """The direction formula can be chosen at construction."""
        optimizer = ConjugateGradient(method="FR")
        assert optimizer.training_direction_method == TrainingDirectionMethod.FR

    def test_invalid_method(self):
        """Unknown formulas are rejected at the setter."""
        with pytest.raises(ConfigurationError):
            ConjugateGradient().set_training_direction_method("CD")

    @pytest.mark.parametrize(
        "setter",
        [
            "set_minimum_parameters_increment_norm",
            "set_minimum_loss_decrease",
            "set_gradient_norm_goal",
            "set_maximum_selection_error_increases",
            "set_maximum_epochs_number",
            "set_maximum_time",
            "set_warning_parameters_norm",
            "set_error_gradient_norm",
        ],
    )
    def test_negative_values_rejected(self, setter):
        """Negative thresholds are configuration errors."""
        optimizer = ConjugateGradient()
        with pytest.raises(ConfigurationError, match="must be non-negative"):
            getattr(optimizer, setter)(-1)

    def test_rejected_value_leaves_configuration_unchanged(self):
        """A rejected setter keeps the previous criteria."""
        optimizer = ConjugateGradient()
        optimizer.set_maximum_epochs_number(10)
        with pytest.raises(ConfigurationError):
            optimizer.set_maximum_epochs_number(-10)
        assert optimizer.stopping_criteria.maximum_epochs_number == 10

    def test_reserve_all_history(self):
        """Both histories can be reserved at once."""
        optimizer = ConjugateGradient()
        optimizer.set_reserve_all_training_history(True)
        assert optimizer.reserve_training_error_history is True
        assert optimizer.reserve_selection_error_history is True

    def test_periods_validated(self):
        """Display and save periods must be positive."""
        optimizer = ConjugateGradient()
        with pytest.raises(ConfigurationError):
            optimizer.set_display_period(0)
        with pytest.raises(ConfigurationError):
            optimizer.set_save_period(0)
        with pytest.raises(ConfigurationError):
            optimizer.set_first_learning_rate(0.0)

    def test_missing_loss_index(self):
        """Training without loss index fails fast."""
        with pytest.raises(ConfigurationError, match="no loss index"):
            ConjugateGradient().perform_training()

    def test_set_loss_index_rejects_none(self):
        """set_loss_index requires a loss index."""
        with pytest.raises(ConfigurationError):
            ConjugateGradient().set_loss_index(None)

    def test_missing_data_set(self, linear_network):
        """Training without data set fails fast."""
        optimizer = ConjugateGradient(SumSquaredError(linear_network))
        with pytest.raises(ConfigurationError, match="no data set"):
            optimizer.perform_training()

    def test_set_loss_index_wires_line_search(self, regression_loss):
        """The line search evaluates the optimizer's loss index."""
        optimizer = ConjugateGradient()
        optimizer.set_loss_index(regression_loss)
        assert optimizer.line_search.loss_index is regression_loss

    def test_string_matrix(self):
        """The configuration table starts with the direction formula."""
        rows = ConjugateGradient(method="FR").to_string_matrix()
        assert rows[0] == ("Training direction method", "FR")
        assert ("Maximum epochs number", "1000") in rows
        assert ("Apply early stopping", "true") in rows


class TestConjugateGradientTraining:
    """Test the full-batch training loop."""

    @pytest.mark.parametrize("method", ["FR", "PR"])
    def test_fits_linear_regression(self, optimizer, regression_data_set, method):
        """The optimizer reaches the loss goal on an exactly solvable problem."""
        optimizer.set_training_direction_method(method)
        optimizer.set_loss_goal(1e-8)
        optimizer.set_maximum_epochs_number(500)

        results = optimizer.perform_training()

        assert results.stopping_condition == StoppingCondition.LOSS_GOAL
        assert results.final_training_error <= 1e-8 + 1e-12
        network = optimizer.loss_index.network
        np.testing.assert_allclose(
            network.calculate_outputs(regression_data_set.inputs),
            regression_data_set.targets,
            atol=1e-3,
        )

    def test_training_error_never_increases(self, optimizer):
        """Line-searched steps only accept loss decreases."""
        optimizer.set_maximum_epochs_number(20)
        results = optimizer.perform_training()
        assert np.all(np.diff(results.training_error_history) <= 1e-12)

    def test_history_resized_to_epochs_reached(self, optimizer):
        """Histories hold one entry per epoch run."""
        optimizer.set_maximum_epochs_number(7)
        results = optimizer.perform_training()
        assert results.stopping_condition == StoppingCondition.MAXIMUM_EPOCHS_NUMBER
        assert results.epochs_number == 7
        assert results.training_error_history.shape == (8,)
        assert results.selection_error_history.shape == (0,)

    def test_increment_norm_has_priority_over_epochs(self, optimizer):
        """Both criteria met at epoch 0 report the increment norm."""
        optimizer.set_minimum_parameters_increment_norm(1e3)
        optimizer.set_maximum_epochs_number(0)
        results = optimizer.perform_training()
        assert (
            results.stopping_condition
            == StoppingCondition.MINIMUM_PARAMETERS_INCREMENT_NORM
        )
        assert results.epochs_number == 0

    def test_final_parameters_written_to_network(self, optimizer):
        """The network holds the final parameters after training."""
        optimizer.set_maximum_epochs_number(3)
        results = optimizer.perform_training()
        np.testing.assert_array_equal(
            optimizer.loss_index.network.get_parameters(), results.final_parameters
        )
        assert results.final_parameters_norm == pytest.approx(
            l2_norm(results.final_parameters)
        )

    def test_early_stopping(self, optimizer, regression_data_set):
        """With zero allowed increases training stops at the first epoch."""
        regression_data_set.set_split(range(6), [6, 7])
        optimizer.set_maximum_selection_error_increases(0)
        results = optimizer.perform_training()
        assert (
            results.stopping_condition
            == StoppingCondition.MAXIMUM_SELECTION_ERROR_INCREASES
        )

    def test_early_stopping_disabled(self, optimizer, regression_data_set):
        """Disabling early stopping ignores selection increases."""
        regression_data_set.set_split(range(6), [6, 7])
        optimizer.set_maximum_selection_error_increases(0)
        optimizer.set_apply_early_stopping(False)
        optimizer.set_maximum_epochs_number(3)
        results = optimizer.perform_training()
        assert results.stopping_condition == StoppingCondition.MAXIMUM_EPOCHS_NUMBER

    def test_choose_best_selection(self, optimizer, regression_data_set):
        """The parameters with the lowest selection error are restored."""
        regression_data_set.set_split(range(6), [6, 7])
        optimizer.set_choose_best_selection(True)
        optimizer.set_reserve_selection_error_history(True)
        optimizer.set_maximum_epochs_number(10)

        results = optimizer.perform_training()

        assert results.optimal_parameters is not None
        np.testing.assert_array_equal(
            optimizer.loss_index.network.get_parameters(), results.optimal_parameters
        )
        assert results.final_selection_error == results.optimum_selection_error
        assert results.optimum_selection_error == pytest.approx(
            results.selection_error_history.min()
        )

    def test_parameters_norm_error_threshold(self, optimizer):
        """Parameters beyond the error threshold abort training."""
        optimizer.set_error_parameters_norm(1e-12)
        with pytest.raises(NumericalDivergenceError, match="parameters norm"):
            optimizer.perform_training()

    def test_gradient_norm_error_threshold(self, optimizer):
        """A gradient beyond the error threshold aborts training."""
        optimizer.set_error_gradient_norm(1e-12)
        with pytest.raises(NumericalDivergenceError, match="gradient norm"):
            optimizer.perform_training()

    def test_warning_threshold_logs(self, optimizer, caplog):
        """Warning thresholds log and continue."""
        optimizer.set_warning_parameters_norm(0.0)
        optimizer.set_maximum_epochs_number(1)
        with caplog.at_level(logging.WARNING, logger="nnopt.optimization.base"):
            results = optimizer.perform_training()
        assert "parameters norm is" in caplog.text
        assert results.stopping_condition == StoppingCondition.MAXIMUM_EPOCHS_NUMBER

    def test_display_logs_progress(self, optimizer, caplog):
        """Progress lines are logged every display period."""
        optimizer.set_display(True)
        optimizer.set_display_period(2)
        optimizer.set_maximum_epochs_number(3)
        with caplog.at_level(logging.INFO, logger="nnopt.optimization.base"):
            optimizer.perform_training()
        assert "Training with ConjugateGradient" in caplog.text
        assert "Epoch 0/3: Training error" in caplog.text
        assert "Epoch 2/3: Training error" in caplog.text
        assert "Epoch 1/3: Training error" not in caplog.text
        assert "Maximum number of epochs reached" in caplog.text

    def test_periodic_checkpoint(self, optimizer, tmp_path, rngs):
        """The network is saved every save_period epochs."""
        path = tmp_path / "network.pkl"
        optimizer.set_save_period(2)
        optimizer.set_neural_network_file_name(path)
        optimizer.set_maximum_epochs_number(4)

        optimizer.perform_training()

        assert path.exists()
        restored = NNXNetwork(LinearModel(2, 1, rngs=rngs))
        restored.load_parameters(path)
        assert restored.get_parameters_count() == 3


class TestConjugateGradientAdvance:
    """Test a single epoch of the update."""

    def test_advance_moves_along_descent_direction(self, optimizer, regression_loss):
        """One epoch decreases the loss and stores the direction history."""
        network = regression_loss.network
        data_set = regression_loss.data_set
        batch = data_set.fill(data_set.get_training_indices())
        data = optimizer.init_optimization_data(network.get_parameters())
        assert isinstance(data, ConjugateGradientData)

        back_propagation = regression_loss.back_propagate(
            batch, network.forward_propagate(batch, data.parameters)
        )
        optimizer.advance(data, batch, back_propagation)

        assert data.learning_rate > 0
        assert data.parameters_increment_norm > 0
        assert l2_norm(data.old_training_direction) == pytest.approx(1.0)
        assert dot(back_propagation.gradient, data.old_training_direction) < 0
        new_loss = regression_loss.calculate_loss(
            batch, network.forward_propagate(batch, data.parameters)
        )
        assert new_loss < back_propagation.loss


class TestLineSearchRetry:
    """Test the steepest-descent retry after a zero step."""

    def test_retry_along_negative_gradient(self, optimizer, monkeypatch):
        """A failed search is retried along -g from the first learning rate."""
        optimizer.set_training_direction_method("FR")
        optimizer.set_first_learning_rate(0.05)
        data, batch, back_propagation = _second_epoch(optimizer)
        previous_learning_rate = data.learning_rate
        calls = _fail_line_searches(monkeypatch, optimizer.line_search, 1)

        optimizer.advance(data, batch, back_propagation)

        assert len(calls) == 2
        assert calls[0][1] == previous_learning_rate
        steepest_descent = normalized(-back_propagation.gradient)
        np.testing.assert_allclose(calls[1][0], steepest_descent)
        assert calls[1][1] == 0.05
        np.testing.assert_allclose(data.old_training_direction, steepest_descent)
        assert data.learning_rate > 0
        assert data.parameters_increment_norm > 0

    def test_second_failure_keeps_parameters(self, optimizer, monkeypatch):
        """When the retry also fails the parameters do not move."""
        data, batch, back_propagation = _second_epoch(optimizer)
        before = data.parameters
        calls = _fail_line_searches(monkeypatch, optimizer.line_search, 2)

        optimizer.advance(data, batch, back_propagation)

        assert len(calls) == 2
        np.testing.assert_array_equal(data.parameters, before)
        assert data.parameters_increment_norm == 0
        assert data.learning_rate == 0

    def test_failed_searches_stop_on_increment_norm(self, optimizer, monkeypatch):
        """Epochs without a step end training on the increment criterion."""
        _fail_line_searches(monkeypatch, optimizer.line_search, 1_000)
        initial = optimizer.loss_index.network.get_parameters()
        optimizer.set_maximum_epochs_number(3)

        results = optimizer.perform_training()

        assert (
            results.stopping_condition
            == StoppingCondition.MINIMUM_PARAMETERS_INCREMENT_NORM
        )
        np.testing.assert_array_equal(results.final_parameters, initial)


class TestTrainingRobustness:
    """Test checkpoints, direction resets and divergence detection."""

    def test_checkpoint_failure_does_not_stop_training(self, tmp_path, caplog):
        """A network that cannot be saved is logged and training goes on."""
        network = _UnpicklableNetwork(LinearModel(2, 1, rngs=nnx.Rngs(0)))
        inputs = np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])
        data_set = InMemoryDataSet(inputs, inputs[:, :1] - inputs[:, 1:])
        optimizer = ConjugateGradient(SumSquaredError(network, data_set))
        optimizer.set_display(False)
        optimizer.set_save_period(1)
        optimizer.set_neural_network_file_name(tmp_path / "network.pkl")
        optimizer.set_maximum_epochs_number(5)

        with caplog.at_level(logging.ERROR, logger="nnopt.optimization.checkpoint"):
            results = optimizer.perform_training()

        assert results.stopping_condition is not None
        assert "failed to save checkpoint" in caplog.text
        assert list(tmp_path.iterdir()) == []

    def test_stopping_epoch_is_checkpointed(self, optimizer, tmp_path, rngs):
        """The epoch that stops training is saved when it is a save epoch."""
        path = tmp_path / "network.pkl"
        optimizer.set_save_period(3)
        optimizer.set_neural_network_file_name(path)
        optimizer.set_maximum_epochs_number(3)

        results = optimizer.perform_training()

        assert results.epochs_number == 3
        restored = NNXNetwork(LinearModel(2, 1, rngs=rngs))
        restored.load_parameters(path)
        np.testing.assert_array_equal(
            restored.get_parameters(), results.final_parameters
        )

    def test_direction_resets_reported(self, optimizer, monkeypatch):
        """Every epoch whose direction was reset is counted in the results."""
        direction = optimizer.direction

        def always_reset(epoch, gradient, old_gradient, old_direction):
            return normalized(-gradient), True

        monkeypatch.setattr(direction, "calculate_training_direction", always_reset)
        optimizer.set_maximum_epochs_number(4)

        results = optimizer.perform_training()

        resets = results.epochs_number + 1
        assert results.training_direction_resets == resets
        assert results.to_dict()["training_direction_resets"] == resets

    def test_nan_gradient_is_divergence(self, linear_network):
        """A NaN gradient norm aborts training like an oversized one."""
        inputs = np.array([[0.0, 1.0], [1.0, 0.0]])
        data_set = InMemoryDataSet(inputs, np.array([1.0, np.nan]))
        optimizer = ConjugateGradient(SumSquaredError(linear_network, data_set))
        optimizer.set_display(False)

        with pytest.raises(NumericalDivergenceError, match="gradient norm"):
            optimizer.perform_training()

    def test_nan_parameters_norm_is_divergence(self, optimizer):
        """A NaN parameters norm aborts training."""
        with pytest.raises(NumericalDivergenceError, match="parameters norm"):
            optimizer._check_parameters_norm(float("nan"), 3)

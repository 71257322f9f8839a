"""Framework-level import tests.

This module contains tests for basic package imports and framework setup.
"""

import jax


def test_import_nnopt():
    """Test that the main nnopt package can be imported."""
    import nnopt

    assert nnopt.__version__ == "0.1.0"


def test_import_optimizers():
    """Test that the optimizers are exported from the optimization package."""
    from nnopt.optimization import (
        ConjugateGradient,
        QuasiNewtonMethod,
        StochasticGradientDescent,
    )

    assert ConjugateGradient.xml_tag == "ConjugateGradient"
    assert QuasiNewtonMethod.xml_tag == "QuasiNewtonMethod"
    assert StochasticGradientDescent.xml_tag == "StochasticGradientDescent"


def test_import_neural_networks():
    """Test that neural network modules can be imported."""
    import nnopt.neural

    assert hasattr(nnopt.neural, "NNXNetwork")
    assert hasattr(nnopt.neural, "MeanSquaredError")


def test_x64_enabled_for_tests():
    """The test configuration enables double precision."""
    assert jax.config.jax_enable_x64

"""
nnopt: Gradient-based Optimizers for Neural Network Training

A JAX-native training engine providing conjugate gradient, quasi-Newton and
stochastic gradient descent optimizers with a shared line search and
stopping-criteria loop.
"""

import logging
import os
from pathlib import Path

import jax


__version__ = "0.1.0"


def configure_jax(enable_x64: bool = False, cache_dir: str | None = None) -> None:
    """Configure JAX for training.

    Line searches and quasi-Newton updates compare losses that differ in the
    last digits, so 64-bit floats are worth enabling when the network is
    small.

    Args:
        enable_x64: Whether JAX computes in 64-bit floats
        cache_dir: Directory of the persistent compilation cache. Defaults to
            ``NNOPT_XLA_CACHE_DIR``; no cache is configured if neither is set.
    """
    jax.config.update("jax_enable_x64", enable_x64)

    cache_dir = cache_dir or os.environ.get("NNOPT_XLA_CACHE_DIR")
    if cache_dir:
        Path(cache_dir).mkdir(parents=True, exist_ok=True)
        jax.config.update("jax_compilation_cache_dir", cache_dir)
        jax.config.update("jax_persistent_cache_min_compile_time_secs", 1.0)

    logger = logging.getLogger(__name__)
    logger.info(
        f"JAX configured: backend {jax.default_backend()}, x64 {enable_x64}, "
        f"cache {cache_dir or 'disabled'}"
    )

"""Numeric kernels shared by every optimizer.

The kernels are thin JAX reductions. They take an explicit
``ExecutionContext`` naming the device the computation runs on, instead of
reading an ambient device handle, so that one optimizer instance can be pinned
to a device without affecting any other.

Key Functions:
    - l2_norm: Euclidean norm of a flat vector
    - normalized: Unit vector in the direction of a flat vector
    - dot: Scalar product of two flat vectors
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import jax
import jax.numpy as jnp


if TYPE_CHECKING:
    from jaxtyping import Array, ArrayLike, Float


@dataclass(frozen=True)
class ExecutionContext:
    """Device on which kernels and optimizer state live.

    Attributes:
        device: JAX device to place arrays on. ``None`` keeps JAX's default
            placement.
    """

    device: jax.Device | None = None

    @classmethod
    def cpu(cls) -> ExecutionContext:
        """Context pinned to the first CPU device."""
        return cls(device=jax.devices("cpu")[0])

    def put(self, array: ArrayLike) -> Array:
        """Place ``array`` on this context's device."""
        if self.device is None:
            return jnp.asarray(array)
        return jax.device_put(jnp.asarray(array), self.device)


DEFAULT_CONTEXT = ExecutionContext()


@jax.jit
def _l2_norm(vector: Float[Array, " n"]) -> Float[Array, ""]:
    return jnp.sqrt(jnp.sum(jnp.square(vector)))


@jax.jit
def _normalized(vector: Float[Array, " n"]) -> Float[Array, " n"]:
    norm = _l2_norm(vector)
    # The zero vector has no direction; it is returned as is.
    safe_norm = jnp.where(norm > 0, norm, 1.0)
    return jnp.where(norm > 0, vector / safe_norm, vector)


def l2_norm(
    vector: ArrayLike, context: ExecutionContext | None = None
) -> float:
    """Compute the L2 norm of a flat vector.

    Args:
        vector: One-dimensional array
        context: Execution context; the default device is used if None

    Returns:
        ``sqrt(sum(vector ** 2))`` as a host float
    """
    context = context or DEFAULT_CONTEXT
    return float(_l2_norm(context.put(vector)))


def normalized(
    vector: ArrayLike, context: ExecutionContext | None = None
) -> Float[Array, " n"]:
    """Return ``vector`` divided by its L2 norm.

    A vector whose norm is exactly zero is returned unchanged, so callers
    always get a finite result.

    Args:
        vector: One-dimensional array
        context: Execution context; the default device is used if None

    Returns:
        Unit vector with the same direction, or the zero vector
    """
    context = context or DEFAULT_CONTEXT
    return _normalized(context.put(vector))


def dot(
    a: ArrayLike, b: ArrayLike, context: ExecutionContext | None = None
) -> float:
    """Scalar product of two flat vectors as a host float."""
    context = context or DEFAULT_CONTEXT
    return float(jnp.vdot(context.put(a), context.put(b)))

"""Namespace-agnostic helpers for writing blueprint mappings."""

from __future__ import annotations

import numpy as np

_EPSILON = float(np.finfo(np.float64).eps)


def compose(x, p, xnp=np):
    """Concatenate variables and parameters into a single input vector."""
    return xnp.concatenate([xnp.ravel(xnp.asarray(x)), xnp.ravel(xnp.asarray(p))])


def decompose(xp, variable_size: int):
    """Split an input vector into ``(variables, parameters)``."""
    return xp[:variable_size], xp[variable_size:]


def exponential_map(omega) -> np.ndarray:
    """Rotation vector to unit quaternion, coefficients ordered ``(x, y, z, w)``."""
    omega = np.asarray(omega, dtype=np.float64)
    angle = float(np.linalg.norm(omega))
    if angle == 0.0:
        return np.array([0.0, 0.0, 0.0, 1.0])
    half = 0.5 * angle
    return np.concatenate([np.sin(half) / angle * omega, [np.cos(half)]])


def approximate_exponential_map(omega, xnp=np):
    """Branch-free exponential map usable under tracing.

    The rotation angle is regularised to ``sqrt(|omega|^2 + eps^2)`` so that the value and its
    derivatives stay finite at the zero rotation; away from zero the result agrees with
    :func:`exponential_map` to rounding.
    """
    angle = xnp.sqrt(xnp.sum(omega * omega) + _EPSILON * _EPSILON)
    half = 0.5 * angle
    return xnp.concatenate([xnp.sin(half) / angle * omega, xnp.reshape(xnp.cos(half), (1,))])

"""Finite-difference references used to certify compiled derivatives.

Step sizes and tolerances live in :class:`VerificationTolerances`. The defaults can be
overridden through ``DIFFGEN_JAX_FD_STEP`` and ``DIFFGEN_JAX_FD_HESSIAN_STEP`` or per function
with :meth:`diffgen_jax.Function.with_tolerances`.

Central differences are used throughout. For the Hessian the mixed partials are

    (f(x + h e_i + h e_j) - f(x + h e_i - h e_j) - f(x - h e_i + h e_j) + f(x - h e_i - h e_j)) / 4h^2

and the diagonal is ``(f(x + 2h e_i) - 2 f(x) + f(x - 2h e_i)) / 4h^2``. Second differences
amplify rounding error by ``1/h^2``, hence the wider Hessian tolerances.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import os

import numpy as np

_DEFAULT_STEP = float(os.environ.get("DIFFGEN_JAX_FD_STEP", "1e-6"))
_DEFAULT_HESSIAN_STEP = float(os.environ.get("DIFFGEN_JAX_FD_HESSIAN_STEP", "1e-4"))


@dataclass(frozen=True)
class VerificationTolerances:
    """Step sizes and component-wise tolerances for the ``test_*`` checks."""

    function_rtol: float = 1e-8
    function_atol: float = 1e-10
    jacobian_step: float = _DEFAULT_STEP
    jacobian_rtol: float = 1e-5
    jacobian_atol: float = 1e-6
    hessian_step: float = _DEFAULT_HESSIAN_STEP
    hessian_rtol: float = 1e-3
    hessian_atol: float = 1e-4

    def __post_init__(self) -> None:
        for name in ("jacobian_step", "hessian_step"):
            if not getattr(self, name) > 0.0:
                raise ValueError(f"{name} must be positive")


DEFAULT_TOLERANCES = VerificationTolerances()


def approximately_equal(actual, expected, *, rtol: float, atol: float) -> bool:
    """Component-wise ``|a - b| <= atol + rtol * |b|``; shapes must agree and NaNs never match."""
    a = np.asarray(actual, dtype=np.float64)
    b = np.asarray(expected, dtype=np.float64)
    if a.shape != b.shape:
        return False
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        return False
    return bool(np.allclose(a, b, rtol=rtol, atol=atol))


def _shifted(xp: np.ndarray, *steps: tuple[int, float]) -> np.ndarray:
    shifted = xp.copy()
    for index, delta in steps:
        shifted[index] += delta
    return shifted


def finite_difference_jacobian(fn: Callable[[np.ndarray], np.ndarray], xp, variable_size: int, step: float) -> np.ndarray:
    """Central-difference Jacobian of ``fn`` over the first ``variable_size`` components."""
    xp = np.asarray(xp, dtype=np.float64)
    output_size = np.asarray(fn(xp)).shape[0]
    jacobian = np.empty((output_size, variable_size))
    for i in range(variable_size):
        forward = np.asarray(fn(_shifted(xp, (i, step))))
        backward = np.asarray(fn(_shifted(xp, (i, -step))))
        jacobian[:, i] = (forward - backward) / (2.0 * step)
    return jacobian


def finite_difference_hessian(fn: Callable[[np.ndarray], np.ndarray], xp, variable_size: int, step: float) -> np.ndarray:
    """Central-difference Hessian per output; a single output yields the bare matrix."""
    xp = np.asarray(xp, dtype=np.float64)
    center = np.asarray(fn(xp))
    output_size = center.shape[0]
    hessian = np.empty((output_size, variable_size, variable_size))
    denominator = 4.0 * step * step
    for i in range(variable_size):
        plus = np.asarray(fn(_shifted(xp, (i, 2.0 * step))))
        minus = np.asarray(fn(_shifted(xp, (i, -2.0 * step))))
        hessian[:, i, i] = (plus - 2.0 * center + minus) / denominator
        for j in range(i + 1, variable_size):
            pp = np.asarray(fn(_shifted(xp, (i, step), (j, step))))
            pm = np.asarray(fn(_shifted(xp, (i, step), (j, -step))))
            mp = np.asarray(fn(_shifted(xp, (i, -step), (j, step))))
            mm = np.asarray(fn(_shifted(xp, (i, -step), (j, -step))))
            mixed = (pp - pm - mp + mm) / denominator
            hessian[:, i, j] = mixed
            hessian[:, j, i] = mixed
    if output_size == 1:
        return hessian[0]
    return hessian

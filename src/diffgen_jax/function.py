"""Compiled function handle: evaluation, derivatives and self-verification."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
import logging

import numpy as np

from .blueprint import EnabledDerivatives
from .cache import CompiledArtifact
from .errors import DimensionError, UnsupportedOperationError
from .tracing import HESSIAN, JACOBIAN, VALUE
from .verification import (
    DEFAULT_TOLERANCES,
    VerificationTolerances,
    approximately_equal,
    finite_difference_hessian,
    finite_difference_jacobian,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Function:
    """Read-only handle over a compiled artifact.

    Built by :class:`diffgen_jax.FunctionFactory`. Every method is pure with respect to the
    artifact, so one instance can be shared between threads without locking.

    Inputs are 1-D vectors of length ``variable_size + parameter_size`` holding the variables
    followed by the parameters. Derivatives are taken with respect to the variables only.
    """

    artifact: CompiledArtifact
    variable_size: int
    parameter_size: int
    enabled_derivatives: EnabledDerivatives
    tolerances: VerificationTolerances = DEFAULT_TOLERANCES

    @property
    def name(self) -> str:
        return self.artifact.name

    @property
    def input_size(self) -> int:
        return self.variable_size + self.parameter_size

    @property
    def output_size(self) -> int:
        return self.artifact.output_size

    def _prepare(self, xp, *, where: str) -> np.ndarray:
        try:
            values = np.asarray(xp, dtype=np.float64)
        except (TypeError, ValueError) as err:
            raise DimensionError(f"{self.name}.{where}: input is not a numeric vector: {err}") from err
        if values.ndim != 1 or values.shape[0] != self.input_size:
            raise DimensionError(
                f"{self.name}.{where}: expected input shape ({self.input_size},), got {values.shape}"
            )
        return values

    def _require(self, flag: EnabledDerivatives, where: str) -> None:
        if flag not in self.enabled_derivatives:
            raise UnsupportedOperationError(
                f"{self.name}.{where}: {flag.name} was not enabled on the blueprint "
                f"(enabled: {self.enabled_derivatives.to_names() or 'none'})"
            )

    def _run(self, entry: str, values: np.ndarray) -> np.ndarray:
        return np.array(self.artifact.entry_points[entry](values), dtype=np.float64)

    def _value(self, values: np.ndarray) -> np.ndarray:
        return self._run(VALUE, values)

    def evaluate(self, xp) -> np.ndarray:
        """Output vector of length ``output_size``."""
        return self._value(self._prepare(xp, where="evaluate"))

    __call__ = evaluate

    def jacobian(self, xp) -> np.ndarray:
        """Matrix of shape ``(output_size, variable_size)``."""
        self._require(EnabledDerivatives.JACOBIAN, "jacobian")
        return self._run(JACOBIAN, self._prepare(xp, where="jacobian"))

    def hessian(self, xp) -> np.ndarray:
        """Second derivatives with respect to the variables.

        ``(variable_size, variable_size)`` for a single output, otherwise one matrix per output
        stacked as ``(output_size, variable_size, variable_size)``.
        """
        self._require(EnabledDerivatives.HESSIAN, "hessian")
        return self._run(HESSIAN, self._prepare(xp, where="hessian"))

    def test_function(self, xp, reference: Callable[[np.ndarray], object]) -> bool:
        """Compare ``evaluate(xp)`` with ``reference(xp)``; disagreement returns ``False``."""
        values = self._prepare(xp, where="test_function")
        compiled = self._value(values)
        try:
            expected = np.asarray(reference(values.copy()), dtype=np.float64)
        except ArithmeticError as err:
            logger.debug("%s.test_function: reference raised %s", self.name, err)
            return False
        return self._report(
            "test_function",
            compiled,
            expected,
            rtol=self.tolerances.function_rtol,
            atol=self.tolerances.function_atol,
        )

    def test_jacobian(self, xp) -> bool:
        """Compare the compiled Jacobian with central finite differences."""
        self._require(EnabledDerivatives.JACOBIAN, "test_jacobian")
        values = self._prepare(xp, where="test_jacobian")
        compiled = self._run(JACOBIAN, values)
        numeric = finite_difference_jacobian(self._value, values, self.variable_size, self.tolerances.jacobian_step)
        return self._report(
            "test_jacobian",
            compiled,
            numeric,
            rtol=self.tolerances.jacobian_rtol,
            atol=self.tolerances.jacobian_atol,
        )

    def test_hessian(self, xp) -> bool:
        """Compare the compiled Hessian with second-order central differences."""
        self._require(EnabledDerivatives.HESSIAN, "test_hessian")
        values = self._prepare(xp, where="test_hessian")
        compiled = self._run(HESSIAN, values)
        numeric = finite_difference_hessian(self._value, values, self.variable_size, self.tolerances.hessian_step)
        return self._report(
            "test_hessian",
            compiled,
            numeric,
            rtol=self.tolerances.hessian_rtol,
            atol=self.tolerances.hessian_atol,
        )

    def _report(self, where: str, actual: np.ndarray, expected: np.ndarray, *, rtol: float, atol: float) -> bool:
        ok = approximately_equal(actual, expected, rtol=rtol, atol=atol)
        if not ok:
            if actual.shape == expected.shape:
                detail = f"max abs error {float(np.max(np.abs(actual - expected), initial=0.0)):.3e}"
            else:
                detail = f"shape {actual.shape} vs {expected.shape}"
            logger.debug("%s.%s mismatch: %s (rtol=%g, atol=%g)", self.name, where, detail, rtol, atol)
        return ok

    def generated_source(self, entry: str = VALUE) -> str:
        """StableHLO text of one entry point (``value``, ``jacobian`` or ``hessian``)."""
        if entry not in self.artifact.exported:
            raise UnsupportedOperationError(f"{self.name}: no compiled entry point {entry!r}")
        return self.artifact.source(entry)

    def with_tolerances(self, **overrides: float) -> "Function":
        """Copy sharing the same artifact with adjusted verification settings."""
        return replace(self, tolerances=replace(self.tolerances, **overrides))

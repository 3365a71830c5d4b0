"""Blueprint -> Function compilation pipeline with artifact caching."""

from __future__ import annotations

import logging
import time

from .blueprint import Blueprint
from .cache import ArtifactCache, CompiledArtifact
from .codegen import generate_unit
from .errors import BlueprintError
from .function import Function
from .tracing import trace_blueprint
from .verification import DEFAULT_TOLERANCES, VerificationTolerances

logger = logging.getLogger(__name__)


class FunctionFactory:
    """Compile blueprints into :class:`Function` handles.

    ``make`` first consults the artifact cache; a hit skips tracing and lowering entirely.
    A cached artifact whose signature disagrees with the blueprint raises
    :class:`~diffgen_jax.errors.CacheMismatchError` instead of being reused.
    """

    def __init__(self, cache: ArtifactCache | None = None) -> None:
        self.cache = cache if cache is not None else ArtifactCache()

    def __repr__(self) -> str:
        return f"FunctionFactory(cache={self.cache!r})"

    def make(
        self,
        blueprint: Blueprint,
        verbose: bool = False,
        *,
        recompile: bool = False,
        tolerances: VerificationTolerances | None = None,
    ) -> Function:
        if not isinstance(blueprint, Blueprint):
            raise BlueprintError(f"Expected a Blueprint, got {type(blueprint).__name__}")
        level = logging.INFO if verbose else logging.DEBUG

        with self.cache.lock(blueprint.name):
            artifact = None if recompile else self.cache.lookup(blueprint)
            if artifact is not None:
                logger.log(level, "Reusing cached artifact %r", blueprint.name)
            else:
                artifact = self._compile(blueprint, level=level, replace=recompile)

        return Function(
            artifact=artifact,
            variable_size=blueprint.variable_size,
            parameter_size=blueprint.parameter_size,
            enabled_derivatives=blueprint.enabled_derivatives,
            tolerances=tolerances if tolerances is not None else DEFAULT_TOLERANCES,
        )

    def _compile(self, blueprint: Blueprint, *, level: int, replace: bool) -> CompiledArtifact:
        logger.log(
            level,
            "Compiling %r (variables=%d, parameters=%d, derivatives=%s)",
            blueprint.name,
            blueprint.variable_size,
            blueprint.parameter_size,
            blueprint.enabled_derivatives.to_names() or "none",
        )
        start_ns = time.perf_counter_ns()
        traced = trace_blueprint(blueprint)
        if logger.isEnabledFor(level):
            logger.log(level, "Value graph of %r:\n%s", blueprint.name, traced.graph)
        unit = generate_unit(traced)
        artifact = self.cache.publish(unit, replace=replace)
        logger.log(
            level,
            "Compiled %r in %.1f ms (%s)",
            blueprint.name,
            (time.perf_counter_ns() - start_ns) / 1e6,
            artifact.path if artifact.path is not None else "in-memory",
        )
        return artifact


_DEFAULT_FACTORY: FunctionFactory | None = None


def make_function(
    blueprint: Blueprint,
    verbose: bool = False,
    *,
    recompile: bool = False,
    tolerances: VerificationTolerances | None = None,
) -> Function:
    """``FunctionFactory().make`` against the default cache directory."""
    global _DEFAULT_FACTORY
    if _DEFAULT_FACTORY is None:
        _DEFAULT_FACTORY = FunctionFactory()
    return _DEFAULT_FACTORY.make(blueprint, verbose, recompile=recompile, tolerances=tolerances)

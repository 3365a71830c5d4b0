"""Trace blueprints into JAX graphs and derive their derivative routines."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging

import jax
import jax.numpy as jnp
import numpy as np

from .blueprint import Blueprint, EnabledDerivatives
from .errors import CompilationError, DiffgenError, wrap_backend_exception
from .utils import decompose

logger = logging.getLogger(__name__)

VALUE = "value"
JACOBIAN = "jacobian"
HESSIAN = "hessian"
ENTRY_POINTS = (VALUE, JACOBIAN, HESSIAN)

_SAMPLE_VALUE = 0.5


@dataclass(frozen=True)
class TracedBlueprint:
    """Value graph of a blueprint plus the routines to be compiled from it."""

    blueprint: Blueprint
    output_size: int
    graph: object
    routines: Mapping[str, Callable]

    @property
    def entry_points(self) -> tuple[str, ...]:
        return tuple(name for name in ENTRY_POINTS if name in self.routines)


def entry_points_for(enabled: EnabledDerivatives) -> tuple[str, ...]:
    names = [VALUE]
    if EnabledDerivatives.JACOBIAN in enabled:
        names.append(JACOBIAN)
    if EnabledDerivatives.HESSIAN in enabled:
        names.append(HESSIAN)
    return tuple(names)


def input_dtype() -> np.dtype:
    """Input element type routines are lowered for; float32 when x64 is disabled."""
    return np.dtype(jax.dtypes.canonicalize_dtype(jnp.float64))


def input_spec(blueprint: Blueprint) -> jax.ShapeDtypeStruct:
    return jax.ShapeDtypeStruct((blueprint.total_size,), input_dtype())


def _value_routine(blueprint: Blueprint) -> Callable:
    mapping = blueprint.mapping

    def value(xp):
        return jnp.atleast_1d(jnp.asarray(mapping(xp, jnp), dtype=jnp.float64))

    return value


def _jacobian_routine(value: Callable, variable_size: int) -> Callable:
    def jacobian(xp):
        x, p = decompose(xp, variable_size)

        def of_variables(v):
            return value(jnp.concatenate([v, p]))

        return jax.jacfwd(of_variables)(x)

    return jacobian


def _hessian_routine(value: Callable, variable_size: int, output_size: int) -> Callable:
    def hessian(xp):
        x, p = decompose(xp, variable_size)

        def of_variables(v):
            return value(jnp.concatenate([v, p]))

        stacked = jax.hessian(of_variables)(x)
        # One matrix per output; a scalar-valued mapping yields the bare matrix.
        if output_size == 1:
            return stacked[0]
        return stacked

    return hessian


def _output_size(blueprint: Blueprint, value: Callable) -> int:
    traced_shape = jax.eval_shape(value, input_spec(blueprint)).shape
    if len(traced_shape) != 1:
        raise CompilationError(
            f"Blueprint {blueprint.name!r} must produce a 1-D output under tracing, got shape {traced_shape}"
        )

    sample = np.full(blueprint.total_size, _SAMPLE_VALUE)
    with np.errstate(all="ignore"):
        plain = blueprint.evaluate(sample)
    if plain.ndim != 1 or plain.shape[0] != traced_shape[0]:
        raise CompilationError(
            f"Blueprint {blueprint.name!r} output is inconsistent across representations: "
            f"traced shape {traced_shape}, plain shape {plain.shape}"
        )
    return int(traced_shape[0])


def trace_blueprint(blueprint: Blueprint) -> TracedBlueprint:
    """Record the value graph and build the routines requested by the blueprint."""
    value = _value_routine(blueprint)
    try:
        output_size = _output_size(blueprint, value)
        graph = jax.make_jaxpr(value)(np.zeros(blueprint.total_size))
    except DiffgenError:
        raise
    except Exception as err:
        raise wrap_backend_exception(err, stage="tracing", name=blueprint.name) from err

    routines: dict[str, Callable] = {VALUE: value}
    enabled = blueprint.enabled_derivatives
    if EnabledDerivatives.JACOBIAN in enabled:
        routines[JACOBIAN] = _jacobian_routine(value, blueprint.variable_size)
    if EnabledDerivatives.HESSIAN in enabled:
        routines[HESSIAN] = _hessian_routine(value, blueprint.variable_size, output_size)

    logger.debug(
        "Traced %r: %d inputs -> %d outputs, %d graph equations, entry points %s",
        blueprint.name,
        blueprint.total_size,
        output_size,
        len(graph.jaxpr.eqns),
        tuple(routines),
    )
    return TracedBlueprint(blueprint=blueprint, output_size=output_size, graph=graph, routines=routines)

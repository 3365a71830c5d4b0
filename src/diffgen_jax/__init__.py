"""diffgen-jax public API."""

import os

import jax

# Finite-difference verification and the cached float64 modules need double precision.
if os.environ.get("DIFFGEN_JAX_ENABLE_X64", "1") != "0":
    jax.config.update("jax_enable_x64", True)

from .blueprint import Blueprint, EnabledDerivatives
from .cache import ArtifactCache, CompiledArtifact, compile_cache_stats
from .errors import (
    BlueprintError,
    CacheMismatchError,
    CompilationError,
    DiffgenError,
    DimensionError,
    UnsupportedOperationError,
)
from .factory import FunctionFactory, make_function
from .function import Function
from .tracing import TracedBlueprint, trace_blueprint
from .utils import approximate_exponential_map, compose, decompose, exponential_map
from .verification import (
    DEFAULT_TOLERANCES,
    VerificationTolerances,
    finite_difference_hessian,
    finite_difference_jacobian,
)

__all__ = [
    "Blueprint",
    "EnabledDerivatives",
    "FunctionFactory",
    "make_function",
    "Function",
    "ArtifactCache",
    "CompiledArtifact",
    "compile_cache_stats",
    "trace_blueprint",
    "TracedBlueprint",
    "VerificationTolerances",
    "DEFAULT_TOLERANCES",
    "finite_difference_jacobian",
    "finite_difference_hessian",
    "compose",
    "decompose",
    "exponential_map",
    "approximate_exponential_map",
    "DiffgenError",
    "BlueprintError",
    "DimensionError",
    "UnsupportedOperationError",
    "CompilationError",
    "CacheMismatchError",
]

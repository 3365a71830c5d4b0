"""Structured error types for the blueprint -> function pipeline."""

from __future__ import annotations

from dataclasses import dataclass


class DiffgenError(Exception):
    """Base class for structured diffgen-jax errors."""


class BlueprintError(DiffgenError, ValueError):
    """Blueprint constructed with invalid sizes, name or mapping."""


class DimensionError(DiffgenError):
    """Input or output length does not match the declared signature."""


class UnsupportedOperationError(DiffgenError):
    """Derivative requested that was not enabled on the blueprint."""


class CompilationError(DiffgenError):
    """Tracing, code generation or artifact loading failed."""


@dataclass(eq=False)
class CacheMismatchError(DiffgenError):
    """Cached artifact exists under the blueprint name but with a different signature."""

    name: str
    expected: tuple[object, ...]
    found: tuple[object, ...]

    def __post_init__(self) -> None:
        super().__init__(self.name, self.expected, self.found)

    def __str__(self) -> str:
        return (
            f"Cached artifact {self.name!r} was built for signature {self.found}, "
            f"requested {self.expected}; evict it or recompile"
        )


def wrap_backend_exception(err: Exception, *, stage: str, name: str) -> DiffgenError:
    """Map a non-structured exception from JAX or a mapping body onto the taxonomy."""
    if isinstance(err, DiffgenError):
        return err
    return CompilationError(f"{stage} failed for {name!r}: {type(err).__name__}: {err}")

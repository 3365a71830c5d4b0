"""Function blueprints: a generic mapping plus its declared signature."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import enum
import re

import numpy as np

from .errors import BlueprintError, DimensionError

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")


class EnabledDerivatives(enum.Flag):
    """Derivatives compiled alongside the value routine."""

    NONE = 0
    JACOBIAN = 1
    HESSIAN = 2
    ALL = 3

    def to_names(self) -> list[str]:
        return sorted(member.name for member in (EnabledDerivatives.JACOBIAN, EnabledDerivatives.HESSIAN) if member in self)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "EnabledDerivatives":
        flags = cls.NONE
        for name in names:
            try:
                flags |= cls[name]
            except KeyError as err:
                raise BlueprintError(f"Unknown derivative {name!r}") from err
        return flags


MappingFn = Callable[..., object]


@dataclass(frozen=True)
class Blueprint:
    """Immutable descriptor of a mapping ``(variables, parameters) -> outputs``.

    ``mapping(xp, xnp)`` receives the concatenated input vector ``xp`` (variables first, then
    parameters) and an array namespace ``xnp``: ``numpy`` for plain evaluation or
    ``jax.numpy`` while tracing. The body must not branch on which one it got, must not keep
    hidden state, and must return a 1-D vector whose length does not depend on the namespace.

    ``name`` keys the on-disk artifact cache. Reusing a name for a different mapping with the
    same signature is the caller's responsibility and is not detected.
    """

    mapping: MappingFn
    variable_size: int
    parameter_size: int
    name: str
    enabled_derivatives: EnabledDerivatives = EnabledDerivatives.NONE

    def __post_init__(self) -> None:
        if not callable(self.mapping):
            raise BlueprintError(f"Blueprint {self.name!r}: mapping must be callable")
        for field_name in ("variable_size", "parameter_size"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
                raise BlueprintError(f"Blueprint {self.name!r}: {field_name} must be a non-negative integer, got {value!r}")
            object.__setattr__(self, field_name, int(value))
        if not isinstance(self.name, str) or not self.name:
            raise BlueprintError("Blueprint name must be a non-empty string")
        if not _NAME_PATTERN.match(self.name):
            raise BlueprintError(f"Blueprint name {self.name!r} must start with a letter, digit or '_' and contain only letters, digits, '_', '.' and '-'")
        if not isinstance(self.enabled_derivatives, EnabledDerivatives):
            raise BlueprintError(f"Blueprint {self.name!r}: enabled_derivatives must be an EnabledDerivatives flag")

    @property
    def total_size(self) -> int:
        return self.variable_size + self.parameter_size

    def signature(self) -> tuple[object, ...]:
        """Identity a cached artifact must match to be reused."""
        return (self.variable_size, self.parameter_size, tuple(self.enabled_derivatives.to_names()))

    def evaluate(self, xp) -> np.ndarray:
        """Evaluate the mapping on plain floats, without tracing."""
        values = np.asarray(xp, dtype=np.float64)
        if values.shape != (self.total_size,):
            raise DimensionError(f"Blueprint {self.name!r} expects input shape ({self.total_size},), got {values.shape}")
        return np.atleast_1d(np.asarray(self.mapping(values, np), dtype=np.float64))

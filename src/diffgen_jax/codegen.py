"""Lower traced routines to serializable StableHLO modules."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import time

import jax
from jax import export as jax_export

from .blueprint import Blueprint
from .errors import DiffgenError, wrap_backend_exception
from .tracing import TracedBlueprint, input_spec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedUnit:
    """Exported entry points for one blueprint, ready to be serialized."""

    blueprint: Blueprint
    output_size: int
    exported: Mapping[str, jax_export.Exported]

    @property
    def name(self) -> str:
        return self.blueprint.name

    def source(self, entry: str) -> str:
        return self.exported[entry].mlir_module()

    def serialized(self, entry: str) -> bytes:
        return bytes(self.exported[entry].serialize())


def generate_unit(traced: TracedBlueprint) -> GeneratedUnit:
    """Lower every routine of ``traced`` for a ``float64[total_size]`` input."""
    blueprint = traced.blueprint
    spec = input_spec(blueprint)
    exported: dict[str, jax_export.Exported] = {}
    for entry in traced.entry_points:
        start_ns = time.perf_counter_ns()
        try:
            jitted = jax.jit(traced.routines[entry])
            exported[entry] = jax_export.export(jitted)(spec)
        except DiffgenError:
            raise
        except Exception as err:
            raise wrap_backend_exception(err, stage=f"lowering {entry}", name=blueprint.name) from err
        logger.debug(
            "Lowered %s.%s in %.1f ms",
            blueprint.name,
            entry,
            (time.perf_counter_ns() - start_ns) / 1e6,
        )
    return GeneratedUnit(blueprint=blueprint, output_size=traced.output_size, exported=exported)

"""Benchmark slice: compile cost versus per-call cost of compiled functions."""

from __future__ import annotations

import argparse
import json
import tempfile
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

import numpy as np

from diffgen_jax import (
    ArtifactCache,
    Blueprint,
    EnabledDerivatives,
    FunctionFactory,
    approximate_exponential_map,
    compile_cache_stats,
    decompose,
)
from _bench_utils import host_metadata, mean as _mean, percentile as _percentile, sample_call_us, stddev as _stddev, timed_ms


PROFILE_PRESETS: dict[str, dict[str, int]] = {
    "quick": {"samples": 3, "warmup": 10, "repeats": 200},
    "full": {"samples": 7, "warmup": 50, "repeats": 2000},
}


@dataclass(frozen=True)
class CallStats:
    mean_us: float
    stdev_us: float
    p50_us: float
    p95_us: float


@dataclass(frozen=True)
class WorkloadRow:
    workload: str
    variable_size: int
    parameter_size: int
    derivatives: list[str]
    cold_make_ms: float
    warm_make_ms: float
    evaluate: CallStats
    jacobian: CallStats | None
    hessian: CallStats | None
    verified: bool


def _exponential_map(xp, xnp):
    return approximate_exponential_map(xp, xnp)


def _weighted_norm(xp, xnp):
    x, p = decompose(xp, 4)
    return xnp.stack([p[0] * xnp.sum(x * x), 2.0 * x[0] ** 2])


def _rosenbrock(xp, xnp):
    x, p = decompose(xp, 16)
    return xnp.stack([xnp.sum(p[0] * (x[1:] - x[:-1] ** 2) ** 2 + (1.0 - x[:-1]) ** 2)])


WORKLOADS: tuple[Blueprint, ...] = (
    Blueprint(_exponential_map, 3, 0, "bench_exponential_map", EnabledDerivatives.JACOBIAN),
    Blueprint(_weighted_norm, 4, 1, "bench_weighted_norm", EnabledDerivatives.ALL),
    Blueprint(_rosenbrock, 16, 1, "bench_rosenbrock16", EnabledDerivatives.ALL),
)


def _summarize(rows: list[float]) -> CallStats:
    return CallStats(
        mean_us=_mean(rows),
        stdev_us=_stddev(rows),
        p50_us=_percentile(rows, 0.50),
        p95_us=_percentile(rows, 0.95),
    )


def _run_workload(blueprint: Blueprint, cache_root: Path, *, preset: dict[str, int]) -> WorkloadRow:
    cache = ArtifactCache(cache_root)
    cache.evict(blueprint.name)
    cold, cold_ms = timed_ms(FunctionFactory(cache).make, blueprint)
    cache.forget(blueprint.name)
    function, warm_ms = timed_ms(FunctionFactory(cache).make, blueprint)

    xp = np.random.default_rng(0).uniform(-1.0, 1.0, blueprint.total_size)
    sample = dict(repeats=preset["repeats"], warmup=preset["warmup"], samples=preset["samples"])
    enabled = blueprint.enabled_derivatives
    verified = bool(np.array_equal(cold(xp), function(xp)))
    jacobian = hessian = None
    if EnabledDerivatives.JACOBIAN in enabled:
        jacobian = _summarize(sample_call_us(function.jacobian, (xp,), **sample))
        verified = verified and function.test_jacobian(xp)
    if EnabledDerivatives.HESSIAN in enabled:
        hessian = _summarize(sample_call_us(function.hessian, (xp,), **sample))
        verified = verified and function.test_hessian(xp)

    return WorkloadRow(
        workload=blueprint.name,
        variable_size=blueprint.variable_size,
        parameter_size=blueprint.parameter_size,
        derivatives=enabled.to_names(),
        cold_make_ms=cold_ms,
        warm_make_ms=warm_ms,
        evaluate=_summarize(sample_call_us(function.evaluate, (xp,), **sample)),
        jacobian=jacobian,
        hessian=hessian,
        verified=verified,
    )


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--profile", choices=sorted(PROFILE_PRESETS), default="quick")
    parser.add_argument("--cache-dir", default=None, help="artifact cache root (default: temporary directory)")
    parser.add_argument("--json-out", default="benchmarks/output/function_benchmarks.json")
    args = parser.parse_args()

    preset = PROFILE_PRESETS[args.profile]
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(args.cache_dir) if args.cache_dir else Path(tmp)
        rows = [_run_workload(blueprint, root, preset=preset) for blueprint in WORKLOADS]
        stats = compile_cache_stats()

    print("| Workload | Cold make ms | Warm make ms | Evaluate us | Jacobian us | Hessian us | Verified |")
    print("|---|---:|---:|---:|---:|---:|---|")
    for row in rows:
        jac = f"{row.jacobian.p50_us:.1f}" if row.jacobian else "-"
        hes = f"{row.hessian.p50_us:.1f}" if row.hessian else "-"
        print(
            f"| `{row.workload}` | {row.cold_make_ms:.1f} | {row.warm_make_ms:.1f} | "
            f"{row.evaluate.p50_us:.1f} | {jac} | {hes} | {'yes' if row.verified else 'NO'} |"
        )

    payload = {
        "generated": datetime.now(UTC).isoformat(),
        "profile": args.profile,
        "host": host_metadata(),
        "cache_stats": stats,
        "rows": [asdict(row) for row in rows],
    }
    out_path = Path(args.json_out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    print(f"Wrote benchmark report: {out_path}")
    return 0 if all(row.verified for row in rows) else 1


if __name__ == "__main__":
    raise SystemExit(main())

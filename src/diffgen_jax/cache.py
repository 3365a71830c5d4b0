"""On-disk artifact cache for compiled blueprint entry points."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
import threading
import uuid

import jax
from jax import export as jax_export

from .blueprint import Blueprint, EnabledDerivatives
from .codegen import GeneratedUnit
from .errors import CacheMismatchError, CompilationError
from .tracing import entry_points_for, input_dtype

logger = logging.getLogger(__name__)

_USE_PERSISTENT_CACHE = os.environ.get("DIFFGEN_JAX_DISABLE_PERSISTENT_CACHE", "0") != "1"
_DEFAULT_CACHE_DIR = Path(os.environ.get("DIFFGEN_JAX_CACHE_DIR", ".diffgen_jax_cache/functions"))
_CACHE_FORMAT_VERSION = "v2"
_METADATA_FILE = "metadata.json"
_MODULE_SUFFIX = ".jaxexport"
_SOURCE_SUFFIX = ".mlir"

_LOADED_ARTIFACTS: dict[tuple[str, str], "CompiledArtifact"] = {}
_CACHE_STATS: dict[str, int] = {"hits": 0, "misses": 0, "disk_hits": 0, "disk_misses": 0, "compiles": 0}
_STATE_LOCK = threading.Lock()
_NAME_LOCKS: dict[tuple[str, str], threading.Lock] = {}


def _bump(counter: str) -> None:
    with _STATE_LOCK:
        _CACHE_STATS[counter] += 1


@dataclass(frozen=True)
class CompiledArtifact:
    """Loaded entry points of one blueprint; read-only and shareable across threads."""

    name: str
    signature: tuple[object, ...]
    output_size: int
    exported: Mapping[str, jax_export.Exported]
    entry_points: Mapping[str, Callable]
    path: Path | None = None

    @classmethod
    def from_exported(
        cls,
        *,
        name: str,
        signature: tuple[object, ...],
        output_size: int,
        exported: Mapping[str, jax_export.Exported],
        path: Path | None = None,
    ) -> "CompiledArtifact":
        entry_points = {entry: jax.jit(module.call) for entry, module in exported.items()}
        return cls(
            name=name,
            signature=signature,
            output_size=output_size,
            exported=dict(exported),
            entry_points=entry_points,
            path=path,
        )

    def source(self, entry: str) -> str:
        return self.exported[entry].mlir_module()


def _expected_signature(blueprint: Blueprint) -> tuple[object, ...]:
    return blueprint.signature() + (input_dtype().name,)


def _unit_signature(unit: GeneratedUnit) -> tuple[object, ...]:
    dtypes = {module.in_avals[0].dtype.name for module in unit.exported.values()}
    if len(dtypes) != 1:
        raise CompilationError(f"Entry points of {unit.name!r} disagree on input dtype: {sorted(dtypes)}")
    return unit.blueprint.signature() + (dtypes.pop(),)


def _signature_from_metadata(metadata: Mapping[str, object]) -> tuple[object, ...]:
    derivatives = EnabledDerivatives.from_names(metadata["enabled_derivatives"])
    return (
        int(metadata["variable_size"]),
        int(metadata["parameter_size"]),
        tuple(derivatives.to_names()),
        str(metadata["input_dtype"]),
    )


def _metadata_for(unit: GeneratedUnit) -> dict[str, object]:
    blueprint = unit.blueprint
    return {
        "name": blueprint.name,
        "format_version": _CACHE_FORMAT_VERSION,
        "jax_version": getattr(jax, "__version__", "unknown"),
        "variable_size": blueprint.variable_size,
        "parameter_size": blueprint.parameter_size,
        "enabled_derivatives": blueprint.enabled_derivatives.to_names(),
        "input_dtype": _unit_signature(unit)[-1],
        "output_size": unit.output_size,
        "entry_points": list(unit.exported),
        "created": datetime.now(UTC).isoformat(),
    }


class ArtifactCache:
    """Named artifact store rooted at ``root``, one directory per blueprint name.

    Artifacts are published by writing into a temporary sibling directory and renaming it into
    place, so concurrent writers never expose a partially written artifact.
    """

    def __init__(self, root: str | os.PathLike[str] | None = None, *, persistent: bool | None = None) -> None:
        base = Path(root) if root is not None else _DEFAULT_CACHE_DIR
        jax_version = getattr(jax, "__version__", "unknown")
        self.directory = base.expanduser().resolve() / f"{_CACHE_FORMAT_VERSION}-jax{jax_version}"
        self.persistent = _USE_PERSISTENT_CACHE if persistent is None else bool(persistent)

    def __repr__(self) -> str:
        return f"ArtifactCache(directory={str(self.directory)!r}, persistent={self.persistent})"

    def _memory_key(self, name: str) -> tuple[str, str]:
        return (str(self.directory), name)

    def artifact_dir(self, name: str) -> Path:
        return self.directory / name

    def lock(self, name: str) -> threading.Lock:
        """Per-name lock serializing ``make`` calls within this process."""
        key = self._memory_key(name)
        with _STATE_LOCK:
            lock = _NAME_LOCKS.get(key)
            if lock is None:
                lock = threading.Lock()
                _NAME_LOCKS[key] = lock
            return lock

    def lookup(self, blueprint: Blueprint) -> CompiledArtifact | None:
        """Return a reusable artifact for ``blueprint`` or ``None`` when nothing is cached."""
        key = self._memory_key(blueprint.name)
        with _STATE_LOCK:
            cached = _LOADED_ARTIFACTS.get(key)
        if cached is not None:
            expected = _expected_signature(blueprint)
            if cached.signature != expected:
                raise CacheMismatchError(name=blueprint.name, expected=expected, found=cached.signature)
            _bump("hits")
            return cached
        _bump("misses")

        if not self.persistent:
            return None
        loaded = self.load(blueprint)
        if loaded is None:
            _bump("disk_misses")
            return None
        _bump("disk_hits")
        self._remember(loaded)
        return loaded

    def load(self, blueprint: Blueprint) -> CompiledArtifact | None:
        """Deserialize the on-disk artifact for ``blueprint``, validating its signature."""
        path = self.artifact_dir(blueprint.name)
        metadata_path = path / _METADATA_FILE
        if not metadata_path.exists():
            return None
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
            found = _signature_from_metadata(metadata)
            output_size = int(metadata["output_size"])
            entries = tuple(metadata["entry_points"])
        except (OSError, ValueError, KeyError, TypeError) as err:
            raise CompilationError(f"Cached artifact {blueprint.name!r} at {path} has unreadable metadata: {err}") from err

        expected = _expected_signature(blueprint)
        if found != expected:
            raise CacheMismatchError(name=blueprint.name, expected=expected, found=found)
        if entries != entry_points_for(blueprint.enabled_derivatives):
            raise CompilationError(f"Cached artifact {blueprint.name!r} at {path} lists entry points {entries}")

        exported: dict[str, jax_export.Exported] = {}
        for entry in entries:
            module_path = path / f"{entry}{_MODULE_SUFFIX}"
            try:
                module = jax_export.deserialize(bytearray(module_path.read_bytes()))
            except Exception as err:
                raise CompilationError(f"Cached artifact {blueprint.name!r}: cannot load {module_path.name}: {err}") from err
            if tuple(module.in_avals[0].shape) != (blueprint.total_size,):
                raise CompilationError(
                    f"Cached artifact {blueprint.name!r}: {entry} expects input shape {module.in_avals[0].shape}"
                )
            if module.in_avals[0].dtype.name != expected[-1]:
                raise CacheMismatchError(
                    name=blueprint.name, expected=expected, found=found[:-1] + (module.in_avals[0].dtype.name,)
                )
            exported[entry] = module

        logger.debug("Loaded cached artifact %r from %s", blueprint.name, path)
        return CompiledArtifact.from_exported(
            name=blueprint.name,
            signature=found,
            output_size=output_size,
            exported=exported,
            path=path,
        )

    def publish(self, unit: GeneratedUnit, *, replace: bool = False) -> CompiledArtifact:
        """Store ``unit`` and return the artifact callers should use.

        When another writer published the same name first, its artifact wins and ``unit`` is
        discarded, unless ``replace`` is set.
        """
        _bump("compiles")
        blueprint = unit.blueprint
        if not self.persistent:
            artifact = CompiledArtifact.from_exported(
                name=unit.name,
                signature=_unit_signature(unit),
                output_size=unit.output_size,
                exported=unit.exported,
            )
            self._remember(artifact)
            return artifact

        target = self.artifact_dir(unit.name)
        self.directory.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{unit.name}.", suffix=".tmp", dir=self.directory))
        retired: Path | None = None
        try:
            for entry in unit.exported:
                (staging / f"{entry}{_MODULE_SUFFIX}").write_bytes(unit.serialized(entry))
                (staging / f"{entry}{_SOURCE_SUFFIX}").write_text(unit.source(entry), encoding="utf-8")
            (staging / _METADATA_FILE).write_text(json.dumps(_metadata_for(unit), indent=2), encoding="utf-8")

            if replace and target.exists():
                retired = self.directory / f".{unit.name}.{uuid.uuid4().hex}.old"
                os.rename(target, retired)
            try:
                os.rename(staging, target)
            except OSError:
                if not target.exists():
                    raise
                logger.info("Artifact %r was published concurrently; using the published copy", unit.name)
                published = self.load(blueprint)
                if published is None:
                    raise CompilationError(f"Artifact {unit.name!r} vanished while publishing")
                self._remember(published)
                return published
        except OSError as err:
            raise CompilationError(f"Cannot publish artifact {unit.name!r} to {target}: {err}") from err
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)

        artifact = CompiledArtifact.from_exported(
            name=unit.name,
            signature=_unit_signature(unit),
            output_size=unit.output_size,
            exported=unit.exported,
            path=target,
        )
        self._remember(artifact)
        logger.debug("Published artifact %r to %s", unit.name, target)
        return artifact

    def evict(self, name: str) -> bool:
        """Drop ``name`` from memory and disk; return whether anything was removed."""
        with _STATE_LOCK:
            removed = _LOADED_ARTIFACTS.pop(self._memory_key(name), None) is not None
        path = self.artifact_dir(name)
        if path.exists():
            shutil.rmtree(path)
            removed = True
        return removed

    def names(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(
            entry.name
            for entry in self.directory.iterdir()
            if entry.is_dir() and not entry.name.startswith(".") and (entry / _METADATA_FILE).exists()
        )

    def _remember(self, artifact: CompiledArtifact) -> None:
        with _STATE_LOCK:
            _LOADED_ARTIFACTS[self._memory_key(artifact.name)] = artifact

    def forget(self, name: str) -> None:
        """Drop the in-memory copy only, so the next lookup reads from disk."""
        with _STATE_LOCK:
            _LOADED_ARTIFACTS.pop(self._memory_key(name), None)


def compile_cache_stats(*, reset: bool = False) -> dict[str, float | int]:
    with _STATE_LOCK:
        counters = dict(_CACHE_STATS)
        size = len(_LOADED_ARTIFACTS)
        if reset:
            _LOADED_ARTIFACTS.clear()
            for key in _CACHE_STATS:
                _CACHE_STATS[key] = 0
    hits = counters["hits"]
    misses = counters["misses"]
    total = hits + misses
    stats: dict[str, float | int] = {
        "hits": hits,
        "misses": misses,
        "disk_hits": counters["disk_hits"],
        "disk_misses": counters["disk_misses"],
        "compiles": counters["compiles"],
        "size": size,
        "persistent_cache_enabled": _USE_PERSISTENT_CACHE,
        "persistent_cache_dir": str(_DEFAULT_CACHE_DIR),
        "hit_rate": float(hits / total) if total else 0.0,
    }
    return stats

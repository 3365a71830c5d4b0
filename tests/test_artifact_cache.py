from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import importlib.util
import tempfile
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _weighted_norm_and_square(xp, xnp):
    x, p = xp[:4], xp[4:]
    return xnp.stack([p[0] * xnp.sum(x * x), 2.0 * x[0] ** 2])


def _sine_of_sum(xp, xnp):
    return xnp.stack([xnp.sin(xnp.sum(xp[:2]))])


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for artifact cache tests")
class ArtifactCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        from diffgen_jax import ArtifactCache, FunctionFactory, compile_cache_stats

        compile_cache_stats(reset=True)
        self._tmp = tempfile.TemporaryDirectory()
        self.cache = ArtifactCache(self._tmp.name)
        self.factory = FunctionFactory(self.cache)

    def tearDown(self) -> None:
        from diffgen_jax import compile_cache_stats

        compile_cache_stats(reset=True)
        self._tmp.cleanup()

    def _blueprint(self, name: str = "cached", derivatives=None):
        from diffgen_jax import Blueprint, EnabledDerivatives

        if derivatives is None:
            derivatives = EnabledDerivatives.ALL
        return Blueprint(_weighted_norm_and_square, 4, 1, name, derivatives)

    def _sample(self):
        import numpy as np

        return np.random.default_rng(7).uniform(-1.0, 1.0, 5)

    def test_cold_and_warm_paths_agree(self) -> None:
        import numpy as np

        from diffgen_jax import compile_cache_stats

        blueprint = self._blueprint()
        cold = self.factory.make(blueprint)
        self.assertEqual(compile_cache_stats()["compiles"], 1)

        self.cache.forget(blueprint.name)
        warm = self.factory.make(blueprint)
        stats = compile_cache_stats()
        self.assertEqual(stats["compiles"], 1)
        self.assertEqual(stats["disk_hits"], 1)
        self.assertIsNot(cold.artifact, warm.artifact)

        xp = self._sample()
        np.testing.assert_array_equal(cold(xp), warm(xp))
        np.testing.assert_array_equal(cold.jacobian(xp), warm.jacobian(xp))
        np.testing.assert_array_equal(cold.hessian(xp), warm.hessian(xp))
        self.assertTrue(warm.test_jacobian(xp))
        self.assertTrue(warm.test_hessian(xp))

    def test_in_memory_hit_reuses_loaded_artifact(self) -> None:
        from diffgen_jax import compile_cache_stats

        blueprint = self._blueprint()
        first = self.factory.make(blueprint)
        second = self.factory.make(blueprint)

        self.assertIs(first.artifact, second.artifact)
        self.assertEqual(compile_cache_stats()["hits"], 1)

    def test_new_process_layout_is_reloadable(self) -> None:
        import numpy as np

        from diffgen_jax import ArtifactCache, FunctionFactory, compile_cache_stats

        blueprint = self._blueprint()
        cold = self.factory.make(blueprint)
        compile_cache_stats(reset=True)

        fresh = FunctionFactory(ArtifactCache(self._tmp.name)).make(blueprint)
        self.assertEqual(compile_cache_stats()["compiles"], 0)
        xp = self._sample()
        np.testing.assert_array_equal(cold(xp), fresh(xp))

    def test_artifact_directory_contents(self) -> None:
        import json

        blueprint = self._blueprint()
        self.factory.make(blueprint)

        path = self.cache.artifact_dir(blueprint.name)
        self.assertEqual(self.cache.names(), [blueprint.name])
        metadata = json.loads((path / "metadata.json").read_text(encoding="utf-8"))
        self.assertEqual(metadata["variable_size"], 4)
        self.assertEqual(metadata["parameter_size"], 1)
        self.assertEqual(metadata["enabled_derivatives"], ["HESSIAN", "JACOBIAN"])
        self.assertEqual(metadata["input_dtype"], "float64")
        self.assertEqual(metadata["output_size"], 2)
        for entry in ("value", "jacobian", "hessian"):
            self.assertTrue((path / f"{entry}.jaxexport").is_file())
            self.assertTrue((path / f"{entry}.mlir").is_file())

    def test_signature_mismatch_is_rejected(self) -> None:
        from diffgen_jax import CacheMismatchError, EnabledDerivatives

        self.factory.make(self._blueprint("shared_name", EnabledDerivatives.JACOBIAN))
        other = self._blueprint("shared_name", EnabledDerivatives.HESSIAN)

        with self.assertRaises(CacheMismatchError) as ctx:
            self.factory.make(other)
        self.assertEqual(ctx.exception.name, "shared_name")
        self.assertEqual(ctx.exception.found, (4, 1, ("JACOBIAN",), "float64"))
        self.assertEqual(ctx.exception.expected, (4, 1, ("HESSIAN",), "float64"))

        self.cache.forget("shared_name")
        with self.assertRaises(CacheMismatchError):
            self.factory.make(other)

    def test_recompile_replaces_mismatched_artifact(self) -> None:
        import numpy as np

        from diffgen_jax import EnabledDerivatives, compile_cache_stats

        self.factory.make(self._blueprint("replaced", EnabledDerivatives.JACOBIAN))
        replacement = self._blueprint("replaced", EnabledDerivatives.HESSIAN)
        function = self.factory.make(replacement, recompile=True)
        self.assertEqual(compile_cache_stats()["compiles"], 2)

        self.cache.forget("replaced")
        reloaded = self.factory.make(replacement)
        xp = self._sample()
        np.testing.assert_array_equal(function.hessian(xp), reloaded.hessian(xp))
        self.assertEqual(self.cache.names(), ["replaced"])
        leftovers = [entry.name for entry in self.cache.directory.iterdir() if entry.name.startswith(".")]
        self.assertEqual(leftovers, [])

    def test_unreadable_artifact_is_a_compilation_error(self) -> None:
        from diffgen_jax import CompilationError

        blueprint = self._blueprint("corrupt")
        self.factory.make(blueprint)
        (self.cache.artifact_dir("corrupt") / "metadata.json").write_text("{not json", encoding="utf-8")
        self.cache.forget("corrupt")

        with self.assertRaises(CompilationError):
            self.factory.make(blueprint)

    def test_losing_publish_race_uses_published_artifact(self) -> None:
        from diffgen_jax.codegen import generate_unit
        from diffgen_jax.tracing import trace_blueprint

        blueprint = self._blueprint("raced")
        unit = generate_unit(trace_blueprint(blueprint))
        winner = self.cache.publish(unit)
        self.cache.forget("raced")
        loser = self.cache.publish(unit)

        self.assertEqual(winner.path, loser.path)
        self.assertEqual(loser.signature, blueprint.signature() + ("float64",))
        leftovers = [entry.name for entry in self.cache.directory.iterdir() if entry.name.startswith(".")]
        self.assertEqual(leftovers, [])

    def test_artifact_lowered_for_other_input_dtype_is_rejected(self) -> None:
        import json

        import jax
        from jax import export as jax_export
        import jax.numpy as jnp

        from diffgen_jax import CacheMismatchError
        from diffgen_jax.codegen import GeneratedUnit
        from diffgen_jax.tracing import trace_blueprint

        blueprint = self._blueprint("single_precision")
        traced = trace_blueprint(blueprint)
        spec = jax.ShapeDtypeStruct((blueprint.total_size,), jnp.float32)
        exported = {}
        for entry in traced.entry_points:
            jitted = jax.jit(traced.routines[entry])
            exported[entry] = jax_export.export(jitted)(spec)
        self.cache.publish(GeneratedUnit(blueprint, traced.output_size, exported))

        with self.assertRaises(CacheMismatchError) as ctx:
            self.factory.make(blueprint)
        self.assertEqual(ctx.exception.found[-1], "float32")
        self.assertEqual(ctx.exception.expected[-1], "float64")

        self.cache.forget("single_precision")
        metadata_path = self.cache.artifact_dir("single_precision") / "metadata.json"
        self.assertEqual(json.loads(metadata_path.read_text(encoding="utf-8"))["input_dtype"], "float32")
        with self.assertRaises(CacheMismatchError):
            self.factory.make(blueprint)

        metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        metadata["input_dtype"] = "float64"
        metadata_path.write_text(json.dumps(metadata), encoding="utf-8")
        with self.assertRaises(CacheMismatchError) as ctx:
            self.factory.make(blueprint)
        self.assertEqual(ctx.exception.found[-1], "float32")

    def test_concurrent_make_compiles_once(self) -> None:
        import numpy as np

        from diffgen_jax import compile_cache_stats

        blueprint = self._blueprint("concurrent")
        with ThreadPoolExecutor(max_workers=4) as pool:
            functions = list(pool.map(lambda _: self.factory.make(blueprint), range(8)))

        self.assertEqual(compile_cache_stats()["compiles"], 1)
        xp = self._sample()
        expected = functions[0].jacobian(xp)
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda fn: fn.jacobian(xp), functions))
        for result in results:
            np.testing.assert_array_equal(result, expected)

    def test_concurrent_counters_account_for_every_call(self) -> None:
        from diffgen_jax import Blueprint, compile_cache_stats

        blueprints = [Blueprint(_sine_of_sum, 2, 0, f"counted_{index}") for index in range(4)]
        calls = [blueprint for blueprint in blueprints for _ in range(6)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(self.factory.make, calls))

        stats = compile_cache_stats()
        self.assertEqual(stats["hits"] + stats["misses"], len(calls))
        self.assertEqual(stats["misses"], len(blueprints))
        self.assertEqual(stats["disk_misses"], len(blueprints))
        self.assertEqual(stats["compiles"], len(blueprints))

    def test_evict_removes_artifact(self) -> None:
        blueprint = self._blueprint("evicted")
        self.factory.make(blueprint)

        self.assertTrue(self.cache.evict("evicted"))
        self.assertEqual(self.cache.names(), [])
        self.assertFalse(self.cache.evict("evicted"))

    def test_non_persistent_cache_writes_nothing(self) -> None:
        import numpy as np

        from diffgen_jax import ArtifactCache, Blueprint, EnabledDerivatives, FunctionFactory

        cache = ArtifactCache(self._tmp.name, persistent=False)
        blueprint = Blueprint(_sine_of_sum, 2, 0, "memory_only", EnabledDerivatives.JACOBIAN)
        function = FunctionFactory(cache).make(blueprint)

        self.assertEqual(cache.names(), [])
        xp = np.array([0.25, 0.5])
        np.testing.assert_allclose(function(xp), [np.sin(0.75)])
        np.testing.assert_allclose(function.jacobian(xp), [[np.cos(0.75), np.cos(0.75)]])


if __name__ == "__main__":
    unittest.main()

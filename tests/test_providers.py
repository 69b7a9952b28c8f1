from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from tds.detector.devices import parse_device_id
from tds.detector.provider_cache import ProviderCache
from tds.detector.providers import ExecutionProvider, probe
from tds.detector.selector import ExecutionProviderManager
from tds.errors import ConfigError, InferenceSessionError, NoUsableDeviceError
from tds.types import ExecutionProviderInfo

from _fakes import BrightRegionBackend, small_spec


class _CountingProbe:
    def __init__(self, providers: list[ExecutionProvider]) -> None:
        self.providers = providers
        self.calls: list[str] = []

    def __call__(self, device_id: str) -> list[ExecutionProvider]:
        self.calls.append(device_id)
        return list(self.providers)


class DeviceIdTests(unittest.TestCase):
    def test_aliases_are_canonicalized(self) -> None:
        self.assertEqual(parse_device_id("CUDA:1").device_id, "gpu:1")
        self.assertEqual(parse_device_id("gpu").device_id, "gpu:0")
        self.assertEqual(parse_device_id("cpu").index, 0)

    def test_unknown_device_kind_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            parse_device_id("tpu:0")
        with self.assertRaises(ConfigError):
            parse_device_id("gpu:x")


class ProbeTests(unittest.TestCase):
    def test_gpu_ranks_vendor_providers_before_cpu(self) -> None:
        installed = ["CPUExecutionProvider", "CUDAExecutionProvider", "TensorrtExecutionProvider"]

        ranked = probe("gpu:0", available=lambda: installed)

        self.assertEqual(
            ranked,
            [ExecutionProvider.TENSORRT, ExecutionProvider.CUDA, ExecutionProvider.CPU],
        )

    def test_cpu_is_always_present(self) -> None:
        def broken() -> list[str]:
            raise RuntimeError("no runtime")

        self.assertEqual(probe("npu:0", available=broken), [ExecutionProvider.CPU])

    def test_provider_options_carry_device_index(self) -> None:
        ref = parse_device_id("gpu:2")

        self.assertEqual(ExecutionProvider.CUDA.options(ref), {"device_id": 2})
        options = ExecutionProvider.TENSORRT.options(ref, cache_dir="/tmp/engines")
        self.assertTrue(options["trt_engine_cache_enable"])
        self.assertEqual(ExecutionProvider.CPU.options(ref), {})

    def test_from_name_accepts_short_names(self) -> None:
        self.assertIs(ExecutionProvider.from_name("cuda"), ExecutionProvider.CUDA)
        with self.assertRaises(ValueError):
            ExecutionProvider.from_name("warp-drive")


class ProviderCacheTests(unittest.TestCase):
    def test_save_then_load(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = ProviderCache(tmpdir)
            path = cache.save(ExecutionProviderInfo("gpu:0", ["CUDAExecutionProvider", "CPUExecutionProvider"]))

            self.assertEqual(path.name, "gpu_0.json")
            loaded = cache.load("gpu:0")

            self.assertIsNotNone(loaded)
            self.assertEqual(loaded.backends, ["CUDAExecutionProvider", "CPUExecutionProvider"])
            self.assertFalse(loaded.probed)

    def test_malformed_artifact_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = ProviderCache(tmpdir)
            cache.path_for("cpu").write_text("{not json", encoding="utf-8")

            with self.assertLogs("tds.providers", level="WARNING"):
                self.assertIsNone(cache.load("cpu"))


class ExecutionProviderManagerTests(unittest.TestCase):
    def test_probe_runs_once_then_cache_is_reused(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            probe_fn = _CountingProbe([ExecutionProvider.CUDA, ExecutionProvider.CPU])

            first = ExecutionProviderManager(ProviderCache(tmpdir), probe_fn=probe_fn)
            info = first.resolve("gpu:0")
            self.assertEqual(probe_fn.calls, ["gpu:0"])
            self.assertTrue(info.probed)

            artifact = json.loads((Path(tmpdir) / "gpu_0.json").read_text(encoding="utf-8"))
            self.assertEqual(artifact["backends"], ["CUDAExecutionProvider", "CPUExecutionProvider"])

            second = ExecutionProviderManager(ProviderCache(tmpdir), probe_fn=probe_fn)
            cached = second.resolve("gpu:0")
            self.assertEqual(probe_fn.calls, ["gpu:0"])
            self.assertEqual(cached.backends, info.backends)

            forced = ExecutionProviderManager(ProviderCache(tmpdir), probe_fn=probe_fn, force_reprobe=True)
            forced.resolve("gpu:0")
            self.assertEqual(probe_fn.calls, ["gpu:0", "gpu:0"])

    def test_open_device_falls_back_to_next_provider(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            built: list[ExecutionProvider] = []

            def factory(device, provider):
                built.append(provider)
                if provider is ExecutionProvider.CUDA:
                    raise InferenceSessionError("CUDA driver missing")
                return BrightRegionBackend(device.device_id)

            manager = ExecutionProviderManager(
                ProviderCache(tmpdir),
                probe_fn=_CountingProbe([ExecutionProvider.CUDA, ExecutionProvider.CPU]),
                backend_factory=factory,
            )

            with self.assertLogs("tds.providers", level="WARNING"):
                opened = manager.open_device("gpu:0", 2, small_spec())

            self.assertIs(opened.provider, ExecutionProvider.CPU)
            self.assertEqual(opened.workers, 2)
            self.assertTrue(all(session.loaded for session in opened.sessions))
            self.assertEqual(built, [ExecutionProvider.CUDA, ExecutionProvider.CPU, ExecutionProvider.CPU])

    def test_partially_opened_sessions_are_released_on_fallback(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            sessions: list[BrightRegionBackend] = []

            def factory(device, provider):
                if provider is ExecutionProvider.CUDA and sessions:
                    raise InferenceSessionError("out of device memory")
                backend = BrightRegionBackend(device.device_id)
                sessions.append(backend)
                return backend

            manager = ExecutionProviderManager(
                ProviderCache(tmpdir),
                probe_fn=_CountingProbe([ExecutionProvider.CUDA, ExecutionProvider.CPU]),
                backend_factory=factory,
            )

            with self.assertLogs("tds.providers", level="WARNING"):
                opened = manager.open_device("gpu:0", 2, small_spec())

            self.assertTrue(sessions[0].released)
            self.assertIs(opened.provider, ExecutionProvider.CPU)

    def test_device_with_no_working_provider_is_dropped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:

            def factory(device, provider):
                if device.kind == "gpu":
                    raise InferenceSessionError("no gpu here")
                return BrightRegionBackend(device.device_id)

            cache = ProviderCache(tmpdir)
            manager = ExecutionProviderManager(
                cache,
                probe_fn=_CountingProbe([ExecutionProvider.CPU]),
                backend_factory=factory,
            )

            with self.assertLogs("tds.providers", level="WARNING"):
                opened = manager.open_devices({"gpu:0": 1, "cpu": 1}, small_spec())

            self.assertEqual([device.device_id for device in opened], ["cpu"])
            self.assertFalse(cache.path_for("gpu:0").exists())
            self.assertTrue(cache.path_for("cpu").exists())

    def test_no_usable_device_is_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:

            def factory(device, provider):
                raise InferenceSessionError("nothing works")

            manager = ExecutionProviderManager(
                ProviderCache(tmpdir),
                probe_fn=_CountingProbe([ExecutionProvider.CPU]),
                backend_factory=factory,
            )

            with self.assertLogs("tds.providers", level="WARNING"):
                with self.assertRaises(NoUsableDeviceError):
                    manager.open_devices({"cpu": 1}, small_spec())


if __name__ == "__main__":
    unittest.main()

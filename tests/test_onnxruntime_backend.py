from __future__ import annotations

import sys
import types
import unittest
from unittest import mock

import numpy as np

from tds.detector.backends.onnxruntime_backend import OnnxRuntimeBackend
from tds.detector.devices import parse_device_id
from tds.detector.providers import ExecutionProvider
from tds.errors import InferenceRuntimeError, InferenceSessionError

from _fakes import small_spec


class _Node:
    def __init__(self, name: str, shape, type_: str = "tensor(float)") -> None:
        self.name = name
        self.shape = shape
        self.type = type_


class _Session:
    """Echoes the per-frame mean of its input as a [batch, 1, 6] output."""

    def __init__(self, bound: list[str], input_shape=("batch", 3, 64, 64)) -> None:
        self.bound = bound
        self.input_shape = input_shape
        self.fed: list[tuple[int, ...]] = []

    def get_providers(self) -> list[str]:
        return self.bound

    def get_inputs(self) -> list[_Node]:
        return [_Node("images", list(self.input_shape))]

    def get_outputs(self) -> list[_Node]:
        return [_Node("output0", ["batch", 1, 6])]

    def run(self, names, feeds):
        tensor = feeds["images"]
        self.fed.append(tensor.shape)
        out = np.zeros((tensor.shape[0], 1, 6), dtype=np.float32)
        out[:, 0, 4] = tensor.reshape(tensor.shape[0], -1).mean(axis=1)
        return [out]


def _fake_ort(session: _Session) -> types.ModuleType:
    module = types.ModuleType("onnxruntime")
    module.SessionOptions = lambda: types.SimpleNamespace()
    module.GraphOptimizationLevel = types.SimpleNamespace(ORT_ENABLE_ALL=99)
    module.InferenceSession = mock.Mock(return_value=session)
    return module


class OnnxRuntimeBackendTests(unittest.TestCase):
    def _load(self, session: _Session, provider=ExecutionProvider.CUDA, **spec_overrides) -> OnnxRuntimeBackend:
        backend = OnnxRuntimeBackend(parse_device_id("gpu:1"), provider)
        with mock.patch.dict(sys.modules, {"onnxruntime": _fake_ort(session)}):
            backend.load(small_spec(**spec_overrides))
        return backend

    def test_session_is_pinned_to_requested_provider(self) -> None:
        session = _Session(["CUDAExecutionProvider", "CPUExecutionProvider"])
        fake = _fake_ort(session)
        backend = OnnxRuntimeBackend(parse_device_id("gpu:1"), ExecutionProvider.CUDA)

        with mock.patch.dict(sys.modules, {"onnxruntime": fake}):
            backend.load(small_spec())

        _, kwargs = fake.InferenceSession.call_args
        self.assertEqual(kwargs["providers"], [("CUDAExecutionProvider", {"device_id": 1})])
        self.assertEqual(backend.name(), "onnxruntime-cuda")

    def test_silent_cpu_fallback_is_rejected(self) -> None:
        with self.assertRaises(InferenceSessionError):
            self._load(_Session(["CPUExecutionProvider"]))

    def test_input_shape_mismatch_is_rejected(self) -> None:
        with self.assertRaises(InferenceSessionError):
            self._load(_Session(["CUDAExecutionProvider"], input_shape=(1, 3, 640, 640)))

    def test_unknown_input_name_is_rejected(self) -> None:
        with self.assertRaises(InferenceSessionError):
            self._load(_Session(["CUDAExecutionProvider"]), input_name="pixel_values")

    def test_dynamic_batch_runs_in_one_call(self) -> None:
        session = _Session(["CUDAExecutionProvider"])
        backend = self._load(session)

        [output] = backend.run(np.ones((3, 3, 64, 64), dtype=np.float32))

        self.assertEqual(output.shape, (3, 1, 6))
        self.assertEqual(session.fed, [(3, 3, 64, 64)])

    def test_static_batch_is_split_and_padded(self) -> None:
        session = _Session(["CUDAExecutionProvider"], input_shape=(2, 3, 64, 64))
        backend = self._load(session)
        batch = np.stack([np.full((3, 64, 64), value, dtype=np.float32) for value in (1, 2, 3)])

        [output] = backend.run(batch)

        self.assertEqual(session.fed, [(2, 3, 64, 64), (2, 3, 64, 64)])
        np.testing.assert_allclose(output[:, 0, 4], [1, 2, 3])

    def test_runtime_failure_is_wrapped(self) -> None:
        session = _Session(["CUDAExecutionProvider"])
        backend = self._load(session)
        session.run = mock.Mock(side_effect=RuntimeError("CUDA error: device-side assert"))

        with self.assertRaises(InferenceRuntimeError):
            backend.run(np.zeros((1, 3, 64, 64), dtype=np.float32))

    def test_released_backend_refuses_to_run(self) -> None:
        backend = self._load(_Session(["CUDAExecutionProvider"]))
        backend.release()

        with self.assertRaises(InferenceRuntimeError):
            backend.run(np.zeros((1, 3, 64, 64), dtype=np.float32))


if __name__ == "__main__":
    unittest.main()

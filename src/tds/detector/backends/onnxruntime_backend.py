from __future__ import annotations

import logging
from typing import Any

import numpy as np

from tds.detector.backends.base import InferenceBackend
from tds.detector.devices import DeviceRef
from tds.detector.models.model_spec import ModelSpec
from tds.detector.providers import ExecutionProvider
from tds.errors import InferenceRuntimeError, InferenceSessionError

_ELEMENT_TYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(uint8)": np.uint8,
}


class OnnxRuntimeBackend(InferenceBackend):
    """ONNX Runtime session pinned to a single execution provider on one device."""

    def __init__(
        self,
        device: DeviceRef,
        provider: ExecutionProvider,
        intra_op_threads: int = 0,
        engine_cache_dir: str | None = None,
    ) -> None:
        self._logger = logging.getLogger("tds.detector.onnxruntime")
        self.device = device
        self.provider = provider
        self._intra_op_threads = intra_op_threads
        self._engine_cache_dir = engine_cache_dir
        self._session: Any | None = None
        self._model_spec: ModelSpec | None = None
        self._input_name = ""
        self._input_dtype: Any = np.float32
        self._static_batch: int | None = None
        self._output_names: list[str] = []

    def load(self, model_spec: ModelSpec) -> None:
        try:
            import onnxruntime as ort
        except ImportError as exc:
            raise InferenceSessionError("onnxruntime is not installed") from exc

        if not model_spec.model_path:
            raise InferenceSessionError("ONNX Runtime backend requires model.path")

        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        if self._intra_op_threads > 0:
            options.intra_op_num_threads = self._intra_op_threads

        provider_options = self.provider.options(self.device, self._engine_cache_dir)
        try:
            session = ort.InferenceSession(
                model_spec.model_path,
                sess_options=options,
                providers=[(self.provider.value, provider_options)],
            )
        except Exception as exc:
            raise InferenceSessionError(
                f"{self.provider.short_name} session on {self.device.device_id} failed: {exc}"
            ) from exc

        # ONNX Runtime quietly falls back to CPU when a provider cannot initialize.
        bound = list(session.get_providers())
        if not bound or bound[0] != self.provider.value:
            raise InferenceSessionError(
                f"{self.provider.short_name} did not bind on {self.device.device_id} "
                f"(session providers: {bound})"
            )

        inputs = session.get_inputs()
        if not inputs:
            raise InferenceSessionError(f"Model {model_spec.model_path} declares no inputs")
        model_input = inputs[0]
        if model_spec.input_name:
            named = [item for item in inputs if item.name == model_spec.input_name]
            if not named:
                raise InferenceSessionError(
                    f"Model has no input named '{model_spec.input_name}' "
                    f"(inputs: {[item.name for item in inputs]})"
                )
            model_input = named[0]

        self._check_input_shape(list(model_input.shape), model_spec)

        output_names = [item.name for item in session.get_outputs()]
        if model_spec.output_name:
            if model_spec.output_name not in output_names:
                raise InferenceSessionError(
                    f"Model has no output named '{model_spec.output_name}' (outputs: {output_names})"
                )
            output_names = [model_spec.output_name]

        self._session = session
        self._model_spec = model_spec
        self._input_name = model_input.name
        self._input_dtype = _ELEMENT_TYPES.get(model_input.type, np.float32)
        batch_dim = model_input.shape[0] if model_input.shape else None
        self._static_batch = batch_dim if isinstance(batch_dim, int) and batch_dim > 0 else None
        self._output_names = output_names
        self._logger.info(
            "session ready device=%s provider=%s input=%s dtype=%s static_batch=%s",
            self.device.device_id,
            self.provider.short_name,
            self._input_name,
            np.dtype(self._input_dtype).name,
            self._static_batch,
        )

    def _check_input_shape(self, shape: list[Any], model_spec: ModelSpec) -> None:
        if len(shape) != 4:
            raise InferenceSessionError(f"Expected a 4-D model input, got shape {shape}")
        expected = model_spec.tensor_shape
        for declared, wanted in zip(shape[1:], expected):
            if isinstance(declared, int) and declared > 0 and declared != wanted:
                raise InferenceSessionError(
                    f"Model input shape {shape} does not match configured tensor shape {expected}"
                )

    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        if self._session is None:
            raise InferenceRuntimeError("Backend not loaded")

        tensor = batch.astype(self._input_dtype, copy=False)
        try:
            if self._static_batch is None or tensor.shape[0] == self._static_batch:
                return self._run_once(tensor)
            return self._run_split(tensor, self._static_batch)
        except InferenceRuntimeError:
            raise
        except Exception as exc:
            raise InferenceRuntimeError(
                f"inference failed on {self.device.device_id}/{self.provider.short_name}: {exc}"
            ) from exc

    def _run_once(self, tensor: np.ndarray) -> list[np.ndarray]:
        assert self._session is not None
        outputs = self._session.run(self._output_names, {self._input_name: tensor})
        return [np.asarray(output) for output in outputs]

    def _run_split(self, tensor: np.ndarray, size: int) -> list[np.ndarray]:
        """Feed a model with a fixed batch dimension, padding the last chunk."""
        count = tensor.shape[0]
        chunks: list[list[np.ndarray]] = []
        for start in range(0, count, size):
            chunk = tensor[start : start + size]
            if chunk.shape[0] < size:
                pad = np.zeros((size - chunk.shape[0],) + chunk.shape[1:], dtype=chunk.dtype)
                chunk = np.concatenate([chunk, pad])
            chunks.append(self._run_once(chunk))
        merged = []
        for index in range(len(self._output_names)):
            merged.append(np.concatenate([chunk[index] for chunk in chunks])[:count])
        return merged

    def warmup(self) -> None:
        if self._session is None or self._model_spec is None:
            return
        size = self._static_batch or 1
        dummy = np.zeros((size,) + self._model_spec.tensor_shape, dtype=self._input_dtype)
        self._run_once(dummy)

    def release(self) -> None:
        self._session = None

    def name(self) -> str:
        return f"onnxruntime-{self.provider.short_name}"

    def device_info(self) -> str:
        return f"{self.device.device_id} via {self.provider.value}"

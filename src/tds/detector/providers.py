from __future__ import annotations

import logging
import platform
from enum import Enum
from typing import Any, Callable

from tds.detector.devices import DeviceRef, parse_device_id

logger = logging.getLogger("tds.providers")


class ExecutionProvider(str, Enum):
    """ONNX Runtime execution providers this pipeline knows how to drive."""

    TENSORRT = "TensorrtExecutionProvider"
    CUDA = "CUDAExecutionProvider"
    MIGRAPHX = "MIGraphXExecutionProvider"
    ROCM = "ROCMExecutionProvider"
    DIRECTML = "DmlExecutionProvider"
    COREML = "CoreMLExecutionProvider"
    QNN = "QNNExecutionProvider"
    OPENVINO = "OpenVINOExecutionProvider"
    CPU = "CPUExecutionProvider"

    @property
    def short_name(self) -> str:
        return self.value.replace("ExecutionProvider", "").lower()

    @classmethod
    def from_name(cls, name: str) -> "ExecutionProvider":
        text = str(name).strip()
        for provider in cls:
            if text == provider.value or text.lower() == provider.short_name:
                return provider
        raise ValueError(f"Unknown execution provider: {name}")

    def options(self, device: DeviceRef, cache_dir: str | None = None) -> dict[str, Any]:
        if self is ExecutionProvider.TENSORRT:
            options: dict[str, Any] = {
                "device_id": device.index,
                "trt_fp16_enable": True,
            }
            if cache_dir:
                options["trt_engine_cache_enable"] = True
                options["trt_engine_cache_path"] = cache_dir
            return options
        if self in {
            ExecutionProvider.CUDA,
            ExecutionProvider.MIGRAPHX,
            ExecutionProvider.ROCM,
            ExecutionProvider.DIRECTML,
        }:
            return {"device_id": device.index}
        if self is ExecutionProvider.OPENVINO:
            return {"device_type": {"gpu": "GPU", "npu": "NPU"}.get(device.kind, "CPU")}
        if self is ExecutionProvider.QNN:
            library = "QnnHtp.dll" if platform.system() == "Windows" else "libQnnHtp.so"
            return {"backend_path": library}
        return {}


# Ranked candidates per device kind: vendor accelerator > generic GPU > CPU.
_CANDIDATES: dict[str, list[ExecutionProvider]] = {
    "gpu": [
        ExecutionProvider.TENSORRT,
        ExecutionProvider.CUDA,
        ExecutionProvider.MIGRAPHX,
        ExecutionProvider.ROCM,
        ExecutionProvider.DIRECTML,
        ExecutionProvider.OPENVINO,
        ExecutionProvider.COREML,
        ExecutionProvider.CPU,
    ],
    "npu": [
        ExecutionProvider.QNN,
        ExecutionProvider.OPENVINO,
        ExecutionProvider.COREML,
        ExecutionProvider.CPU,
    ],
    "cpu": [
        ExecutionProvider.OPENVINO,
        ExecutionProvider.CPU,
    ],
}


def candidate_providers(kind: str) -> list[ExecutionProvider]:
    return list(_CANDIDATES.get(kind, [ExecutionProvider.CPU]))


def _onnxruntime_available_providers() -> list[str]:
    import onnxruntime as ort

    return list(ort.get_available_providers())


def probe(
    device_id: str,
    available: Callable[[], list[str]] = _onnxruntime_available_providers,
) -> list[ExecutionProvider]:
    """Ranked providers that the installed ONNX Runtime build offers for a device.

    The CPU provider is always the last entry.
    """
    ref = parse_device_id(device_id)
    try:
        installed = set(available())
    except Exception as exc:
        logger.warning("provider probe failed device=%s error=%s", ref.device_id, exc)
        installed = set()

    ranked = [
        provider
        for provider in candidate_providers(ref.kind)
        if provider is not ExecutionProvider.CPU and provider.value in installed
    ]
    ranked.append(ExecutionProvider.CPU)
    logger.info(
        "provider probe device=%s providers=%s",
        ref.device_id,
        ",".join(p.short_name for p in ranked),
    )
    return ranked

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from tds.config.models import DeviceWorkerConfig
from tds.detector.backends.base import InferenceBackend
from tds.detector.devices import DeviceRef, parse_device_id
from tds.detector.models.model_spec import ModelSpec
from tds.detector.provider_cache import ProviderCache
from tds.detector.providers import ExecutionProvider, probe
from tds.errors import InferenceSessionError, NoUsableDeviceError
from tds.types import ExecutionProviderInfo

BackendFactory = Callable[[DeviceRef, ExecutionProvider], InferenceBackend]
ProbeFn = Callable[[str], list[ExecutionProvider]]


@dataclass
class DeviceSessions:
    device_id: str
    provider: ExecutionProvider
    sessions: list[InferenceBackend]
    reason: str

    @property
    def workers(self) -> int:
        return len(self.sessions)


def onnxruntime_factory(
    intra_op_threads: int = 0,
    engine_cache_dir: str | None = None,
) -> BackendFactory:
    def _new_backend(device: DeviceRef, provider: ExecutionProvider) -> InferenceBackend:
        from tds.detector.backends.onnxruntime_backend import OnnxRuntimeBackend

        return OnnxRuntimeBackend(
            device=device,
            provider=provider,
            intra_op_threads=intra_op_threads,
            engine_cache_dir=engine_cache_dir,
        )

    return _new_backend


class ExecutionProviderManager:
    """Resolves, caches and opens inference sessions per configured device."""

    def __init__(
        self,
        cache: ProviderCache,
        probe_fn: ProbeFn = probe,
        backend_factory: BackendFactory | None = None,
        force_reprobe: bool = False,
    ) -> None:
        self._cache = cache
        self._probe = probe_fn
        self._factory = backend_factory or onnxruntime_factory()
        self._force_reprobe = force_reprobe
        self._logger = logging.getLogger("tds.providers")

    def resolve(self, device_id: str, force: bool = False) -> ExecutionProviderInfo:
        ref = parse_device_id(device_id)
        if not (force or self._force_reprobe):
            cached = self._cache.load(ref.device_id)
            if cached is not None:
                self._logger.info(
                    "provider cache hit device=%s backends=%s",
                    ref.device_id,
                    ",".join(cached.backends),
                )
                return cached

        providers = self._probe(ref.device_id)
        info = ExecutionProviderInfo(
            device_id=ref.device_id,
            backends=[provider.value for provider in providers],
            probed=True,
        )
        try:
            path = self._cache.save(info)
            self._logger.info("provider cache written device=%s path=%s", ref.device_id, path)
        except OSError as exc:
            self._logger.warning("provider cache not written device=%s error=%s", ref.device_id, exc)
        return info

    def build_session(
        self,
        device_id: str,
        provider: ExecutionProvider,
        model_spec: ModelSpec,
    ) -> InferenceBackend:
        ref = parse_device_id(device_id)
        backend = self._factory(ref, provider)
        backend.load(model_spec)
        return backend

    def open_device(self, device_id: str, workers: int, model_spec: ModelSpec) -> DeviceSessions:
        info = self.resolve(device_id)
        errors: list[str] = []
        for name in info.backends:
            try:
                provider = ExecutionProvider.from_name(name)
            except ValueError as exc:
                errors.append(str(exc))
                continue

            sessions: list[InferenceBackend] = []
            try:
                for _ in range(max(1, workers)):
                    backend = self.build_session(info.device_id, provider, model_spec)
                    sessions.append(backend)
                    backend.warmup()
            except Exception as exc:
                for backend in sessions:
                    backend.release()
                errors.append(f"{provider.short_name}: {exc}")
                self._logger.warning(
                    "provider fallback device=%s provider=%s error=%s",
                    info.device_id,
                    provider.short_name,
                    exc,
                )
                continue

            reason = f"{provider.short_name} (rank {info.backends.index(name) + 1} of {len(info.backends)})"
            self._logger.info(
                "device open device=%s provider=%s workers=%d backend=%s",
                info.device_id,
                provider.short_name,
                len(sessions),
                sessions[0].device_info(),
            )
            return DeviceSessions(
                device_id=info.device_id,
                provider=provider,
                sessions=sessions,
                reason=reason,
            )

        # Next run reprobes instead of trusting this list again.
        self._cache.invalidate(info.device_id)
        raise InferenceSessionError(
            f"No execution provider could open {info.device_id}. "
            + ("; ".join(errors) if errors else "No providers available.")
        )

    def open_devices(self, devices: DeviceWorkerConfig, model_spec: ModelSpec) -> list[DeviceSessions]:
        opened: list[DeviceSessions] = []
        failures: list[str] = []
        for device_id, workers in devices.items():
            try:
                opened.append(self.open_device(device_id, workers, model_spec))
            except InferenceSessionError as exc:
                failures.append(str(exc))
                self._logger.warning("device disabled device=%s error=%s", device_id, exc)
        if not opened:
            raise NoUsableDeviceError(
                "No configured device could open an inference session. " + " | ".join(failures)
            )
        return opened

    def release(self, opened: list[DeviceSessions]) -> None:
        for device in opened:
            for backend in device.sessions:
                backend.release()

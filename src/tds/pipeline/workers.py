from __future__ import annotations

import logging
from typing import Callable

from tds.detector.backends.base import InferenceBackend
from tds.errors import InferenceRuntimeError
from tds.monitoring.metrics import RuntimeMetrics
from tds.pipeline.batching import DeviceSlots
from tds.pipeline.channel import Channel
from tds.types import Batch, DetectionRaw


def run_batch(session: InferenceBackend, batch: Batch) -> list[DetectionRaw]:
    """One DetectionRaw per member frame. A failing batch yields error records, never raises."""
    try:
        outputs = session.run(batch.stack())
        for output in outputs:
            if output.ndim == 0 or output.shape[0] != len(batch):
                raise InferenceRuntimeError(
                    f"output shape {output.shape} does not carry batch dimension {len(batch)}"
                )
    except Exception as exc:
        reason = str(exc) if isinstance(exc, InferenceRuntimeError) else f"inference failed: {exc}"
        return [
            DetectionRaw(
                media_id=frame.media_id,
                frame_index=frame.frame_index,
                transform=frame.transform,
                error=reason,
            )
            for frame in batch.frames
        ]

    return [
        DetectionRaw(
            media_id=frame.media_id,
            frame_index=frame.frame_index,
            transform=frame.transform,
            outputs=[output[index] for output in outputs],
        )
        for index, frame in enumerate(batch.frames)
    ]


class DeviceWorkerPool:
    """Worker threads for one device, each owning exactly one session."""

    def __init__(
        self,
        device_id: str,
        sessions: list[InferenceBackend],
        inbox: Channel[Batch],
        outbox: Channel[DetectionRaw],
        slots: DeviceSlots,
        metrics: RuntimeMetrics | None = None,
    ) -> None:
        self.device_id = device_id
        self._sessions = list(sessions)
        self._inbox = inbox
        self._outbox = outbox
        self._slots = slots
        self._metrics = metrics or RuntimeMetrics()
        self._logger = logging.getLogger("tds.worker")

    def targets(self) -> list[Callable[[], None]]:
        return [self._bind(session) for session in self._sessions]

    def _bind(self, session: InferenceBackend) -> Callable[[], None]:
        def _target() -> None:
            self.work(session)

        return _target

    def work(self, session: InferenceBackend) -> None:
        try:
            for batch in self._inbox:
                try:
                    raws = run_batch(session, batch)
                    failed = any(raw.error for raw in raws)
                    if failed:
                        self._logger.warning(
                            "batch failed device=%s batch_id=%d frames=%d error=%s",
                            self.device_id,
                            batch.batch_id,
                            len(batch),
                            raws[0].error,
                        )
                    self._metrics.mark_batch(len(batch), failed=failed)
                    for raw in raws:
                        self._outbox.put(raw)
                finally:
                    self._slots.release(batch.device_id)
        finally:
            session.release()

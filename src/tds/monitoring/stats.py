from __future__ import annotations

import logging
import threading
import time

from tds.monitoring.metrics import RuntimeMetrics


class PeriodicStatsLogger:
    def __init__(
        self,
        metrics: RuntimeMetrics,
        interval_seconds: float = 5.0,
    ) -> None:
        self._metrics = metrics
        self._interval_seconds = max(0.5, interval_seconds)
        self._next_emit = time.monotonic() + self._interval_seconds
        self._logger = logging.getLogger("tds.stats")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def maybe_emit(self) -> None:
        now = time.monotonic()
        if now < self._next_emit:
            return
        self.emit()
        self._next_emit = now + self._interval_seconds

    def emit(self) -> None:
        snapshot = self._metrics.snapshot()
        counts = snapshot.counts
        in_flight = ",".join(
            f"{device}:{count}" for device, count in sorted(snapshot.in_flight.items())
        )
        self._logger.info(
            "stats files_done=%d files_failed=%d files_skipped=%d frames_decoded=%d frames_inferred=%d frames_failed=%d batches=%d detections=%d fps_infer=%.2f in_flight=%s",
            counts.get("files_done", 0),
            counts.get("files_failed", 0),
            counts.get("files_skipped", 0),
            counts.get("frames_decoded", 0),
            counts.get("frames_inferred", 0),
            counts.get("frames_failed", 0),
            counts.get("batches_dispatched", 0),
            counts.get("detections", 0),
            snapshot.fps_infer,
            in_flight or "-",
        )

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="stats", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(0.25):
            self.maybe_emit()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

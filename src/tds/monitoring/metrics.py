from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

_COUNTERS = {
    "files_scanned": "Media files found by the scanner",
    "files_skipped": "Files skipped as unsupported or already exported",
    "files_done": "Files finalized without error",
    "files_failed": "Files finalized as failed",
    "frames_decoded": "Frames decoded from media",
    "frames_preprocessed": "Frames letterboxed into tensors",
    "frames_inferred": "Frames that went through a model session",
    "frames_failed": "Frames whose batch failed inference",
    "batches_dispatched": "Batches sent to device workers",
    "detections": "Detections kept after postprocessing",
}


@dataclass
class MetricsSnapshot:
    elapsed_seconds: float
    counts: dict[str, int]
    in_flight: dict[str, int] = field(default_factory=dict)
    peak_in_flight: dict[str, int] = field(default_factory=dict)

    @property
    def fps_infer(self) -> float:
        return self.counts.get("frames_inferred", 0) / max(1e-6, self.elapsed_seconds)


class RuntimeMetrics:
    """Progress counters shared by every stage thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start = time.monotonic()
        self._counts = {name: 0 for name in _COUNTERS}
        self._in_flight: dict[str, int] = {}
        self._peak_in_flight: dict[str, int] = {}

        self._prometheus_started = False
        self._prometheus_counters = None
        self._prometheus_in_flight = None

    def enable_prometheus(self, host: str, port: int) -> bool:
        try:
            from prometheus_client import Counter, Gauge, start_http_server
        except ImportError:
            return False

        if self._prometheus_started:
            return True

        start_http_server(port, addr=host)
        self._prometheus_started = True
        self._prometheus_counters = {
            name: Counter(f"tds_{name}_total", description) for name, description in _COUNTERS.items()
        }
        self._prometheus_in_flight = Gauge(
            "tds_device_in_flight_batches", "Batches currently running per device", ["device"]
        )
        return True

    def add(self, name: str, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + count
            if self._prometheus_counters and name in self._prometheus_counters:
                self._prometheus_counters[name].inc(count)

    def mark_scanned(self) -> None:
        self.add("files_scanned")

    def mark_skipped(self, count: int = 1) -> None:
        self.add("files_skipped", count)

    def mark_file(self, failed: bool) -> None:
        self.add("files_failed" if failed else "files_done")

    def mark_decoded(self) -> None:
        self.add("frames_decoded")

    def mark_preprocessed(self) -> None:
        self.add("frames_preprocessed")

    def mark_batch(self, frames: int, failed: bool) -> None:
        self.add("batches_dispatched")
        self.add("frames_failed" if failed else "frames_inferred", frames)

    def add_detections(self, count: int) -> None:
        self.add("detections", count)

    def set_in_flight(self, device_id: str, count: int) -> None:
        with self._lock:
            self._in_flight[device_id] = count
            self._peak_in_flight[device_id] = max(self._peak_in_flight.get(device_id, 0), count)
            if self._prometheus_in_flight is not None:
                self._prometheus_in_flight.labels(device=device_id).set(count)

    def count(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                elapsed_seconds=max(1e-6, time.monotonic() - self._start),
                counts=dict(self._counts),
                in_flight=dict(self._in_flight),
                peak_in_flight=dict(self._peak_in_flight),
            )

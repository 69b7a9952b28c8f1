from __future__ import annotations

import logging
import threading
from typing import Iterator

from tds.monitoring.metrics import RuntimeMetrics
from tds.pipeline.channel import Channel, ChannelClosed, ChannelTimeout
from tds.types import Batch, PreprocessedFrame


class Batcher:
    """Groups frames into batches of `capacity`.

    A partial batch goes out once no frame arrived for `idle_timeout` seconds,
    and at end of stream.
    """

    def __init__(
        self,
        source: Channel[PreprocessedFrame],
        capacity: int,
        idle_timeout: float = 0.1,
    ) -> None:
        if capacity < 1:
            raise ValueError("batch capacity must be >= 1")
        self._source = source
        self.capacity = capacity
        self.idle_timeout = max(0.001, idle_timeout)

    def batches(self) -> Iterator[list[PreprocessedFrame]]:
        pending: list[PreprocessedFrame] = []
        while True:
            try:
                frame = self._source.get(timeout=self.idle_timeout if pending else None)
            except ChannelTimeout:
                yield pending
                pending = []
                continue
            except ChannelClosed:
                if pending:
                    yield pending
                return

            if pending and frame.tensor.shape != pending[0].tensor.shape:
                yield pending
                pending = []
            pending.append(frame)
            if len(pending) >= self.capacity:
                yield pending
                pending = []


class DeviceSlots:
    """In-flight batch accounting per device, bounded by each device's worker count."""

    def __init__(self, workers: dict[str, int], metrics: RuntimeMetrics | None = None) -> None:
        if not workers:
            raise ValueError("at least one device is required")
        self._workers = {device_id: max(1, count) for device_id, count in workers.items()}
        self._order = list(self._workers)
        self._in_flight = {device_id: 0 for device_id in self._workers}
        self._peak = {device_id: 0 for device_id in self._workers}
        self._metrics = metrics
        self._cond = threading.Condition()
        self._closed = False

    def _pick(self) -> str | None:
        best: str | None = None
        best_load = 0.0
        for device_id in self._order:
            used = self._in_flight[device_id]
            capacity = self._workers[device_id]
            if used >= capacity:
                continue
            load = used / capacity
            if best is None or load < best_load:
                best = device_id
                best_load = load
        return best

    def acquire(self, timeout: float | None = None) -> str:
        """Block until some device has a free slot and take the least-busy one."""
        with self._cond:
            if self._closed:
                raise ChannelClosed("device slots")
            device_id = self._pick()
            while device_id is None:
                if not self._cond.wait(timeout):
                    raise TimeoutError("no device slot became free")
                if self._closed:
                    raise ChannelClosed("device slots")
                device_id = self._pick()
            self._in_flight[device_id] += 1
            count = self._in_flight[device_id]
            self._peak[device_id] = max(self._peak[device_id], count)
        if self._metrics is not None:
            self._metrics.set_in_flight(device_id, count)
        return device_id

    def release(self, device_id: str) -> None:
        with self._cond:
            if self._in_flight[device_id] <= 0:
                raise RuntimeError(f"release without acquire on {device_id}")
            self._in_flight[device_id] -= 1
            count = self._in_flight[device_id]
            self._cond.notify_all()
        if self._metrics is not None:
            self._metrics.set_in_flight(device_id, count)

    def close(self) -> None:
        """Wake blocked `acquire` calls and make them raise `ChannelClosed`."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def in_flight(self, device_id: str) -> int:
        with self._cond:
            return self._in_flight[device_id]

    def peaks(self) -> dict[str, int]:
        with self._cond:
            return dict(self._peak)


class BatchDispatcher:
    """Batches preprocessed frames and routes each batch to a device with a free worker."""

    def __init__(
        self,
        tensors: Channel[PreprocessedFrame],
        inboxes: dict[str, Channel[Batch]],
        slots: DeviceSlots,
        capacity: int,
        idle_timeout: float = 0.1,
        metrics: RuntimeMetrics | None = None,
    ) -> None:
        self._batcher = Batcher(tensors, capacity=capacity, idle_timeout=idle_timeout)
        self._inboxes = inboxes
        self._slots = slots
        self._metrics = metrics
        self._logger = logging.getLogger("tds.dispatch")
        self.dispatched = 0

    def run(self) -> None:
        for frames in self._batcher.batches():
            device_id = self._slots.acquire()
            batch = Batch(batch_id=self.dispatched, device_id=device_id, frames=frames)
            try:
                self._inboxes[device_id].put(batch)
            except ChannelClosed:
                self._slots.release(device_id)
                raise
            self._logger.debug(
                "batch dispatched batch_id=%d device=%s size=%d",
                batch.batch_id,
                device_id,
                len(batch),
            )
            self.dispatched += 1

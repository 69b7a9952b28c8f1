from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tds.monitoring.metrics import RuntimeMetrics
from tds.pipeline.channel import Channel
from tds.types import FileResult, FrameResult, ItemSealed, ItemStatus, MediaItem

BLANK_LABEL = "blank"


def file_label(frames: list[FrameResult]) -> str:
    """Label of the lowest class id seen anywhere in the file."""
    best = None
    for frame in frames:
        for detection in frame.detections:
            if best is None or detection.class_id < best.class_id:
                best = detection
    return best.label if best is not None else BLANK_LABEL


@dataclass
class _Pending:
    item: MediaItem | None = None
    expected: int | None = None
    frames: dict[int, FrameResult] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.item is not None and self.expected is not None and len(self.frames) >= self.expected


class ResultAggregator:
    """Reassembles frame results into file results and releases them in scan order."""

    def __init__(self, metrics: RuntimeMetrics | None = None) -> None:
        self._pending: dict[int, _Pending] = {}
        self._ready: dict[int, FileResult] = {}
        self._next_id = 0
        self._metrics = metrics or RuntimeMetrics()
        self._logger = logging.getLogger("tds.aggregate")

    def add(self, record: FrameResult | ItemSealed) -> list[FileResult]:
        if isinstance(record, ItemSealed):
            media_id = record.item.media_id
            pending = self._pending.setdefault(media_id, _Pending())
            pending.item = record.item
            pending.expected = record.frame_count
        else:
            media_id = record.media_id
            pending = self._pending.setdefault(media_id, _Pending())
            if record.frame_index in pending.frames:
                self._logger.warning(
                    "duplicate frame result media_id=%d frame=%d", media_id, record.frame_index
                )
            pending.frames[record.frame_index] = record

        if pending.complete:
            self._finalize(media_id)
        return self._release()

    def _finalize(self, media_id: int, reason: str | None = None) -> None:
        pending = self._pending.pop(media_id)
        item = pending.item
        assert item is not None
        frames = [pending.frames[index] for index in sorted(pending.frames)]
        for frame in frames:
            if frame.error:
                item.mark_failed(frame.error)
                break
        if reason:
            item.mark_failed(reason)
        item.mark_done()
        result = FileResult(item=item, frames=frames, label=file_label(frames))
        self._ready[media_id] = result
        self._metrics.mark_file(failed=item.status is ItemStatus.FAILED)

    def _release(self) -> list[FileResult]:
        released: list[FileResult] = []
        while self._next_id in self._ready:
            released.append(self._ready.pop(self._next_id))
            self._next_id += 1
        return released

    def finish(self) -> list[FileResult]:
        """End of stream: finalize whatever is left, in scan order."""
        for media_id in sorted(self._pending):
            pending = self._pending[media_id]
            if pending.item is None:
                self._logger.warning(
                    "dropping frames of unsealed item media_id=%d frames=%d",
                    media_id,
                    len(pending.frames),
                )
                del self._pending[media_id]
                continue
            self._finalize(
                media_id,
                reason=f"incomplete: {len(pending.frames)} of {pending.expected} frames finished",
            )

        released: list[FileResult] = []
        for media_id in sorted(self._ready):
            released.append(self._ready.pop(media_id))
        if released:
            self._next_id = released[-1].item.media_id + 1
        return released

    def run(self, inbox: Channel[Any], outbox: Channel[FileResult]) -> None:
        for record in inbox:
            for result in self.add(record):
                outbox.put(result)
        for result in self.finish():
            outbox.put(result)

from __future__ import annotations

import logging
import threading
from typing import Any

from tds.errors import MediaError
from tds.io.ingest.images import ImageDecoder
from tds.io.ingest.video import FfmpegVideoDecoder
from tds.monitoring.metrics import RuntimeMetrics
from tds.pipeline.channel import Channel, ChannelClosed
from tds.types import Frame, ItemSealed, MediaItem, MediaKind


class FrameSource:
    """Turns scanned media items into frames.

    Every item is sealed exactly once on the aggregator channel, carrying the
    number of frames that actually went downstream.
    """

    def __init__(
        self,
        items: Channel[MediaItem],
        frames: Channel[Frame],
        seals: Channel[Any],
        image_decoder: ImageDecoder,
        video_decoder: FfmpegVideoDecoder,
        video_concurrency: int = 2,
        metrics: RuntimeMetrics | None = None,
    ) -> None:
        self._items = items
        self._frames = frames
        self._seals = seals
        self._image_decoder = image_decoder
        self._video_decoder = video_decoder
        self._video_slots = threading.BoundedSemaphore(max(1, video_concurrency))
        self._metrics = metrics or RuntimeMetrics()
        self._logger = logging.getLogger("tds.frames")

    def run(self) -> None:
        for item in self._items:
            self.process(item)

    def process(self, item: MediaItem) -> int:
        emitted = 0
        try:
            if item.kind is MediaKind.VIDEO:
                with self._video_slots:
                    emitted = self._emit(self._video_decoder.frames(item), item)
            else:
                emitted = self._emit(self._image_decoder.frames(item), item)
        except _PartialEmit as partial:
            emitted = partial.emitted
            item.mark_failed(str(partial.cause))
            if isinstance(partial.cause, MediaError):
                self._logger.warning("media failed path=%s error=%s", item.path, partial.cause)
            else:
                self._logger.error(
                    "media failed path=%s error=%s",
                    item.path,
                    partial.cause,
                    exc_info=partial.cause,
                )
        self._seals.put(ItemSealed(item=item, frame_count=emitted))
        return emitted

    def _emit(self, frames, item: MediaItem) -> int:
        emitted = 0
        try:
            for frame in frames:
                self._frames.put(frame)
                emitted += 1
                self._metrics.mark_decoded()
        except ChannelClosed:
            raise
        except Exception as exc:
            raise _PartialEmit(emitted, exc) from exc
        finally:
            close = getattr(frames, "close", None)
            if close is not None:
                close()
        return emitted


class _PartialEmit(Exception):
    def __init__(self, emitted: int, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.emitted = emitted
        self.cause = cause

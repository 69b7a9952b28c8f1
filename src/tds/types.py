from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ItemStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MediaItem:
    """One scanned file. `media_id` is its position in scan order."""

    media_id: int
    path: Path
    kind: MediaKind
    timestamp: datetime | None = None
    status: ItemStatus = ItemStatus.PENDING
    reason: str | None = None

    def mark_failed(self, reason: str) -> None:
        # First failure wins.
        if self.status is ItemStatus.FAILED:
            return
        self.status = ItemStatus.FAILED
        self.reason = reason

    def mark_done(self) -> None:
        if self.status is ItemStatus.PENDING:
            self.status = ItemStatus.DONE


@dataclass
class Frame:
    """Raw decoded frame (HxWx3 uint8, BGR) belonging to one media item."""

    media_id: int
    frame_index: int
    pixels: np.ndarray
    width: int
    height: int


@dataclass(frozen=True)
class LetterboxTransform:
    scale: float
    pad_x: int
    pad_y: int
    src_width: int
    src_height: int
    dst_width: int
    dst_height: int

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError(f"letterbox scale must be positive, got {self.scale}")

    def forward_point(self, x: float, y: float) -> tuple[float, float]:
        return x * self.scale + self.pad_x, y * self.scale + self.pad_y

    def invert_point(self, x: float, y: float) -> tuple[float, float]:
        return (x - self.pad_x) / self.scale, (y - self.pad_y) / self.scale

    def invert_box(
        self,
        x1: float,
        y1: float,
        x2: float,
        y2: float,
        clip: bool = True,
    ) -> tuple[float, float, float, float]:
        ox1, oy1 = self.invert_point(x1, y1)
        ox2, oy2 = self.invert_point(x2, y2)
        if clip:
            ox1 = min(max(ox1, 0.0), float(self.src_width))
            ox2 = min(max(ox2, 0.0), float(self.src_width))
            oy1 = min(max(oy1, 0.0), float(self.src_height))
            oy2 = min(max(oy2, 0.0), float(self.src_height))
        return ox1, oy1, ox2, oy2


@dataclass
class PreprocessedFrame:
    media_id: int
    frame_index: int
    tensor: np.ndarray
    transform: LetterboxTransform


@dataclass
class Batch:
    """Ordered group of preprocessed frames bound to one device."""

    batch_id: int
    device_id: str
    frames: list[PreprocessedFrame]

    def __post_init__(self) -> None:
        if not self.frames:
            raise ValueError("batch must contain at least one frame")
        shape = self.frames[0].tensor.shape
        for frame in self.frames[1:]:
            if frame.tensor.shape != shape:
                raise ValueError(
                    f"batch {self.batch_id} mixes tensor shapes {shape} and {frame.tensor.shape}"
                )

    def __len__(self) -> int:
        return len(self.frames)

    def stack(self) -> np.ndarray:
        return np.ascontiguousarray(np.stack([frame.tensor for frame in self.frames]))


@dataclass
class DetectionRaw:
    """Raw model outputs for one frame, sliced out of its batch."""

    media_id: int
    frame_index: int
    transform: LetterboxTransform
    outputs: list[np.ndarray] = field(default_factory=list)
    error: str | None = None


@dataclass
class Detection:
    """Detection in original-frame pixel coordinates."""

    class_id: int
    label: str
    confidence: float
    x1: float
    y1: float
    x2: float
    y2: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "class_id": self.class_id,
            "confidence": round(float(self.confidence), 4),
            "x_min": round(float(self.x1), 2),
            "y_min": round(float(self.y1), 2),
            "x_max": round(float(self.x2), 2),
            "y_max": round(float(self.y2), 2),
        }


@dataclass
class FrameResult:
    media_id: int
    frame_index: int
    detections: list[Detection] = field(default_factory=list)
    error: str | None = None


@dataclass
class ItemSealed:
    """Sent by the frame source once an item will produce no more frames."""

    item: MediaItem
    frame_count: int


@dataclass
class FileResult:
    item: MediaItem
    frames: list[FrameResult] = field(default_factory=list)
    label: str = "blank"

    @property
    def detection_count(self) -> int:
        return sum(len(frame.detections) for frame in self.frames)


@dataclass
class ExecutionProviderInfo:
    device_id: str
    backends: list[str]
    probed: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "probed": self.probed,
            "backends": list(self.backends),
        }

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any

import cv2
import numpy as np

from tds.detector.models.model_spec import ModelSpec
from tds.monitoring.metrics import RuntimeMetrics
from tds.pipeline.channel import Channel
from tds.types import Frame, FrameResult, LetterboxTransform, PreprocessedFrame


class Interpolation(str, Enum):
    NEAREST = "nearest"
    LINEAR = "linear"
    CUBIC = "cubic"
    AREA = "area"
    LANCZOS = "lanczos"

    @property
    def cv2_flag(self) -> int:
        return {
            Interpolation.NEAREST: cv2.INTER_NEAREST,
            Interpolation.LINEAR: cv2.INTER_LINEAR,
            Interpolation.CUBIC: cv2.INTER_CUBIC,
            Interpolation.AREA: cv2.INTER_AREA,
            Interpolation.LANCZOS: cv2.INTER_LANCZOS4,
        }[self]


def resize_with_pad(
    pixels: np.ndarray,
    target_width: int,
    target_height: int,
    algorithm: Interpolation = Interpolation.NEAREST,
    pad_value: int = 114,
) -> tuple[np.ndarray, LetterboxTransform]:
    """Aspect-preserving resize into a fixed canvas, centred with constant padding."""
    src_height, src_width = pixels.shape[:2]
    if src_width <= 0 or src_height <= 0:
        raise ValueError(f"cannot letterbox an empty frame {pixels.shape}")

    scale = min(target_width / src_width, target_height / src_height)
    new_width = min(target_width, max(1, int(round(src_width * scale))))
    new_height = min(target_height, max(1, int(round(src_height * scale))))

    if (new_width, new_height) != (src_width, src_height):
        resized = cv2.resize(pixels, (new_width, new_height), interpolation=algorithm.cv2_flag)
    else:
        resized = pixels

    pad_x = (target_width - new_width) // 2
    pad_y = (target_height - new_height) // 2
    canvas = np.full((target_height, target_width, 3), pad_value, dtype=np.uint8)
    canvas[pad_y : pad_y + new_height, pad_x : pad_x + new_width] = resized

    transform = LetterboxTransform(
        scale=scale,
        pad_x=pad_x,
        pad_y=pad_y,
        src_width=src_width,
        src_height=src_height,
        dst_width=target_width,
        dst_height=target_height,
    )
    return canvas, transform


def to_tensor(image: np.ndarray, spec: ModelSpec) -> np.ndarray:
    if spec.channel_order == "rgb":
        image = image[..., ::-1]
    tensor = image.astype(np.float32) / float(spec.pixel_scale)
    if spec.mean != (0.0, 0.0, 0.0) or spec.std != (1.0, 1.0, 1.0):
        tensor = (tensor - np.asarray(spec.mean, dtype=np.float32)) / np.asarray(
            spec.std, dtype=np.float32
        )
    if spec.layout == "nchw":
        tensor = np.transpose(tensor, (2, 0, 1))
    return np.ascontiguousarray(tensor, dtype=np.float32)


class Preprocessor:
    """Letterboxes decoded frames into model input tensors."""

    def __init__(
        self,
        spec: ModelSpec,
        frames: Channel[Frame],
        tensors: Channel[PreprocessedFrame],
        results: Channel[Any] | None = None,
        interpolation: Interpolation = Interpolation.NEAREST,
        metrics: RuntimeMetrics | None = None,
    ) -> None:
        self._spec = spec
        self._frames = frames
        self._tensors = tensors
        self._results = results
        self._interpolation = interpolation
        self._metrics = metrics or RuntimeMetrics()
        self._logger = logging.getLogger("tds.preprocess")

    @staticmethod
    def default_workers(configured: int = 0) -> int:
        if configured > 0:
            return configured
        return max(1, os.cpu_count() or 1)

    def prepare(self, frame: Frame) -> PreprocessedFrame:
        image, transform = resize_with_pad(
            frame.pixels,
            self._spec.input_width,
            self._spec.input_height,
            algorithm=self._interpolation,
            pad_value=self._spec.pad_value,
        )
        return PreprocessedFrame(
            media_id=frame.media_id,
            frame_index=frame.frame_index,
            tensor=to_tensor(image, self._spec),
            transform=transform,
        )

    def run(self) -> None:
        for frame in self._frames:
            try:
                prepared = self.prepare(frame)
            except (cv2.error, ValueError) as exc:
                self._logger.warning(
                    "preprocess failed media_id=%d frame=%d error=%s",
                    frame.media_id,
                    frame.frame_index,
                    exc,
                )
                if self._results is not None:
                    self._results.put(
                        FrameResult(
                            media_id=frame.media_id,
                            frame_index=frame.frame_index,
                            error=f"preprocess failed: {exc}",
                        )
                    )
                continue
            self._tensors.put(prepared)
            self._metrics.mark_preprocessed()

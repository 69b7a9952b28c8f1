from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterator

import cv2
import numpy as np

from tds.errors import DecodeError, MediaReadError
from tds.types import Frame, MediaItem

logger = logging.getLogger("tds.frames")


def decode_with_pillow(data: np.ndarray, path: Path) -> np.ndarray | None:
    """Second decoder for files OpenCV rejects. Returns BGR pixels or None."""
    from PIL import Image, ImageOps

    try:
        with Image.open(io.BytesIO(data.tobytes())) as image:
            image = ImageOps.exif_transpose(image)
            rgb = np.asarray(image.convert("RGB"))
    except (OSError, EOFError, ValueError, Image.DecompressionBombError) as exc:
        logger.debug("pillow decode failed path=%s error=%s", path, exc)
        return None
    return np.ascontiguousarray(rgb[..., ::-1])


class ImageDecoder:
    """Decodes a still image into exactly one BGR frame."""

    def frames(self, item: MediaItem) -> Iterator[Frame]:
        try:
            data = np.fromfile(str(item.path), dtype=np.uint8)
        except OSError as exc:
            raise MediaReadError(f"cannot read {item.path}: {exc}") from exc
        if data.size == 0:
            raise DecodeError(f"empty image file {item.path}")

        pixels = cv2.imdecode(data, cv2.IMREAD_COLOR)
        if pixels is None:
            pixels = decode_with_pillow(data, item.path)
            if pixels is None:
                raise DecodeError(f"cannot decode image {item.path}")
            logger.debug("decoded with pillow fallback path=%s", item.path)

        height, width = pixels.shape[:2]
        yield Frame(
            media_id=item.media_id,
            frame_index=0,
            pixels=pixels,
            width=int(width),
            height=int(height),
        )

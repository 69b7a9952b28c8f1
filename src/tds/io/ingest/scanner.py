from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from tds.types import MediaItem, MediaKind

_EXIF_DATETIME_ORIGINAL = 0x9003
_EXIF_DATETIME = 0x0132
_EXIF_IFD = 0x8769
_EXIF_FORMAT = "%Y:%m:%d %H:%M:%S"

logger = logging.getLogger("tds.scanner")


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def image_timestamp(path: Path) -> datetime | None:
    """Capture time from EXIF DateTimeOriginal, falling back to the DateTime tag."""
    try:
        from PIL import Image

        with Image.open(path) as image:
            exif = image.getexif()
            raw = exif.get_ifd(_EXIF_IFD).get(_EXIF_DATETIME_ORIGINAL) or exif.get(_EXIF_DATETIME)
    except Exception as exc:
        logger.debug("exif unreadable path=%s error=%s", path, exc)
        return None
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw).strip().rstrip("\x00"), _EXIF_FORMAT)
    except ValueError:
        return None


def video_timestamp(path: Path, filesystem_fallback: bool = False) -> datetime | None:
    """Container creation_time, optionally falling back to min(mtime, ctime)."""
    try:
        import av

        with av.open(str(path)) as container:
            raw = container.metadata.get("creation_time")
            if raw is None and container.streams.video:
                raw = container.streams.video[0].metadata.get("creation_time")
        if raw:
            return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except Exception as exc:
        logger.debug("container metadata unreadable path=%s error=%s", path, exc)

    if not filesystem_fallback:
        return None
    try:
        stat = path.stat()
    except OSError:
        return None
    return datetime.fromtimestamp(min(stat.st_mtime, stat.st_ctime))


class MediaScanner:
    """Walks a directory tree and yields supported media files in sorted order."""

    def __init__(
        self,
        root: str | Path,
        recursive: bool = True,
        include_hidden: bool = False,
        image_extensions: Iterable[str] = (".jpg", ".jpeg", ".png"),
        video_extensions: Iterable[str] = (".mp4", ".avi", ".mkv", ".mov"),
        skip_paths: Iterable[str] | None = None,
        timestamp_fallback: str = "none",
        read_timestamps: bool = True,
    ) -> None:
        self.root = Path(root)
        self.recursive = recursive
        self.include_hidden = include_hidden
        self.image_extensions = {ext.lower() for ext in image_extensions}
        self.video_extensions = {ext.lower() for ext in video_extensions}
        self.skip_paths = {str(Path(p).resolve()) for p in (skip_paths or [])}
        self.timestamp_fallback = timestamp_fallback
        self.read_timestamps = read_timestamps
        self.skipped = 0
        self.resumed = 0

    def classify(self, path: Path) -> MediaKind | None:
        suffix = path.suffix.lower()
        if suffix in self.image_extensions:
            return MediaKind.IMAGE
        if suffix in self.video_extensions:
            return MediaKind.VIDEO
        return None

    def _walk(self) -> Iterator[Path]:
        if self.root.is_file():
            yield self.root
            return
        for dirpath, dirnames, filenames in os.walk(self.root):
            if self.recursive:
                dirnames[:] = sorted(
                    name for name in dirnames if self.include_hidden or not _is_hidden(name)
                )
            else:
                dirnames[:] = []
            for name in sorted(filenames):
                if not self.include_hidden and _is_hidden(name):
                    continue
                yield Path(dirpath) / name

    def _timestamp(self, path: Path, kind: MediaKind) -> datetime | None:
        if not self.read_timestamps:
            return None
        if kind is MediaKind.IMAGE:
            return image_timestamp(path)
        return video_timestamp(path, filesystem_fallback=self.timestamp_fallback == "filesystem")

    def scan(self) -> Iterator[MediaItem]:
        """Fresh lazy pass over the tree. Every call restarts numbering at 0."""
        if not self.root.exists():
            raise FileNotFoundError(f"Media root not found: {self.root}")
        self.skipped = 0
        self.resumed = 0
        return self._scan()

    def _scan(self) -> Iterator[MediaItem]:
        media_id = 0
        for path in self._walk():
            kind = self.classify(path)
            if kind is None:
                self.skipped += 1
                logger.debug("skip unsupported path=%s", path)
                continue
            if self.skip_paths and str(path.resolve()) in self.skip_paths:
                self.resumed += 1
                logger.debug("skip already exported path=%s", path)
                continue
            yield MediaItem(
                media_id=media_id,
                path=path,
                kind=kind,
                timestamp=self._timestamp(path, kind),
            )
            media_id += 1

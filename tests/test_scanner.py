from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from PIL import Image

from tds.io.ingest.scanner import MediaScanner, image_timestamp, video_timestamp
from tds.types import MediaKind


def _touch(path: Path, data: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


class MediaScannerTests(unittest.TestCase):
    def test_sorted_recursive_scan_skips_unsupported_and_hidden(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _touch(root / "b.JPG")
            _touch(root / "a.mp4")
            _touch(root / "notes.txt")
            _touch(root / ".hidden.jpg")
            _touch(root / ".cache" / "c.jpg")
            _touch(root / "site2" / "d.png")

            scanner = MediaScanner(root, read_timestamps=False)
            items = list(scanner.scan())

            self.assertEqual([item.path.relative_to(root).as_posix() for item in items], ["a.mp4", "b.JPG", "site2/d.png"])
            self.assertEqual([item.media_id for item in items], [0, 1, 2])
            self.assertEqual([item.kind for item in items], [MediaKind.VIDEO, MediaKind.IMAGE, MediaKind.IMAGE])
            self.assertEqual(scanner.skipped, 1)

    def test_scan_is_restartable_and_deterministic(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            for name in ("z.jpg", "m.jpg", "a.jpg"):
                _touch(root / name)
            scanner = MediaScanner(root, read_timestamps=False)

            first = [(item.media_id, item.path) for item in scanner.scan()]
            second = [(item.media_id, item.path) for item in scanner.scan()]

            self.assertEqual(first, second)

    def test_non_recursive_scan_stays_at_top_level(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _touch(root / "top.jpg")
            _touch(root / "nested" / "deep.jpg")

            items = list(MediaScanner(root, recursive=False, read_timestamps=False).scan())

            self.assertEqual([item.path.name for item in items], ["top.jpg"])

    def test_already_exported_paths_are_skipped_without_gaps(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            first = _touch(root / "1.jpg")
            _touch(root / "2.jpg")

            scanner = MediaScanner(root, skip_paths=[str(first)], read_timestamps=False)
            items = list(scanner.scan())

            self.assertEqual([(item.media_id, item.path.name) for item in items], [(0, "2.jpg")])
            self.assertEqual(scanner.resumed, 1)

    def test_missing_root_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(FileNotFoundError):
                MediaScanner(Path(tmpdir) / "missing").scan()


class TimestampTests(unittest.TestCase):
    def test_exif_datetime_original_is_preferred(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "trap.jpg"
            exif = Image.Exif()
            exif[0x0132] = "2020:01:01 00:00:00"
            exif[0x8769] = {0x9003: "2023:06:14 05:42:10"}
            Image.new("RGB", (8, 8)).save(path, exif=exif)

            self.assertEqual(image_timestamp(path), datetime(2023, 6, 14, 5, 42, 10))

    def test_exif_datetime_is_used_without_datetime_original(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "trap.jpg"
            exif = Image.Exif()
            exif[0x0132] = "2021:11:02 23:15:00"
            Image.new("RGB", (8, 8)).save(path, exif=exif)

            self.assertEqual(image_timestamp(path), datetime(2021, 11, 2, 23, 15, 0))

    def test_image_without_exif_has_no_timestamp(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plain.png"
            Image.new("RGB", (8, 8)).save(path)

            self.assertIsNone(image_timestamp(path))

    def test_unreadable_video_uses_filesystem_fallback_only_when_asked(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = _touch(Path(tmpdir) / "clip.mp4", b"not a container")

            self.assertIsNone(video_timestamp(path))
            self.assertIsInstance(video_timestamp(path, filesystem_fallback=True), datetime)


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from tds.config.loader import load_runtime_config
from tds.errors import ConfigError


class ConfigLoaderTests(unittest.TestCase):
    def test_defaults_without_config_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = load_runtime_config(repo_root=Path(tmpdir))

            self.assertEqual(config.devices, {"cpu": 1})
            self.assertEqual(config.export.format, "csv")
            self.assertIsNone(config.media.max_frames)
            self.assertEqual(config.pipeline.batch_size, 2)

    def test_file_then_cli_overrides_and_devices_replace_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            config_file = root / "tds.json"
            config_file.write_text(
                """
{
  "devices": {"cuda:0": 2, "cpu": 1},
  "media": {"max_frames": 5, "image_extensions": ["JPG", ".png"]},
  "pipeline": {"batch_size": 8},
  "model": {"path": "models/md.onnx"}
}
""".strip(),
                encoding="utf-8",
            )

            config = load_runtime_config(
                repo_root=root,
                config_path=str(config_file),
                cli_overrides={"pipeline": {"batch_size": 4}, "export": {"format": "json"}},
            )

            self.assertEqual(config.devices, {"gpu:0": 2, "cpu": 1})
            self.assertEqual(config.media.max_frames, 5)
            self.assertEqual(config.media.image_extensions, [".jpg", ".png"])
            self.assertEqual(config.pipeline.batch_size, 4)
            self.assertEqual(config.export.format, "json")
            self.assertEqual(config.model.path, str((root / "models" / "md.onnx").resolve()))

    def test_cli_devices_replace_file_devices(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "tds.json").write_text('{"devices": {"gpu:0": 2}}', encoding="utf-8")

            config = load_runtime_config(repo_root=root, cli_overrides={"devices": {"cpu": 3}})

            self.assertEqual(config.devices, {"cpu": 3})

    def test_invalid_values_raise_config_error(self) -> None:
        cases = [
            {"devices": {"tpu:0": 1}},
            {"devices": {"cpu": 0}},
            {"pipeline": {"batch_size": 0}},
            {"model": {"confidence": 1.5}},
            {"export": {"format": "xml"}},
            {"media": {"hwaccel": "warp"}},
        ]
        with tempfile.TemporaryDirectory() as tmpdir:
            for overrides in cases:
                with self.subTest(overrides=overrides):
                    with self.assertRaises(ConfigError):
                        load_runtime_config(repo_root=Path(tmpdir), cli_overrides=overrides)

    def test_missing_config_file_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(ConfigError):
                load_runtime_config(repo_root=Path(tmpdir), config_path=str(Path(tmpdir) / "nope.toml"))


if __name__ == "__main__":
    unittest.main()

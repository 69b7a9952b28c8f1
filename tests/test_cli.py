from __future__ import annotations

import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

from tds.cli import _build_parser, main
from tds.commands.run import build_run_overrides, parse_device_args
from tds.errors import ConfigError, ExportError
from tds.pipeline.runtime import RunSummary


class ParseArgsTests(unittest.TestCase):
    def test_device_args_map_to_worker_counts(self) -> None:
        self.assertEqual(parse_device_args(["gpu:0=2", "cpu"]), {"gpu:0": 2, "cpu": 1})
        self.assertIsNone(parse_device_args(None))
        with self.assertRaises(ConfigError):
            parse_device_args(["gpu:0=many"])

    def test_overrides_drop_unset_options(self) -> None:
        args = _build_parser().parse_args(
            ["run", "--folder", "/traps", "--batch", "4", "--iframe-only", "--device", "cpu=3", "--export", "json"]
        )

        overrides = build_run_overrides(args)

        self.assertEqual(
            overrides,
            {
                "devices": {"cpu": 3},
                "media": {"root": "/traps", "iframe_only": True},
                "pipeline": {"batch_size": 4},
                "export": {"format": "json"},
            },
        )


class RunCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.model = self.tmp / "md.onnx"
        self.model.write_bytes(b"onnx")
        self.cwd = mock.patch("tds.cli.Path.cwd", return_value=self.tmp)
        self.cwd.start()

    def tearDown(self) -> None:
        self.cwd.stop()
        self._tmp.cleanup()

    def _argv(self, *extra: str) -> list[str]:
        return [
            "run",
            "--folder",
            str(self.tmp),
            "--model",
            str(self.model),
            "--quiet",
            *extra,
        ]

    def test_missing_model_cannot_start(self) -> None:
        argv = ["run", "--folder", str(self.tmp), "--model", str(self.tmp / "missing.onnx"), "--quiet"]

        self.assertEqual(main(argv), 2)

    def test_invalid_option_cannot_start(self) -> None:
        self.assertEqual(main(self._argv("--device", "tpu:0=1")), 2)

    def test_completed_run_prints_report(self) -> None:
        summary = RunSummary(succeeded=3, export_path="results.csv")
        with mock.patch("tds.pipeline.runtime.BatchRuntime") as runtime:
            runtime.return_value.run.return_value = summary
            stdout = io.StringIO()
            with redirect_stdout(stdout):
                code = main(self._argv())

        self.assertEqual(code, 0)
        self.assertIn("3 succeeded", stdout.getvalue())

    def test_interrupted_run_exits_130(self) -> None:
        with mock.patch("tds.pipeline.runtime.BatchRuntime") as runtime:
            runtime.return_value.run.return_value = RunSummary(interrupted=True)
            with redirect_stdout(io.StringIO()):
                self.assertEqual(main(self._argv()), 130)

    def test_export_failure_exits_1(self) -> None:
        with mock.patch("tds.pipeline.runtime.BatchRuntime") as runtime:
            runtime.return_value.run.side_effect = ExportError("disk full")
            self.assertEqual(main(self._argv()), 1)

    def test_summary_json(self) -> None:
        with mock.patch("tds.pipeline.runtime.BatchRuntime") as runtime:
            runtime.return_value.run.return_value = RunSummary(succeeded=1, failed=1)
            stdout = io.StringIO()
            with redirect_stdout(stdout):
                main(self._argv("--summary-json"))

        payload = json.loads(stdout.getvalue())
        self.assertEqual((payload["succeeded"], payload["failed"]), (1, 1))


class DoctorCommandTests(unittest.TestCase):
    def test_json_report_uses_cached_provider_list(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            cache_dir = root / "providers"
            cache_dir.mkdir()
            (cache_dir / "gpu_0.json").write_text(
                json.dumps(
                    {
                        "device_id": "gpu:0",
                        "probed": True,
                        "backends": ["CUDAExecutionProvider", "CPUExecutionProvider"],
                    }
                ),
                encoding="utf-8",
            )
            config = root / "tds.json"
            config.write_text(json.dumps({"providers": {"cache_dir": str(cache_dir)}}), encoding="utf-8")

            stdout = io.StringIO()
            with mock.patch("tds.cli.Path.cwd", return_value=root), redirect_stdout(stdout):
                code = main(["doctor", "--config", str(config), "--device", "gpu:0", "--json"])

            report = json.loads(stdout.getvalue())
            self.assertEqual(code, 0)
            self.assertEqual(
                report["devices"]["gpu:0"]["backends"],
                ["CUDAExecutionProvider", "CPUExecutionProvider"],
            )
            self.assertIn("numpy", report["modules"])


if __name__ == "__main__":
    unittest.main()

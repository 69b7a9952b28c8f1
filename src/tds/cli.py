from __future__ import annotations

import argparse
from pathlib import Path


def _add_run_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--folder", help="Root directory of images and videos to process")
    parser.add_argument("--config", help="Path to TOML/YAML/JSON config file")
    parser.add_argument("--model-config", help="Declarative model config (input/output layout, labels)")
    parser.add_argument("--model", help="ONNX model path, overrides the model config")
    parser.add_argument("--labels", help="Label file path, one class name per line")
    parser.add_argument(
        "--device",
        action="append",
        default=None,
        metavar="ID=WORKERS",
        help="Inference device and worker count, e.g. cpu=2 or gpu:0=1 (repeatable)",
    )
    parser.add_argument("--batch", type=int, help="Maximum frames per inference batch")
    parser.add_argument("--max-frames", type=int, help="Sample at most N frames per video")
    parser.add_argument("--iframe-only", action="store_true", help="Decode video keyframes only")
    parser.add_argument("--imgsz", type=int, help="Square model input size")
    parser.add_argument("--conf", type=float, help="Confidence threshold")
    parser.add_argument("--iou", type=float, help="NMS IoU threshold")
    parser.add_argument("--export", choices=["csv", "json"], help="Export format")
    parser.add_argument("--output", help="Export file path (default <folder>/tds_results.<format>)")
    parser.add_argument("--resume", action="store_true", help="Skip files already present in the export")
    parser.add_argument("--reprobe", action="store_true", help="Ignore cached execution provider lists")
    parser.add_argument("--media-workers", type=int, help="Concurrent media decode workers")
    parser.add_argument("--ffmpeg", help="ffmpeg binary used for video decoding")
    parser.add_argument(
        "--hwaccel",
        choices=["none", "auto", "cuda", "videotoolbox", "vaapi", "qsv", "d3d11va", "dxva2"],
        help="ffmpeg hardware decoder",
    )

    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Runtime log level")
    parser.add_argument("--quiet", action="store_true", help="Suppress non-warning logs")
    parser.add_argument("--prometheus", action="store_true", help="Enable Prometheus metrics endpoint")
    parser.add_argument("--prometheus-port", type=int, help="Prometheus bind port")
    parser.add_argument("--summary-json", action="store_true", help="Print the final report as JSON")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tds",
        description="trapDetectionSystem batch detection for camera-trap media",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Detect objects in every image and video under a folder")
    _add_run_args(run)

    doctor = subparsers.add_parser("doctor", help="Probe decoders and execution providers")
    doctor.add_argument("--config", help="Optional config file to evaluate")
    doctor.add_argument(
        "--device",
        action="append",
        default=None,
        metavar="ID",
        help="Device to probe, e.g. cpu or gpu:0 (repeatable)",
    )
    doctor.add_argument("--reprobe", action="store_true", help="Ignore cached execution provider lists")
    doctor.add_argument("--json", action="store_true", help="Emit JSON report")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    repo_root = Path.cwd()

    if args.command == "run":
        from tds.commands.run import run_batch

        return run_batch(args, repo_root)
    if args.command == "doctor":
        from tds.commands.doctor import run_doctor

        return run_doctor(args, repo_root)

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

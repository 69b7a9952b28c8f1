from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

from tds.config import load_runtime_config
from tds.errors import ConfigError, ExportError, NoUsableDeviceError
from tds.monitoring import configure_logging

EXIT_OK = 0
EXIT_EXPORT_FAILED = 1
EXIT_NOT_STARTED = 2
EXIT_INTERRUPTED = 130


def _clean_overrides(payload: dict[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, dict):
            nested = _clean_overrides(value)
            if nested:
                cleaned[key] = nested
            continue
        if value is not None:
            cleaned[key] = value
    return cleaned


def parse_device_args(raw_items: list[str] | None) -> dict[str, int] | None:
    """`--device gpu:0=2 --device cpu` into a device id to worker count mapping."""
    if not raw_items:
        return None
    devices: dict[str, int] = {}
    for item in raw_items:
        device_id, sep, workers = item.partition("=")
        device_id = device_id.strip()
        if not device_id:
            raise ConfigError(f"Invalid --device value: {item!r}")
        if not sep:
            devices[device_id] = 1
            continue
        try:
            devices[device_id] = int(workers)
        except ValueError as exc:
            raise ConfigError(f"Invalid worker count in --device {item!r}") from exc
    return devices


def build_run_overrides(args: Any) -> dict[str, Any]:
    overrides = {
        "model": {
            "path": args.model,
            "config_path": args.model_config,
            "labels_path": args.labels,
            "confidence": args.conf,
            "iou": args.iou,
            "imgsz": args.imgsz,
        },
        "devices": parse_device_args(args.device),
        "media": {
            "root": args.folder,
            "max_frames": args.max_frames,
            "iframe_only": (True if args.iframe_only else None),
            "media_workers": args.media_workers,
            "ffmpeg_path": args.ffmpeg,
            "hwaccel": args.hwaccel,
        },
        "pipeline": {
            "batch_size": args.batch,
        },
        "providers": {
            "force_reprobe": (True if args.reprobe else None),
        },
        "export": {
            "format": args.export,
            "path": args.output,
            "resume": (True if args.resume else None),
        },
        "monitoring": {
            "json_logs": (True if args.json_logs else None),
            "log_level": args.log_level,
            "prometheus_enabled": (True if args.prometheus else None),
            "prometheus_port": args.prometheus_port,
        },
    }
    return _clean_overrides(overrides)


def run_batch(args: Any, repo_root: Path) -> int:
    logger = logging.getLogger("tds.run")
    try:
        config = load_runtime_config(
            repo_root=repo_root,
            config_path=args.config,
            cli_overrides=build_run_overrides(args),
        )
    except ConfigError as exc:
        configure_logging(level="INFO")
        logger.error("invalid configuration: %s", exc)
        return EXIT_NOT_STARTED

    if args.quiet:
        config.monitoring.log_level = "WARNING"

    configure_logging(
        level=config.monitoring.log_level,
        json_logs=config.monitoring.json_logs,
    )
    logger.info("starting run with config=%s", config.as_log_context())

    try:
        from tds.detector.models import build_model_spec
        from tds.detector.provider_cache import ProviderCache
        from tds.detector.selector import ExecutionProviderManager, onnxruntime_factory
        from tds.pipeline.runtime import BatchRuntime

        model_spec = build_model_spec(config.model)
        cache_dir = Path(config.providers.cache_dir)
        manager = ExecutionProviderManager(
            ProviderCache(cache_dir),
            backend_factory=onnxruntime_factory(
                intra_op_threads=config.providers.intra_op_threads,
                engine_cache_dir=str(cache_dir / "engines"),
            ),
            force_reprobe=config.providers.force_reprobe,
        )
        summary = BatchRuntime(config, model_spec, manager).run()
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return EXIT_NOT_STARTED
    except NoUsableDeviceError as exc:
        logger.error("no usable inference device: %s", exc)
        return EXIT_NOT_STARTED
    except ModuleNotFoundError as exc:
        logger.error(
            "missing dependency: %s. Install requirements before running.",
            exc.name,
        )
        return EXIT_NOT_STARTED
    except ExportError as exc:
        logger.error("export failed: %s", exc)
        return EXIT_EXPORT_FAILED
    except KeyboardInterrupt:
        logger.error("run aborted")
        return EXIT_INTERRUPTED

    if args.summary_json:
        print(json.dumps(summary.as_dict(), ensure_ascii=True, indent=2))
    else:
        for line in summary.report_lines():
            print(line)
    sys.stdout.flush()
    return EXIT_INTERRUPTED if summary.interrupted else EXIT_OK

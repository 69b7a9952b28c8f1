from __future__ import annotations

import json
import platform
import shutil
import sys
from pathlib import Path
from typing import Any

from tds.commands.run import parse_device_args
from tds.config import load_runtime_config
from tds.detector.provider_cache import ProviderCache
from tds.detector.selector import ExecutionProviderManager
from tds.errors import ConfigError
from tds.io.ingest import probe_decoder_path


def _module_version(name: str) -> str | None:
    try:
        module = __import__(name)
    except ImportError:
        return None
    return getattr(module, "__version__", "installed")


def _available_providers() -> list[str]:
    try:
        import onnxruntime as ort
    except ImportError:
        return []
    return list(ort.get_available_providers())


def runtime_report(
    repo_root: Path,
    config_path: str | None = None,
    devices: dict[str, int] | None = None,
    reprobe: bool = False,
) -> dict[str, Any]:
    overrides = {"devices": devices} if devices else None
    config = load_runtime_config(repo_root=repo_root, config_path=config_path, cli_overrides=overrides)
    decoder = probe_decoder_path(config.media.ffmpeg_path)
    cache = ProviderCache(config.providers.cache_dir)
    manager = ExecutionProviderManager(cache)

    device_reports: dict[str, Any] = {}
    for device_id in config.devices:
        info = manager.resolve(device_id, force=reprobe)
        device_reports[device_id] = {
            "backends": info.backends,
            "cache": str(cache.path_for(device_id)),
        }

    return {
        "platform": {
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
            "python": sys.version.split()[0],
        },
        "modules": {
            "numpy": _module_version("numpy"),
            "opencv": _module_version("cv2"),
            "onnxruntime": _module_version("onnxruntime"),
            "av": _module_version("av"),
            "pillow": _module_version("PIL"),
            "dynaconf": _module_version("dynaconf"),
            "prometheus_client": _module_version("prometheus_client"),
        },
        "tools": {
            "ffmpeg": shutil.which(config.media.ffmpeg_path),
            "ffprobe": shutil.which("ffprobe"),
        },
        "decoder": {
            "selected": decoder.selected_decoder,
            "reason": decoder.reason,
            "available": decoder.available,
            "hwaccel": decoder.hwaccel,
        },
        "onnxruntime_providers": _available_providers(),
        "devices": device_reports,
    }


def _print_report(report: dict[str, Any]) -> None:
    print("tds doctor report")
    print(f"- platform: {report['platform']['system']} {report['platform']['machine']}")
    print(f"- python: {report['platform']['python']}")
    print(f"- ffmpeg: {report['tools']['ffmpeg'] or 'not found'}")
    print(f"- ffprobe: {report['tools']['ffprobe'] or 'not found'}")
    print(f"- decoder: {report['decoder']['selected']} ({report['decoder']['reason']})")
    providers = report["onnxruntime_providers"]
    print(f"- onnxruntime providers: {', '.join(providers) if providers else 'none'}")
    print("- devices:")
    for device_id, payload in report["devices"].items():
        print(f"  - {device_id}: {' > '.join(payload['backends'])}")
        print(f"    cache: {payload['cache']}")
    print("- modules:")
    for name, version in report["modules"].items():
        print(f"  - {name}: {version or 'not installed'}")


def run_doctor(args: Any, repo_root: Path) -> int:
    try:
        report = runtime_report(
            repo_root=repo_root,
            config_path=args.config,
            devices=parse_device_args(args.device),
            reprobe=args.reprobe,
        )
    except ConfigError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(report, ensure_ascii=True, indent=2))
    else:
        _print_report(report)
    return 0

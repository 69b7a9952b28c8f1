from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from tds.config.defaults import DEFAULT_CONFIG
from tds.config.models import (
    DeviceWorkerConfig,
    ExportConfig,
    MediaConfig,
    ModelConfig,
    MonitoringConfig,
    PipelineConfig,
    ProvidersConfig,
    RuntimeConfig,
)
from tds.detector.devices import parse_device_id
from tds.errors import ConfigError
from tds.utils.config_io import deep_merge, load_config_file, lower_keys

_EXPORT_FORMATS = {"csv", "json"}
_HWACCEL_MODES = {"none", "auto", "cuda", "videotoolbox", "vaapi", "qsv", "d3d11va", "dxva2"}
_TIMESTAMP_FALLBACKS = {"none", "filesystem"}
_INTERPOLATIONS = {"nearest", "linear", "cubic", "area", "lanczos"}


def _load_with_dynaconf(config_paths: list[Path]) -> dict[str, Any]:
    try:
        from dynaconf import Dynaconf
    except ImportError:
        return {}

    settings = Dynaconf(
        envvar_prefix="TDS",
        settings_files=[str(path) for path in config_paths if path.exists()],
        merge_enabled=True,
        environments=False,
        load_dotenv=True,
    )
    return lower_keys(settings.as_dict())


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_int(value: Any, name: str, minimum: int = 1) -> int | None:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _optional_float(value: Any, name: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if not 0.0 <= parsed <= 1.0:
        raise ConfigError(f"{name} must be within [0, 1], got {parsed}")
    return parsed


def _choice(value: Any, name: str, allowed: set[str]) -> str:
    text = str(value).strip().lower()
    if text not in allowed:
        raise ConfigError(f"{name} must be one of {sorted(allowed)}, got {value!r}")
    return text


def _extensions(values: Any) -> list[str]:
    out: list[str] = []
    for value in values or []:
        text = str(value).strip().lower()
        if not text:
            continue
        if not text.startswith("."):
            text = "." + text
        out.append(text)
    return out


def _resolve_repo_relative(path_value: str | None, repo_root: Path) -> str | None:
    if not path_value:
        return path_value
    p = Path(path_value).expanduser()
    if p.is_absolute():
        return str(p)
    return str((repo_root / p).resolve())


def normalize_devices(raw: Any) -> DeviceWorkerConfig:
    if not isinstance(raw, dict) or not raw:
        raise ConfigError("devices must be a non-empty mapping of device id to worker count")
    devices: DeviceWorkerConfig = {}
    for key, value in raw.items():
        ref = parse_device_id(str(key))
        workers = _optional_int(value, f"devices.{key}")
        if workers is None:
            raise ConfigError(f"devices.{key} needs a worker count")
        if ref.device_id in devices:
            raise ConfigError(f"Device {ref.device_id} configured twice")
        devices[ref.device_id] = workers
    return devices


def _normalize(data: dict[str, Any], repo_root: Path) -> RuntimeConfig:
    model_data = data.get("model", {})
    media_data = data.get("media", {})
    pipeline_data = data.get("pipeline", {})
    providers_data = data.get("providers", {})
    export_data = data.get("export", {})
    monitoring_data = data.get("monitoring", {})

    return RuntimeConfig(
        model=ModelConfig(
            name=str(model_data.get("name", "megadetector")),
            path=_resolve_repo_relative(model_data.get("path"), repo_root),
            config_path=_resolve_repo_relative(model_data.get("config_path"), repo_root),
            labels_path=_resolve_repo_relative(model_data.get("labels_path"), repo_root),
            confidence=_optional_float(model_data.get("confidence"), "model.confidence"),
            iou=_optional_float(model_data.get("iou"), "model.iou"),
            imgsz=_optional_int(model_data.get("imgsz"), "model.imgsz", minimum=32),
        ),
        devices=normalize_devices(data.get("devices")),
        media=MediaConfig(
            root=media_data.get("root"),
            recursive=_coerce_bool(media_data.get("recursive", True)),
            include_hidden=_coerce_bool(media_data.get("include_hidden", False)),
            image_extensions=_extensions(media_data.get("image_extensions")),
            video_extensions=_extensions(media_data.get("video_extensions")),
            max_frames=_optional_int(media_data.get("max_frames"), "media.max_frames"),
            iframe_only=_coerce_bool(media_data.get("iframe_only", False)),
            media_workers=_optional_int(media_data.get("media_workers", 4), "media.media_workers") or 4,
            video_concurrency=_optional_int(
                media_data.get("video_concurrency", 2), "media.video_concurrency"
            )
            or 2,
            ffmpeg_path=str(media_data.get("ffmpeg_path") or "ffmpeg"),
            hwaccel=_choice(media_data.get("hwaccel", "none"), "media.hwaccel", _HWACCEL_MODES),
            timestamp_fallback=_choice(
                media_data.get("timestamp_fallback", "none"),
                "media.timestamp_fallback",
                _TIMESTAMP_FALLBACKS,
            ),
        ),
        pipeline=PipelineConfig(
            batch_size=_optional_int(pipeline_data.get("batch_size", 2), "pipeline.batch_size") or 2,
            idle_timeout_ms=max(1, int(pipeline_data.get("idle_timeout_ms", 100))),
            frame_queue_size=max(1, int(pipeline_data.get("frame_queue_size", 8))),
            tensor_queue_size=max(0, int(pipeline_data.get("tensor_queue_size", 0))),
            preprocess_workers=max(0, int(pipeline_data.get("preprocess_workers", 0))),
            postprocess_workers=max(1, int(pipeline_data.get("postprocess_workers", 2))),
            interpolation=_choice(
                pipeline_data.get("interpolation", "nearest"),
                "pipeline.interpolation",
                _INTERPOLATIONS,
            ),
        ),
        providers=ProvidersConfig(
            cache_dir=str(Path(str(providers_data.get("cache_dir", "~/.cache/tds/providers"))).expanduser()),
            force_reprobe=_coerce_bool(providers_data.get("force_reprobe", False)),
            intra_op_threads=max(0, int(providers_data.get("intra_op_threads", 0))),
        ),
        export=ExportConfig(
            format=_choice(export_data.get("format", "csv"), "export.format", _EXPORT_FORMATS),
            path=export_data.get("path"),
            resume=_coerce_bool(export_data.get("resume", False)),
        ),
        monitoring=MonitoringConfig(
            json_logs=_coerce_bool(monitoring_data.get("json_logs", False)),
            log_level=str(monitoring_data.get("log_level", "INFO")).upper(),
            stats_interval_seconds=float(monitoring_data.get("stats_interval_seconds", 5.0)),
            prometheus_enabled=_coerce_bool(monitoring_data.get("prometheus_enabled", False)),
            prometheus_host=str(monitoring_data.get("prometheus_host", "0.0.0.0")),
            prometheus_port=int(monitoring_data.get("prometheus_port", 9108)),
        ),
    )


def _default_config_copy() -> dict[str, Any]:
    return json.loads(json.dumps(DEFAULT_CONFIG))


def _apply(merged: dict[str, Any], patch: dict[str, Any]) -> None:
    # The device map is replaced wholesale; merging would keep the default cpu entry.
    patch = dict(patch)
    devices = patch.pop("devices", None)
    deep_merge(merged, patch)
    if devices:
        merged["devices"] = devices


def load_runtime_config(
    repo_root: Path,
    config_path: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> RuntimeConfig:
    config_paths: list[Path] = []
    if config_path:
        config_paths.append(Path(config_path))
    else:
        for name in ("tds.toml", "tds.yaml", "tds.yml", "tds.json"):
            candidate = repo_root / name
            if candidate.exists():
                config_paths.append(candidate)

    for path in config_paths:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

    merged = _default_config_copy()

    dynaconf_data = _load_with_dynaconf(config_paths)
    if dynaconf_data:
        _apply(merged, dynaconf_data)
    else:
        for path in config_paths:
            try:
                _apply(merged, lower_keys(load_config_file(path)))
            except Exception as exc:
                raise ConfigError(f"Unreadable config file {path}: {exc}") from exc

    if cli_overrides:
        _apply(merged, lower_keys(cli_overrides))

    return _normalize(merged, repo_root)

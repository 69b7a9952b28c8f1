from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

# device id -> worker count, e.g. {"cpu": 2, "gpu:0": 1}
DeviceWorkerConfig = Dict[str, int]


@dataclass
class ModelConfig:
    name: str = "megadetector"
    path: str | None = None
    config_path: str | None = None
    labels_path: str | None = None
    confidence: float | None = None
    iou: float | None = None
    imgsz: int | None = None


@dataclass
class MediaConfig:
    root: str | None = None
    recursive: bool = True
    include_hidden: bool = False
    image_extensions: list[str] = field(
        default_factory=lambda: [".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"]
    )
    video_extensions: list[str] = field(
        default_factory=lambda: [".mp4", ".avi", ".mkv", ".mov", ".m4v", ".webm"]
    )
    max_frames: int | None = None
    iframe_only: bool = False
    media_workers: int = 4
    video_concurrency: int = 2
    ffmpeg_path: str = "ffmpeg"
    hwaccel: str = "none"
    timestamp_fallback: str = "none"


@dataclass
class PipelineConfig:
    batch_size: int = 2
    idle_timeout_ms: int = 100
    frame_queue_size: int = 8
    tensor_queue_size: int = 0
    preprocess_workers: int = 0
    postprocess_workers: int = 2
    interpolation: str = "nearest"


@dataclass
class ProvidersConfig:
    cache_dir: str = "~/.cache/tds/providers"
    force_reprobe: bool = False
    intra_op_threads: int = 0


@dataclass
class ExportConfig:
    format: str = "csv"
    path: str | None = None
    resume: bool = False


@dataclass
class MonitoringConfig:
    json_logs: bool = False
    log_level: str = "INFO"
    stats_interval_seconds: float = 5.0
    prometheus_enabled: bool = False
    prometheus_host: str = "0.0.0.0"
    prometheus_port: int = 9108


@dataclass
class RuntimeConfig:
    model: ModelConfig = field(default_factory=ModelConfig)
    devices: DeviceWorkerConfig = field(default_factory=lambda: {"cpu": 1})
    media: MediaConfig = field(default_factory=MediaConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def total_workers(self) -> int:
        return sum(self.devices.values())

    def tensor_queue_size(self) -> int:
        if self.pipeline.tensor_queue_size > 0:
            return self.pipeline.tensor_queue_size
        return max(2, self.pipeline.batch_size * self.total_workers() * 2)

    def as_log_context(self) -> dict[str, Any]:
        return {
            "model": self.model.name,
            "devices": dict(self.devices),
            "batch_size": self.pipeline.batch_size,
            "max_frames": self.media.max_frames,
            "iframe_only": self.media.iframe_only,
            "export_format": self.export.format,
            "resume": self.export.resume,
            "json_logs": self.monitoring.json_logs,
        }

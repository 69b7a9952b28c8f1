from __future__ import annotations


DEFAULT_CONFIG: dict = {
    "model": {
        "name": "megadetector",
        "path": None,
        "config_path": None,
        "labels_path": None,
        "confidence": None,
        "iou": None,
        "imgsz": None,
    },
    "devices": {
        "cpu": 1,
    },
    "media": {
        "root": None,
        "recursive": True,
        "include_hidden": False,
        "image_extensions": [".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"],
        "video_extensions": [".mp4", ".avi", ".mkv", ".mov", ".m4v", ".webm"],
        "max_frames": None,
        "iframe_only": False,
        "media_workers": 4,
        "video_concurrency": 2,
        "ffmpeg_path": "ffmpeg",
        "hwaccel": "none",
        "timestamp_fallback": "none",
    },
    "pipeline": {
        "batch_size": 2,
        "idle_timeout_ms": 100,
        "frame_queue_size": 8,
        "tensor_queue_size": 0,
        "preprocess_workers": 0,
        "postprocess_workers": 2,
        "interpolation": "nearest",
    },
    "providers": {
        "cache_dir": "~/.cache/tds/providers",
        "force_reprobe": False,
        "intra_op_threads": 0,
    },
    "export": {
        "format": "csv",
        "path": None,
        "resume": False,
    },
    "monitoring": {
        "json_logs": False,
        "log_level": "INFO",
        "stats_interval_seconds": 5.0,
        "prometheus_enabled": False,
        "prometheus_host": "0.0.0.0",
        "prometheus_port": 9108,
    },
}

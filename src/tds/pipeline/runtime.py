from __future__ import annotations

import logging
import shutil
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tds.config.models import RuntimeConfig
from tds.detector.models.model_spec import ModelSpec
from tds.detector.selector import DeviceSessions, ExecutionProviderManager
from tds.errors import ConfigError, ExportError
from tds.io.ingest import (
    FfmpegVideoDecoder,
    FrameSource,
    ImageDecoder,
    MediaScanner,
    resolve_hwaccel,
)
from tds.io.output import ResultExporter, build_exporter, read_exported_paths
from tds.monitoring import PeriodicStatsLogger, RuntimeMetrics
from tds.pipeline.aggregate import ResultAggregator
from tds.pipeline.batching import BatchDispatcher, DeviceSlots
from tds.pipeline.channel import Channel, ChannelClosed, StageGroup
from tds.pipeline.postprocess import Postprocessor
from tds.pipeline.preprocess import Interpolation, Preprocessor
from tds.pipeline.workers import DeviceWorkerPool
from tds.types import Batch, DetectionRaw, FileResult, Frame, ItemStatus, MediaItem, PreprocessedFrame


@dataclass
class RunSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    resumed: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    interrupted: bool = False
    devices: dict[str, str] = field(default_factory=dict)
    peak_in_flight: dict[str, int] = field(default_factory=dict)
    export_path: str | None = None
    elapsed_seconds: float = 0.0
    stage_errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def record(self, result: FileResult) -> None:
        if result.item.status is ItemStatus.FAILED:
            self.failed += 1
            self.failures.append((str(result.item.path), result.item.reason or "unknown error"))
        else:
            self.succeeded += 1

    def report_lines(self) -> list[str]:
        lines = [
            f"processed {self.processed} files in {self.elapsed_seconds:.1f}s: "
            f"{self.succeeded} succeeded, {self.failed} failed, "
            f"{self.skipped} unsupported skipped, {self.resumed} already exported",
        ]
        for device_id, provider in sorted(self.devices.items()):
            lines.append(
                f"device {device_id}: {provider}, peak in-flight batches "
                f"{self.peak_in_flight.get(device_id, 0)}"
            )
        if self.export_path:
            lines.append(f"results written to {self.export_path}")
        if self.failures:
            lines.append("failed files:")
            lines.extend(f"  {path}: {reason}" for path, reason in self.failures)
        if self.stage_errors:
            lines.append("pipeline stages crashed, the run stopped early:")
            lines.extend(f"  {error}" for error in self.stage_errors)
        if self.interrupted:
            lines.append("run interrupted; finalized files were exported")
        return lines

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "resumed": self.resumed,
            "failures": [{"file_path": path, "reason": reason} for path, reason in self.failures],
            "interrupted": self.interrupted,
            "devices": dict(self.devices),
            "peak_in_flight": dict(self.peak_in_flight),
            "export_path": self.export_path,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "stage_errors": list(self.stage_errors),
        }


def default_export_path(root: Path, fmt: str) -> Path:
    base = root if root.is_dir() else root.parent
    return base / f"tds_results.{fmt}"


class BatchRuntime:
    """Wires every stage of a detection run together and drives it to completion."""

    def __init__(
        self,
        config: RuntimeConfig,
        model_spec: ModelSpec,
        manager: ExecutionProviderManager,
        video_decoder: FfmpegVideoDecoder | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self._config = config
        self._spec = model_spec
        self._manager = manager
        self._video_decoder = video_decoder
        self._install_signal_handlers = install_signal_handlers
        self._logger = logging.getLogger("tds.runtime")
        self._cancelled = threading.Event()
        self._interrupted = threading.Event()
        self._channels: list[Channel] = []
        self._scan: Channel[MediaItem] | None = None
        self._slots: DeviceSlots | None = None
        self._stage_errors: list[str] = []
        self._errors_lock = threading.Lock()
        self.metrics = RuntimeMetrics()

    def _channel(self, name: str, maxsize: int) -> Channel:
        channel: Channel = Channel(maxsize=maxsize, name=name)
        self._channels.append(channel)
        return channel

    def cancel(self) -> None:
        """Stop scanning. Everything already scanned still runs to completion."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._interrupted.set()
        self._logger.warning("cancel requested, draining in-flight work")
        if self._scan is not None:
            self._scan.close()

    def _abort(self) -> None:
        self._cancelled.set()
        for channel in self._channels:
            channel.close()
        if self._slots is not None:
            self._slots.close()

    def _stage_failed(self, stage: str, exc: BaseException) -> None:
        with self._errors_lock:
            self._stage_errors.append(f"{stage}: {exc}")
        self._logger.error("stopping run after stage crash stage=%s error=%s", stage, exc)
        self._abort()

    def _handle_sigint(self, signum: int, frame: Any) -> None:
        # A second interrupt falls through to the default handler.
        signal.signal(signal.SIGINT, signal.default_int_handler)
        self.cancel()

    def _media_root(self) -> Path:
        if not self._config.media.root:
            raise ConfigError("media.root is required (folder to scan)")
        root = Path(self._config.media.root).expanduser().resolve()
        if not root.exists():
            raise ConfigError(f"Media folder not found: {root}")
        return root

    def _start_prometheus(self) -> None:
        monitoring = self._config.monitoring
        if not monitoring.prometheus_enabled:
            return
        try:
            enabled = self.metrics.enable_prometheus(monitoring.prometheus_host, monitoring.prometheus_port)
        except OSError as exc:
            self._logger.warning(
                "prometheus endpoint unavailable at %s:%d, continuing without it error=%s",
                monitoring.prometheus_host,
                monitoring.prometheus_port,
                exc,
            )
            return
        if enabled:
            self._logger.info(
                "prometheus endpoint enabled at %s:%d",
                monitoring.prometheus_host,
                monitoring.prometheus_port,
            )
        else:
            self._logger.warning("prometheus requested but prometheus_client is not installed")

    def _build_video_decoder(self) -> FfmpegVideoDecoder:
        if self._video_decoder is not None:
            return self._video_decoder
        media = self._config.media
        if shutil.which(media.ffmpeg_path) is None:
            self._logger.warning(
                "ffmpeg not found path=%s, videos will be marked failed", media.ffmpeg_path
            )
        hwaccel = resolve_hwaccel(media.hwaccel, media.ffmpeg_path)
        self._logger.info("video decoder ffmpeg=%s hwaccel=%s", media.ffmpeg_path, hwaccel or "none")
        return FfmpegVideoDecoder(
            ffmpeg_path=media.ffmpeg_path,
            max_frames=media.max_frames,
            iframe_only=media.iframe_only,
            hwaccel=hwaccel,
        )

    def run(self) -> RunSummary:
        started = time.monotonic()
        config = self._config
        root = self._media_root()
        export_path = Path(config.export.path).expanduser() if config.export.path else default_export_path(
            root, config.export.format
        )

        skip_paths: set[str] = set()
        if config.export.resume:
            skip_paths = read_exported_paths(export_path, config.export.format)
            self._logger.info("resume path=%s already_exported=%d", export_path, len(skip_paths))

        self._start_prometheus()
        opened = self._manager.open_devices(config.devices, self._spec)
        try:
            exporter = build_exporter(config.export.format, export_path, resume=config.export.resume)
            exporter.open()
        except ExportError:
            self._manager.release(opened)
            raise

        scanner = MediaScanner(
            root=root,
            recursive=config.media.recursive,
            include_hidden=config.media.include_hidden,
            image_extensions=config.media.image_extensions,
            video_extensions=config.media.video_extensions,
            skip_paths=skip_paths,
            timestamp_fallback=config.media.timestamp_fallback,
        )
        summary = RunSummary(
            devices={device.device_id: device.reason for device in opened},
            export_path=str(export_path),
        )
        stats = PeriodicStatsLogger(self.metrics, config.monitoring.stats_interval_seconds)
        previous_handler = None
        if self._install_signal_handlers and threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGINT, self._handle_sigint)

        try:
            groups, slots, file_results = self._start_stages(scanner, opened)
            stats.start()
            self._export(exporter, file_results, summary)
            for group in groups:
                group.join()
            summary.peak_in_flight = slots.peaks()
        except BaseException:
            self._abort()
            self._manager.release(opened)
            raise
        finally:
            stats.stop()
            if previous_handler is not None:
                signal.signal(signal.SIGINT, previous_handler)
            exporter.close()

        summary.skipped = scanner.skipped
        summary.resumed = scanner.resumed
        summary.interrupted = self._interrupted.is_set()
        with self._errors_lock:
            summary.stage_errors = list(self._stage_errors)
        summary.elapsed_seconds = time.monotonic() - started
        self.metrics.mark_skipped(scanner.skipped + scanner.resumed)
        stats.emit()
        for line in summary.report_lines():
            self._logger.info("%s", line)
        return summary

    def _start_stages(
        self,
        scanner: MediaScanner,
        opened: list[DeviceSessions],
    ) -> tuple[list[StageGroup], DeviceSlots, Channel[FileResult]]:
        config = self._config
        metrics = self.metrics
        tensor_queue = config.tensor_queue_size()

        scan: Channel[MediaItem] = self._channel("scan", config.media.media_workers * 2)
        self._scan = scan
        frames: Channel[Frame] = self._channel("frames", config.pipeline.frame_queue_size)
        tensors: Channel[PreprocessedFrame] = self._channel("tensors", tensor_queue)
        inboxes: dict[str, Channel[Batch]] = {
            device.device_id: self._channel(f"inbox-{device.device_id}", device.workers)
            for device in opened
        }
        raws: Channel[DetectionRaw] = self._channel("raw", tensor_queue)
        results: Channel[Any] = self._channel("results", max(64, tensor_queue))
        file_results: Channel[FileResult] = self._channel("files", 64)
        if self._cancelled.is_set():
            scan.close()

        def scan_loop() -> None:
            try:
                for item in scanner.scan():
                    metrics.mark_scanned()
                    scan.put(item)
            except ChannelClosed:
                self._logger.info("scan stopped early")

        source = FrameSource(
            items=scan,
            frames=frames,
            seals=results,
            image_decoder=ImageDecoder(),
            video_decoder=self._build_video_decoder(),
            video_concurrency=config.media.video_concurrency,
            metrics=metrics,
        )
        preprocessor = Preprocessor(
            self._spec,
            frames,
            tensors,
            results=results,
            interpolation=Interpolation(config.pipeline.interpolation),
            metrics=metrics,
        )
        slots = DeviceSlots({device.device_id: device.workers for device in opened}, metrics)
        self._slots = slots
        dispatcher = BatchDispatcher(
            tensors,
            inboxes,
            slots,
            capacity=config.pipeline.batch_size,
            idle_timeout=config.pipeline.idle_timeout_ms / 1000.0,
            metrics=metrics,
        )
        worker_targets = []
        for device in opened:
            pool = DeviceWorkerPool(
                device.device_id, device.sessions, inboxes[device.device_id], raws, slots, metrics
            )
            worker_targets.extend(pool.targets())
        postprocessor = Postprocessor(self._spec, raws, results, metrics)
        aggregator = ResultAggregator(metrics)

        preprocess_workers = Preprocessor.default_workers(config.pipeline.preprocess_workers)
        failed = self._stage_failed
        groups = [
            StageGroup("scan", [scan_loop], outputs=[scan], on_error=failed),
            StageGroup.replicate(
                "media", source.run, config.media.media_workers, outputs=[frames], on_error=failed
            ),
            StageGroup.replicate(
                "preprocess", preprocessor.run, preprocess_workers, outputs=[tensors], on_error=failed
            ),
            StageGroup("dispatch", [dispatcher.run], outputs=list(inboxes.values()), on_error=failed),
            StageGroup("infer", worker_targets, outputs=[raws], on_error=failed),
            StageGroup.replicate(
                "postprocess",
                postprocessor.run,
                config.pipeline.postprocess_workers,
                outputs=[results],
                on_error=failed,
            ),
            StageGroup(
                "aggregate",
                [lambda: aggregator.run(results, file_results)],
                outputs=[file_results],
                on_error=failed,
            ),
        ]
        for group in groups:
            group.start()
        self._logger.info(
            "pipeline started media_workers=%d preprocess_workers=%d inference_workers=%d batch_size=%d",
            config.media.media_workers,
            preprocess_workers,
            len(worker_targets),
            config.pipeline.batch_size,
        )
        return groups, slots, file_results

    def _export(
        self,
        exporter: ResultExporter,
        file_results: Channel[FileResult],
        summary: RunSummary,
    ) -> None:
        for result in file_results:
            exporter.write(result)
            summary.record(result)
            if result.item.status is ItemStatus.FAILED:
                self._logger.warning(
                    "file failed path=%s reason=%s", result.item.path, result.item.reason
                )
            else:
                self._logger.debug(
                    "file done path=%s frames=%d detections=%d label=%s",
                    result.item.path,
                    len(result.frames),
                    result.detection_count,
                    result.label,
                )

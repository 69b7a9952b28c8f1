from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Any

from tds.errors import ExportError
from tds.types import FileResult

CSV_COLUMNS = [
    "file_path",
    "timestamp",
    "frame_index",
    "label",
    "class_id",
    "confidence",
    "x_min",
    "y_min",
    "x_max",
    "y_max",
    "file_label",
    "status",
    "error",
]
EXPORT_FORMATS = ("csv", "json")

logger = logging.getLogger("tds.export")


def _timestamp(result: FileResult) -> str:
    stamp = result.item.timestamp
    return stamp.isoformat() if stamp is not None else ""


def csv_rows(result: FileResult) -> list[dict[str, Any]]:
    """One row per detection. Files without detections get one placeholder row."""
    base = {
        "file_path": str(result.item.path),
        "timestamp": _timestamp(result),
        "file_label": result.label,
        "status": result.item.status.value,
        "error": result.item.reason or "",
    }
    rows: list[dict[str, Any]] = []
    for frame in result.frames:
        for detection in frame.detections:
            row = dict(base)
            row["frame_index"] = frame.frame_index
            row.update(detection.as_dict())
            rows.append(row)
    if not rows:
        row = {column: "" for column in CSV_COLUMNS}
        row.update(base)
        rows.append(row)
    return rows


def json_record(result: FileResult) -> dict[str, Any]:
    return {
        "file_path": str(result.item.path),
        "kind": result.item.kind.value,
        "timestamp": _timestamp(result) or None,
        "status": result.item.status.value,
        "error": result.item.reason,
        "label": result.label,
        "frame_count": len(result.frames),
        "frames": [
            {
                "frame_index": frame.frame_index,
                "detections": [detection.as_dict() for detection in frame.detections],
            }
            for frame in result.frames
        ],
    }


def export(result: FileResult, fmt: str) -> list[dict[str, Any]] | dict[str, Any]:
    if fmt == "csv":
        return csv_rows(result)
    if fmt == "json":
        return json_record(result)
    raise ValueError(f"Unsupported export format: {fmt}")


def _load_json_records(path: Path) -> list[dict[str, Any]]:
    """Records of a previous JSON export, including one cut short by an interrupted run."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = json.loads(text.rstrip(",") + "\n]")
    if not isinstance(data, list):
        raise ValueError("export document is not a JSON array")
    return [record for record in data if isinstance(record, dict)]


def read_exported_paths(path: str | Path, fmt: str) -> set[str]:
    """File paths already present in an existing export."""
    p = Path(path)
    if not p.exists():
        return set()
    try:
        if fmt == "csv":
            with p.open("r", encoding="utf-8", newline="") as handle:
                return {row["file_path"] for row in csv.DictReader(handle) if row.get("file_path")}
        return {str(record["file_path"]) for record in _load_json_records(p) if "file_path" in record}
    except (OSError, ValueError, KeyError, csv.Error) as exc:
        raise ExportError(f"cannot read existing export {p}: {exc}") from exc


class ResultExporter(ABC):
    def __init__(self, path: str | Path, resume: bool = False) -> None:
        self.path = Path(path).expanduser()
        self.resume = resume
        self.written = 0
        self._handle: IO[str] | None = None
        self._lock = threading.Lock()

    @abstractmethod
    def open(self) -> None:
        """Create or reopen the export file."""

    @abstractmethod
    def _write(self, result: FileResult) -> None:
        """Serialize one finalized file."""

    def write(self, result: FileResult) -> None:
        with self._lock:
            if self._handle is None:
                raise ExportError(f"exporter for {self.path} is not open")
            try:
                self._write(result)
                self._handle.flush()
            except OSError as exc:
                raise ExportError(f"cannot write {self.path}: {exc}") from exc
            self.written += 1

    def close(self) -> None:
        with self._lock:
            if self._handle is None:
                return
            try:
                self._finish()
                self._handle.close()
            except OSError as exc:
                raise ExportError(f"cannot close {self.path}: {exc}") from exc
            finally:
                self._handle = None

    def _finish(self) -> None:
        return None

    def __enter__(self) -> "ResultExporter":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class CsvExporter(ResultExporter):
    def __init__(self, path: str | Path, resume: bool = False) -> None:
        super().__init__(path, resume)
        self._writer: csv.DictWriter | None = None

    def open(self) -> None:
        append = self.resume and self.path.exists() and self.path.stat().st_size > 0
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("a" if append else "w", encoding="utf-8", newline="")
        except OSError as exc:
            raise ExportError(f"cannot open {self.path}: {exc}") from exc
        self._writer = csv.DictWriter(self._handle, fieldnames=CSV_COLUMNS)
        if not append:
            self._writer.writeheader()
            self._handle.flush()
        logger.info("export open format=csv path=%s append=%s", self.path, append)

    def _write(self, result: FileResult) -> None:
        assert self._writer is not None
        self._writer.writerows(csv_rows(result))


class JsonExporter(ResultExporter):
    """Streams a JSON array so every finalized file is on disk as soon as it is written."""

    def __init__(self, path: str | Path, resume: bool = False) -> None:
        super().__init__(path, resume)
        self._started = False

    def open(self) -> None:
        previous: list[dict[str, Any]] = []
        if self.resume and self.path.exists():
            try:
                previous = _load_json_records(self.path)
            except (OSError, ValueError) as exc:
                raise ExportError(f"cannot resume from {self.path}: {exc}") from exc
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._rewrite_header(previous)
            self._handle = self.path.open("a", encoding="utf-8")
        except OSError as exc:
            raise ExportError(f"cannot open {self.path}: {exc}") from exc
        self._started = bool(previous)
        logger.info("export open format=json path=%s resumed=%d", self.path, len(previous))

    def _rewrite_header(self, previous: list[dict[str, Any]]) -> None:
        """Replace the export with an open array of `previous` in one rename."""
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write("[")
                for index, record in enumerate(previous):
                    handle.write(("\n" if index == 0 else ",\n") + json.dumps(record, ensure_ascii=True))
                handle.flush()
                os.fsync(handle.fileno())
            if self.path.exists():
                os.chmod(tmp_name, self.path.stat().st_mode & 0o777)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _emit(self, record: dict[str, Any]) -> None:
        assert self._handle is not None
        separator = ",\n" if self._started else "\n"
        self._started = True
        self._handle.write(separator + json.dumps(record, ensure_ascii=True))

    def _write(self, result: FileResult) -> None:
        self._emit(json_record(result))

    def _finish(self) -> None:
        assert self._handle is not None
        self._handle.write("\n]\n")


def build_exporter(fmt: str, path: str | Path, resume: bool = False) -> ResultExporter:
    if fmt == "csv":
        return CsvExporter(path, resume=resume)
    if fmt == "json":
        return JsonExporter(path, resume=resume)
    raise ExportError(f"Unsupported export format: {fmt}")

from __future__ import annotations

import logging
import math
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Iterator

import numpy as np

from tds.errors import DecodeError, ExternalProcessError
from tds.types import Frame, MediaItem

logger = logging.getLogger("tds.frames")


@dataclass
class VideoInfo:
    width: int
    height: int
    duration: float | None
    frame_rate: float | None
    sampleable: int


def probe_video(path: str | Path, iframe_only: bool = False) -> VideoInfo:
    """Geometry and sampleable frame count of the first video stream.

    Frames are counted by demuxing packets, keyframes only when `iframe_only`,
    so the count lines up with what ffmpeg's `select` filter numbers.
    """
    try:
        import av
    except ImportError as exc:
        raise DecodeError("PyAV (`av` package) is required to probe videos") from exc

    try:
        with av.open(str(path)) as container:
            if not container.streams.video:
                raise DecodeError(f"no video stream in {path}")
            stream = container.streams.video[0]
            width = int(stream.codec_context.width or 0)
            height = int(stream.codec_context.height or 0)
            frame_rate = float(stream.average_rate) if stream.average_rate else None
            duration = None
            if stream.duration is not None and stream.time_base is not None:
                duration = float(stream.duration * stream.time_base)
            elif container.duration is not None:
                duration = container.duration / av.time_base

            sampleable = 0
            for packet in container.demux(stream):
                if packet.size == 0:
                    continue
                if iframe_only and not packet.is_keyframe:
                    continue
                sampleable += 1
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError(f"cannot probe video {path}: {exc}") from exc

    if width <= 0 or height <= 0:
        raise DecodeError(f"video {path} reports no frame size")
    if sampleable == 0:
        raise DecodeError(f"video {path} has no decodable frames")
    return VideoInfo(
        width=width,
        height=height,
        duration=duration,
        frame_rate=frame_rate,
        sampleable=sampleable,
    )


def sample_indices(sampleable: int, max_frames: int | None) -> list[int]:
    """Uniform-interval sample of frame ordinals, strictly increasing.

    Picks the centre of each of `n` equal intervals over `[0, sampleable)`.
    """
    if sampleable <= 0:
        return []
    if max_frames is None or max_frames >= sampleable:
        return list(range(sampleable))
    n = max(1, max_frames)
    return [int(math.floor((k + 0.5) * sampleable / n)) for k in range(n)]


def _drain_stderr(stream: IO[bytes], tail: deque[str]) -> None:
    for raw in iter(stream.readline, b""):
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            tail.append(line)


def _read_into(stream: IO[bytes], buffer: memoryview) -> int:
    filled = 0
    total = len(buffer)
    while filled < total:
        count = stream.readinto(buffer[filled:])
        if not count:
            break
        filled += count
    return filled


class FfmpegVideoDecoder:
    """Extracts sampled frames by piping raw BGR frames out of an ffmpeg child process."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        max_frames: int | None = None,
        iframe_only: bool = False,
        hwaccel: str | None = None,
        stderr_lines: int = 20,
        probe: Callable[[Path, bool], VideoInfo] = probe_video,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.max_frames = max_frames
        self.iframe_only = iframe_only
        self.hwaccel = hwaccel
        self.stderr_lines = stderr_lines
        self._probe = probe

    def build_command(self, path: Path, indices: list[int], sampleable: int) -> list[str]:
        command = [self.ffmpeg_path, "-nostdin", "-hide_banner", "-v", "error", "-noautorotate"]
        if self.hwaccel:
            command += ["-hwaccel", self.hwaccel]
        if self.iframe_only:
            command += ["-skip_frame", "nokey"]
        command += ["-i", str(path), "-map", "0:v:0", "-an", "-sn", "-dn"]
        if len(indices) < sampleable:
            expression = "+".join(f"eq(n,{index})" for index in indices)
            command += ["-vf", f"select='{expression}'"]
        command += ["-vsync", "vfr", "-f", "rawvideo", "-pix_fmt", "bgr24", "-"]
        return command

    def frames(self, item: MediaItem) -> Iterator[Frame]:
        info = self._probe(item.path, self.iframe_only)
        indices = sample_indices(info.sampleable, self.max_frames)
        command = self.build_command(item.path, indices, info.sampleable)
        logger.debug("ffmpeg start path=%s frames=%d command=%s", item.path, len(indices), command)

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            raise ExternalProcessError(f"cannot start {self.ffmpeg_path}: {exc}") from exc

        assert process.stdout is not None and process.stderr is not None
        tail: deque[str] = deque(maxlen=self.stderr_lines)
        drain = threading.Thread(
            target=_drain_stderr,
            args=(process.stderr, tail),
            name=f"ffmpeg-stderr-{item.media_id}",
            daemon=True,
        )
        drain.start()

        emitted = 0
        partial = 0
        finished = False
        try:
            for frame_index in indices:
                pixels = np.empty((info.height, info.width, 3), dtype=np.uint8)
                filled = _read_into(process.stdout, memoryview(pixels).cast("B"))
                if filled < pixels.nbytes:
                    partial = filled
                    break
                yield Frame(
                    media_id=item.media_id,
                    frame_index=frame_index,
                    pixels=pixels,
                    width=info.width,
                    height=info.height,
                )
                emitted += 1
            else:
                while process.stdout.read(65536):
                    pass
            finished = True
        finally:
            if not finished and process.poll() is None:
                process.kill()
            process.stdout.close()
            returncode = process.wait()
            drain.join(timeout=1.0)
            process.stderr.close()

        stderr_text = " | ".join(tail)
        if returncode != 0:
            raise ExternalProcessError(
                f"ffmpeg exited with status {returncode} on {item.path} after {emitted} frames",
                returncode=returncode,
                stderr=stderr_text,
            )
        if partial:
            raise ExternalProcessError(
                f"ffmpeg output ended mid-frame on {item.path} after {emitted} frames",
                returncode=returncode,
                stderr=stderr_text,
            )
        if emitted == 0:
            raise DecodeError(f"ffmpeg produced no frames for {item.path}")
        if emitted < len(indices):
            logger.warning(
                "fewer frames than probed path=%s expected=%d got=%d",
                item.path,
                len(indices),
                emitted,
            )

from __future__ import annotations

import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path


@dataclass
class DecoderProbeResult:
    selected_decoder: str
    reason: str
    available: list[str]
    hwaccel: str | None = None


def _ffmpeg_hwaccels(ffmpeg_path: str = "ffmpeg") -> list[str]:
    ffmpeg = shutil.which(ffmpeg_path)
    if not ffmpeg:
        return []
    try:
        output = subprocess.check_output(
            [ffmpeg, "-hide_banner", "-hwaccels"],
            stderr=subprocess.STDOUT,
            text=True,
            timeout=3,
        )
    except (OSError, subprocess.SubprocessError):
        return []

    lines = [line.strip().lower() for line in output.splitlines()]
    return [line for line in lines if line and not line.startswith("hardware")]


def probe_decoder_path(ffmpeg_path: str = "ffmpeg") -> DecoderProbeResult:
    system = platform.system().lower()
    hwaccels = _ffmpeg_hwaccels(ffmpeg_path)

    available = ["software"]
    available.extend(sorted(set(hwaccels)))

    if system == "darwin":
        if "videotoolbox" in hwaccels:
            return DecoderProbeResult(
                selected_decoder="videotoolbox",
                reason="Apple platform with FFmpeg VideoToolbox support",
                available=available,
                hwaccel="videotoolbox",
            )
        return DecoderProbeResult(
            selected_decoder="software",
            reason="Apple platform without FFmpeg VideoToolbox probe hit",
            available=available,
        )

    if system == "linux":
        if shutil.which("nvidia-smi") and "cuda" in hwaccels:
            return DecoderProbeResult(
                selected_decoder="nvdec",
                reason="NVIDIA GPU detected with FFmpeg CUDA/NVDEC support",
                available=available,
                hwaccel="cuda",
            )

        if "vaapi" in hwaccels and Path("/dev/dri/renderD128").exists():
            return DecoderProbeResult(
                selected_decoder="vaapi",
                reason="DRM render node detected with FFmpeg VAAPI support",
                available=available,
                hwaccel="vaapi",
            )

        return DecoderProbeResult(
            selected_decoder="software",
            reason="No Linux hardware decoder path detected",
            available=available,
        )

    if system == "windows":
        for name in ("d3d11va", "dxva2"):
            if name in hwaccels:
                return DecoderProbeResult(
                    selected_decoder=name,
                    reason=f"Windows with FFmpeg {name} support",
                    available=available,
                    hwaccel=name,
                )

    return DecoderProbeResult(
        selected_decoder="software",
        reason="Unknown platform, defaulting to software decode",
        available=available,
    )


def resolve_hwaccel(mode: str, ffmpeg_path: str = "ffmpeg") -> str | None:
    """Map `media.hwaccel` to an ffmpeg `-hwaccel` argument, or None for software decode."""
    mode = (mode or "none").lower()
    if mode == "none":
        return None
    if mode == "auto":
        return probe_decoder_path(ffmpeg_path).hwaccel
    return mode

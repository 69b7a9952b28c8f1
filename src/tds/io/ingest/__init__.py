from tds.io.ingest.decoder_probe import DecoderProbeResult, probe_decoder_path, resolve_hwaccel
from tds.io.ingest.frame_source import FrameSource
from tds.io.ingest.images import ImageDecoder
from tds.io.ingest.scanner import MediaScanner
from tds.io.ingest.video import FfmpegVideoDecoder, probe_video, sample_indices

__all__ = [
    "DecoderProbeResult",
    "probe_decoder_path",
    "resolve_hwaccel",
    "FrameSource",
    "ImageDecoder",
    "MediaScanner",
    "FfmpegVideoDecoder",
    "probe_video",
    "sample_indices",
]

class TdsError(RuntimeError):
    """Base class for every error raised by the detection pipeline."""


class ConfigError(TdsError):
    """Raised when runtime or model configuration is invalid. Fatal before the run starts."""


class MediaError(TdsError):
    """Per-file failure. The owning media item is marked failed, the run continues."""


class MediaReadError(MediaError):
    """Raised when a media file cannot be read from disk."""


class DecodeError(MediaError):
    """Raised when media bytes cannot be decoded into frames."""


class ExternalProcessError(MediaError):
    """Raised when the external video decoder exits abnormally."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr:
            return f"{text}: {self.stderr}"
        return text


class InferenceSessionError(TdsError):
    """Raised when an inference session cannot be built on a backend."""


class NoUsableDeviceError(InferenceSessionError):
    """Raised when no configured device could open a session. Fatal."""


class InferenceRuntimeError(TdsError):
    """Raised when a single batch fails inside an open session."""


class ExportError(TdsError):
    """Raised when results cannot be written. Fatal."""

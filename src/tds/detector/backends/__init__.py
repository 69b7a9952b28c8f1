from tds.detector.backends.base import InferenceBackend

__all__ = ["InferenceBackend"]

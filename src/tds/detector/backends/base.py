from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from tds.detector.models.model_spec import ModelSpec


class InferenceBackend(ABC):
    @abstractmethod
    def load(self, model_spec: ModelSpec) -> None:
        """Load model artifacts and bind the session to its execution provider."""

    @abstractmethod
    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        """Run one stacked batch. Every output keeps the batch as its leading dimension."""

    @abstractmethod
    def warmup(self) -> None:
        """Run one-time warmup inference if supported."""

    @abstractmethod
    def release(self) -> None:
        """Drop the session and any device memory it holds."""

    @abstractmethod
    def name(self) -> str:
        """Return stable backend name for logging and metrics."""

    @abstractmethod
    def device_info(self) -> str:
        """Return selected device/accelerator detail string."""

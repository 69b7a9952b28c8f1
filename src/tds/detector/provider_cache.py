from __future__ import annotations

import json
import logging
from pathlib import Path

from tds.types import ExecutionProviderInfo
from tds.utils.config_io import write_json

logger = logging.getLogger("tds.providers")


class ProviderCache:
    """One JSON artifact per device listing its working execution providers."""

    def __init__(self, cache_dir: str | Path) -> None:
        self.cache_dir = Path(cache_dir).expanduser()

    def path_for(self, device_id: str) -> Path:
        safe = device_id.replace(":", "_").replace("/", "_")
        return self.cache_dir / f"{safe}.json"

    def load(self, device_id: str) -> ExecutionProviderInfo | None:
        path = self.path_for(device_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("provider cache unreadable path=%s error=%s", path, exc)
            return None

        if not isinstance(payload, dict):
            return None
        backends = payload.get("backends")
        if (
            payload.get("device_id") != device_id
            or not payload.get("probed")
            or not isinstance(backends, list)
            or not backends
            or not all(isinstance(name, str) for name in backends)
        ):
            logger.warning("provider cache malformed path=%s", path)
            return None
        return ExecutionProviderInfo(device_id=device_id, backends=list(backends), probed=False)

    def save(self, info: ExecutionProviderInfo) -> Path:
        path = self.path_for(info.device_id)
        write_json(path, info.as_dict())
        return path

    def invalidate(self, device_id: str) -> None:
        self.path_for(device_id).unlink(missing_ok=True)

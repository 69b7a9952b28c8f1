from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from tds.errors import ConfigError


def load_config_file(path: str | Path | None) -> dict[str, Any]:
    """Top-level mapping of a TOML, YAML or JSON file, chosen by suffix."""
    if path is None:
        return {}

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    data = _parse(p.suffix.lower(), p.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{p} must contain a mapping, got {type(data).__name__}")
    return data


def _parse(suffix: str, raw: str) -> Any:
    if suffix == ".json":
        return json.loads(raw)

    if suffix == ".toml":
        try:
            import tomllib
        except ImportError:  # pragma: no cover
            import tomli as tomllib  # type: ignore

        return tomllib.loads(raw)

    if suffix in {".yaml", ".yml"}:
        import yaml

        return yaml.safe_load(raw)

    raise ConfigError(f"Unsupported config extension: {suffix or '(none)'}")


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def lower_keys(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k).lower(): lower_keys(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [lower_keys(item) for item in obj]
    return obj


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON through a temp file so readers never see a half-written artifact."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=True, indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

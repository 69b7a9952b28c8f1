from __future__ import annotations

from dataclasses import dataclass

from tds.errors import ConfigError

_KIND_ALIASES = {
    "cpu": "cpu",
    "gpu": "gpu",
    "cuda": "gpu",
    "npu": "npu",
}


@dataclass(frozen=True)
class DeviceRef:
    device_id: str
    kind: str
    index: int


def parse_device_id(raw: str) -> DeviceRef:
    """Parse `cpu`, `gpu[:N]`, `cuda[:N]` or `npu[:N]` into a canonical reference."""
    text = str(raw).strip().lower()
    if not text:
        raise ConfigError("Empty device id")
    name, _, index_text = text.partition(":")
    kind = _KIND_ALIASES.get(name)
    if kind is None:
        raise ConfigError(
            f"Unsupported device id '{raw}'. Expected cpu, gpu[:N], cuda[:N] or npu[:N]."
        )
    index = 0
    if index_text:
        try:
            index = int(index_text)
        except ValueError as exc:
            raise ConfigError(f"Invalid device index in '{raw}'") from exc
        if index < 0:
            raise ConfigError(f"Invalid device index in '{raw}'")
    device_id = kind if kind == "cpu" else f"{kind}:{index}"
    return DeviceRef(device_id=device_id, kind=kind, index=index)

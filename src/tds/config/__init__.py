from tds.config.loader import load_runtime_config
from tds.config.models import DeviceWorkerConfig, RuntimeConfig

__all__ = ["DeviceWorkerConfig", "RuntimeConfig", "load_runtime_config"]

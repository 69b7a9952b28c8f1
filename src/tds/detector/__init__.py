from tds.detector.devices import DeviceRef, parse_device_id
from tds.detector.provider_cache import ProviderCache
from tds.detector.providers import ExecutionProvider, probe
from tds.detector.selector import DeviceSessions, ExecutionProviderManager

__all__ = [
    "DeviceRef",
    "parse_device_id",
    "ProviderCache",
    "ExecutionProvider",
    "probe",
    "DeviceSessions",
    "ExecutionProviderManager",
]

from tds.monitoring.logging import configure_logging
from tds.monitoring.metrics import RuntimeMetrics
from tds.monitoring.stats import PeriodicStatsLogger

__all__ = [
    "configure_logging",
    "RuntimeMetrics",
    "PeriodicStatsLogger",
]

"""Store and fan-out health reporting."""

from .health import AdapterHealthStats, HealthReport, HealthReporter

__all__ = ["AdapterHealthStats", "HealthReport", "HealthReporter"]

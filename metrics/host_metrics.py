"""
Sample plugin: host resource usage.

Exposes CPU and memory usage of the machine running the exporter:
- host_cpu_usage_percent
- host_memory_used_bytes
- host_memory_usage_percent
"""

import psutil
from prometheus_client import Gauge

from exporter.plugins import BaseMetricProvider


class HostMetricsProvider(BaseMetricProvider):
    """Samples psutil on every refresh cycle."""

    def __init__(self):
        self.cpu_percent = Gauge(
            "host_cpu_usage_percent", "CPU usage of the host in percent", registry=None
        )
        self.memory_used = Gauge(
            "host_memory_used_bytes", "Memory in use on the host", registry=None
        )
        self.memory_percent = Gauge(
            "host_memory_usage_percent", "Memory usage of the host in percent", registry=None
        )
        self.collectors = (self.cpu_percent, self.memory_used, self.memory_percent)

    def update(self):
        # Runs in the executor, so the short blocking sample is fine
        self.cpu_percent.set(psutil.cpu_percent(interval=0.1))

        memory = psutil.virtual_memory()
        self.memory_used.set(memory.used)
        self.memory_percent.set(memory.percent)


provider = HostMetricsProvider

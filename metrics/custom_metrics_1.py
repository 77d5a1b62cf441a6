"""
Sample plugin: static gauge, class style.

The gauge is built when the module is loaded, with registry=None so it stays
out of prometheus_client's global registry. apply() registers it through the
scope the exporter passes in.
"""

from loguru import logger
from prometheus_client import Gauge

from exporter.plugins import BaseMetricProvider

logger.info("Loaded metrics module: custom_metrics_1.py")


class StaticGaugeProvider(BaseMetricProvider):

    def __init__(self):
        self.gauge = Gauge("metric_name_1", "metric_help", registry=None)
        self.collectors = (self.gauge,)

    def update(self):
        self.gauge.set(10)


provider = StaticGaugeProvider

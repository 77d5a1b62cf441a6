"""Sample plugin: static gauge, function style."""

from loguru import logger
from prometheus_client import Gauge

logger.info("Loaded metrics module: custom_metrics_2.py")

gauge = Gauge("metric_name_2", "metric_help", registry=None)


def provider(registry):
    logger.debug("Processing metrics module: custom_metrics_2.py")
    registry.register(gauge)
    gauge.set(30)

"""
Plugin system for hot-reloadable metric providers.

This package provides:
- MetricProvider: Protocol every plugin satisfies
- PluginUnit: One loaded plugin (provider + registry scope)
- PluginTable: Identity -> current unit, copy-on-write
- PluginLoader: File -> unit, validation, replace-on-reload

Example:
    from exporter.plugins import PluginLoader, PluginTable
    from exporter.registry import MetricRegistry

    table = PluginTable()
    loader = PluginLoader(table, MetricRegistry())
    await loader.load_directory("./metrics")
"""

from .provider import (
    BaseMetricProvider,
    FunctionProvider,
    MetricProvider,
    PluginUnit,
)
from .table import PluginTable
from .loader import PluginLoader, RemovalPolicy

__all__ = [
    "BaseMetricProvider",
    "FunctionProvider",
    "MetricProvider",
    "PluginUnit",
    "PluginTable",
    "PluginLoader",
    "RemovalPolicy",
]

"""
Prometheus exporter backed by hot-reloadable metric plugins.

This package contains:
- Plugin loading, validation and the plugin table
- Watching the plugin directory for changes
- Refresh cycles and the serving cache
- The HTTP endpoint serving cached metrics

Modules:
    registry: Shared prometheus_client registry and per-plugin scopes
    plugins: Provider contract, loader and plugin table
    watcher: Plugin directory watcher
    refresh: Refresh coordinator and policies
    cache: Serving cache
    communication: HTTP routes and server
    config: Exporter configuration
    main: Orchestration and entry point
"""

from .cache import ServingCache, Snapshot
from .config import ExporterConfig, load_config
from .errors import (
    DirectoryAccessError,
    ExporterError,
    PluginExecutionError,
    PluginLoadError,
    RenderError,
)
from .plugins import (
    BaseMetricProvider,
    FunctionProvider,
    MetricProvider,
    PluginLoader,
    PluginTable,
    PluginUnit,
    RemovalPolicy,
)
from .refresh import RefreshCoordinator, RefreshPolicy, RefreshResult
from .registry import MetricRegistry, RegistryScope
from .watcher import ChangeKind, DirectoryWatcher, WatchEvent

__all__ = [
    # Cache
    'ServingCache',
    'Snapshot',

    # Configuration
    'ExporterConfig',
    'load_config',

    # Errors
    'ExporterError',
    'PluginLoadError',
    'PluginExecutionError',
    'RenderError',
    'DirectoryAccessError',

    # Plugins
    'BaseMetricProvider',
    'FunctionProvider',
    'MetricProvider',
    'PluginLoader',
    'PluginTable',
    'PluginUnit',
    'RemovalPolicy',

    # Refresh
    'RefreshCoordinator',
    'RefreshPolicy',
    'RefreshResult',

    # Registry
    'MetricRegistry',
    'RegistryScope',

    # Watcher
    'ChangeKind',
    'DirectoryWatcher',
    'WatchEvent',
]

__version__ = '1.0.0'

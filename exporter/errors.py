"""
Error taxonomy for the exporter.

Every error here is recoverable: the component that raises it is paired with
a caller that logs it and keeps going.

- PluginLoadError: a plugin file could not be turned into a provider
- PluginExecutionError: a provider failed during a refresh cycle
- RenderError: the metric registry could not produce exposition text
- DirectoryAccessError: the plugin directory could not be read or watched
"""

from typing import Optional


class ExporterError(Exception):
    """Base class for all exporter errors."""


class PluginLoadError(ExporterError):
    """A plugin module failed to import or did not export a valid provider."""

    def __init__(self, identity: str, reason: str):
        self.identity = identity
        self.reason = reason
        super().__init__(f"Failed to load metrics plugin {identity}: {reason}")


class PluginExecutionError(ExporterError):
    """A provider raised, timed out or reported failure while applying."""

    def __init__(self, identity: str, reason: str):
        self.identity = identity
        self.reason = reason
        super().__init__(f"Metrics plugin {identity} failed: {reason}")


class RenderError(ExporterError):
    """The registry failed to render exposition text."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to render metrics: {reason}")


class DirectoryAccessError(ExporterError):
    """The plugin directory is missing, unreadable or could not be watched."""

    def __init__(self, directory: str, reason: Optional[str] = None):
        self.directory = directory
        self.reason = reason or "unknown error"
        super().__init__(f"Cannot access plugin directory {directory}: {self.reason}")

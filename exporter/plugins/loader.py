"""
Plugin loader.

Turns a file in the plugin directory into a PluginUnit and records it in the
plugin table. Each load imports the file as a brand-new module object (never
cached in sys.modules) and builds a new provider instance and registry scope
from it, so reloading is an explicit replace of one unit by another.

Accepted shapes for the designated export (default attribute `provider`):
    - a class: instantiated without arguments, must satisfy MetricProvider
    - an object that already satisfies MetricProvider
    - a plain callable taking the registry as its only argument

Metrics may be created with registry=None and registered through the scope, or
with prometheus_client's defaults; collectors a load puts in the global
REGISTRY are moved to the new unit and leave with it on the next reload.

Example plugin file:
    from prometheus_client import Gauge

    gauge = Gauge("queue_depth", "Items waiting", registry=None)

    def provider(registry):
        registry.register(gauge)
        gauge.set(read_queue_depth())
"""

import asyncio
import importlib.machinery
import importlib.util
import inspect
import itertools
import re
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import List, Optional, Tuple

from loguru import logger

from ..errors import DirectoryAccessError, PluginLoadError
from ..registry import MetricRegistry, capture_default_registrations
from .provider import (
    FunctionProvider,
    MetricProvider,
    PluginUnit,
    accepts_single_argument,
)
from .table import PluginTable


class RemovalPolicy(str, Enum):
    """What happens to a unit when its file is deleted."""
    KEEP = "keep"               # Unit stays registered and keeps running
    UNREGISTER = "unregister"   # Unit is dropped and its metrics unregistered


class PluginLoader:
    """
    Loads plugin files into the plugin table.

    The loader is the only writer of the table. A failed load never touches
    the entry already stored for that identity.
    """

    def __init__(
        self,
        table: PluginTable,
        registry: MetricRegistry,
        extension: str = ".py",
        export_name: str = "provider",
        on_remove: RemovalPolicy = RemovalPolicy.KEEP,
    ):
        """
        Initialize the loader.

        Args:
            table: Plugin table to populate
            registry: Shared metric registry handing out per-unit scopes
            extension: Source file extension of eligible plugins
            export_name: Module attribute holding the provider
            on_remove: Policy applied when a plugin file is removed
        """
        self.table = table
        self.registry = registry
        self.extension = extension if extension.startswith(".") else f".{extension}"
        self.export_name = export_name
        self.on_remove = RemovalPolicy(on_remove)
        self._generations = itertools.count(1)

    @staticmethod
    def identity_of(path) -> str:
        """Stable identity of a plugin file: its resolved absolute path."""
        return str(Path(path).resolve())

    def is_eligible(self, path) -> bool:
        """Only visible files with the configured extension are plugins."""
        path = Path(path)
        if path.name.startswith((".", "_")):
            return False
        return path.suffix == self.extension

    async def load(self, path) -> PluginUnit:
        """
        Load a plugin file and store it in the table.

        Args:
            path: Path of the plugin file

        Returns:
            The newly stored PluginUnit

        Raises:
            PluginLoadError: If the file is not eligible, cannot be imported
                or does not export a valid provider
        """
        identity = self.identity_of(path)
        if not self.is_eligible(identity):
            raise PluginLoadError(identity, f"not a {self.extension} plugin file")

        generation = next(self._generations)
        loop = asyncio.get_running_loop()
        provider, module_collectors = await loop.run_in_executor(
            None, self._load_provider, identity, generation
        )

        unit = PluginUnit(
            identity=identity,
            provider=provider,
            scope=self.registry.scope(identity),
            generation=generation,
            module_collectors=module_collectors,
        )
        self.table.replace(unit)
        return unit

    async def reload(self, path) -> Optional[PluginUnit]:
        """
        Load a plugin file, logging instead of raising.

        Ineligible files are ignored silently. Used for the startup scan and
        for every created/modified watcher event.

        Returns:
            The stored unit, or None if the file was skipped or failed
        """
        log = logger.bind(context="PluginLoader.reload")
        if not self.is_eligible(path):
            log.debug(f"Ignoring non-plugin file: {path}")
            return None
        try:
            unit = await self.load(path)
        except PluginLoadError as e:
            log.error(str(e))
            return None
        log.info(f"Loaded metrics plugin: {unit.identity} (generation {unit.generation})")
        return unit

    async def load_directory(self, directory) -> List[PluginUnit]:
        """
        Load every eligible file of the plugin directory, in name order.

        Args:
            directory: Plugin directory

        Returns:
            Units loaded successfully

        Raises:
            DirectoryAccessError: If the directory cannot be listed
        """
        log = logger.bind(context="PluginLoader.load_directory")
        directory = Path(directory)
        loop = asyncio.get_running_loop()

        def _list() -> List[Path]:
            return sorted(entry for entry in directory.iterdir() if entry.is_file())

        try:
            entries = await loop.run_in_executor(None, _list)
        except OSError as e:
            raise DirectoryAccessError(str(directory), str(e)) from e

        units = []
        for entry in entries:
            unit = await self.reload(entry)
            if unit is not None:
                units.append(unit)

        log.info(f"Loaded {len(units)} metrics plugins from {directory}")
        return units

    def remove(self, path) -> Optional[PluginUnit]:
        """
        Apply the removal policy to a deleted plugin file.

        Returns:
            The unit dropped from the table, or None if it was kept or unknown
        """
        log = logger.bind(context="PluginLoader.remove")
        identity = self.identity_of(path)
        if identity not in self.table:
            return None
        if self.on_remove is RemovalPolicy.KEEP:
            log.info(f"Plugin file removed, keeping last loaded version: {identity}")
            return None
        unit = self.table.remove(identity)
        log.info(f"Unloaded metrics plugin: {identity}")
        return unit

    def _load_provider(self, identity: str, generation: int) -> Tuple[MetricProvider, Tuple[object, ...]]:
        """
        Import the module and build its provider (runs in the executor).

        Returns:
            The provider and the collectors the module or provider constructor
            registered in prometheus_client's default registry
        """
        with capture_default_registrations() as captured:
            provider = self._build_provider(identity, generation)
        return provider, tuple(captured)

    def _build_provider(self, identity: str, generation: int) -> MetricProvider:
        module = self._import_module(identity, generation)

        export = getattr(module, self.export_name, None)
        if export is None:
            raise PluginLoadError(identity, f"module does not export '{self.export_name}'")

        if inspect.isclass(export):
            try:
                export = export()
            except Exception as e:
                raise PluginLoadError(
                    identity, f"{self.export_name}() raised {e.__class__.__name__}: {e}"
                ) from e
            return self._validate_instance(identity, export)

        if isinstance(export, MetricProvider):
            return self._validate_instance(identity, export)

        if not callable(export):
            raise PluginLoadError(
                identity,
                f"'{self.export_name}' must be callable or implement MetricProvider, "
                f"got {type(export).__name__}",
            )
        if not accepts_single_argument(export):
            raise PluginLoadError(
                identity, f"'{self.export_name}' must accept exactly one argument (registry)"
            )
        return FunctionProvider(export)

    def _validate_instance(self, identity: str, instance) -> MetricProvider:
        apply = getattr(instance, "apply", None)
        if not isinstance(instance, MetricProvider) or not callable(apply):
            raise PluginLoadError(
                identity,
                f"{type(instance).__name__} does not implement MetricProvider.apply(registry)",
            )
        if not accepts_single_argument(apply):
            raise PluginLoadError(
                identity, f"{type(instance).__name__}.apply must accept exactly one argument (registry)"
            )
        return instance

    def _import_module(self, identity: str, generation: int) -> ModuleType:
        path = Path(identity)
        if not path.is_file():
            raise PluginLoadError(identity, "file not found")

        stem = re.sub(r"\W", "_", path.stem)
        module_name = f"exporter_plugin_{stem}_{generation}"
        spec = importlib.util.spec_from_file_location(
            module_name, path, loader=SourceOnlyLoader(module_name, identity)
        )
        if spec is None or spec.loader is None:
            raise PluginLoadError(identity, "cannot create module spec")

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise PluginLoadError(identity, f"{e.__class__.__name__}: {e}") from e
        return module


class SourceOnlyLoader(importlib.machinery.SourceFileLoader):
    """
    Source loader that never reads or writes cached bytecode.

    __pycache__ entries are keyed on whole-second mtime and size, so an edit
    that keeps the size within the same second would load stale code.
    """

    def get_code(self, fullname):
        source = self.get_data(self.path)
        return self.source_to_code(source, self.path)

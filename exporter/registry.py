"""
Metric registry facade over prometheus_client.

The exporter keeps one shared CollectorRegistry for all plugins. Plugins never
touch it directly: each loaded plugin unit receives a RegistryScope, a view of
the shared registry that remembers which collectors the unit registered. When a
unit is replaced or removed its scope is closed, which unregisters everything
it owned, so a reloaded plugin starts from a clean slate instead of colliding
with the metric objects created by its previous module.

A second, independent registry carries the process/platform/GC collectors
served on /default-metrics.

Plugins written against prometheus_client's defaults (`Gauge(name, help)`)
register into the global REGISTRY while their module runs.
capture_default_registrations() takes those collectors back out so each
plugin generation owns them through its scope, and the next generation can
create metrics with the same names.
"""

import asyncio
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from loguru import logger
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    GCCollector,
    REGISTRY,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from .errors import RenderError


class RegistryScope:
    """
    Per-unit view of the shared registry.

    Registering the same collector object twice is a no-op, so providers may
    call register() on every apply. A collector whose metric names are already
    taken by another collector is rejected by prometheus_client with ValueError.
    """

    def __init__(self, registry: CollectorRegistry, owner: str):
        self._registry = registry
        self._owner = owner
        self._collectors: List[object] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def owner(self) -> str:
        """Identity of the plugin unit owning this scope."""
        return self._owner

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def collectors(self) -> List[object]:
        """Collectors currently registered through this scope."""
        with self._lock:
            return list(self._collectors)

    def register(self, collector):
        """
        Register a collector in the shared registry on behalf of the owner.

        Args:
            collector: Any prometheus_client collector (Gauge, Counter, custom)

        Returns:
            The collector, for chaining

        Raises:
            ValueError: If another collector already uses one of its names
        """
        with self._lock:
            if self._closed:
                logger.bind(context="RegistryScope.register").warning(
                    f"Ignoring registration from retired plugin {self._owner}"
                )
                return collector
            if any(existing is collector for existing in self._collectors):
                return collector
            self._registry.register(collector)
            self._collectors.append(collector)
        return collector

    def unregister(self, collector) -> None:
        """Remove a collector previously registered through this scope."""
        with self._lock:
            for index, existing in enumerate(self._collectors):
                if existing is collector:
                    del self._collectors[index]
                    self._registry.unregister(collector)
                    return
        raise KeyError(f"Collector not registered by {self._owner}")

    def close(self) -> int:
        """
        Unregister every owned collector and refuse further registrations.

        Returns:
            Number of collectors removed from the shared registry
        """
        log = logger.bind(context="RegistryScope.close")
        with self._lock:
            self._closed = True
            collectors, self._collectors = self._collectors, []
        removed = 0
        for collector in collectors:
            try:
                self._registry.unregister(collector)
                removed += 1
            except KeyError:
                log.debug(f"Collector of {self._owner} was already unregistered")
        log.debug(f"Closed registry scope of {self._owner} ({removed} collectors)")
        return removed


class MetricRegistry:
    """
    Shared registry used by every plugin unit.

    Hands out scopes and renders the exposition text. Rendering runs in the
    default executor because collectors may do blocking work in collect().
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self._registry = registry if registry is not None else CollectorRegistry()

    @property
    def collector_registry(self) -> CollectorRegistry:
        return self._registry

    def scope(self, owner: str) -> RegistryScope:
        """Create a fresh scope for a newly loaded plugin unit."""
        return RegistryScope(self._registry, owner)

    async def render(self) -> bytes:
        """
        Render the current exposition text.

        Raises:
            RenderError: If any collector fails while being collected
        """
        return await render_registry(self._registry)


async def render_registry(registry: CollectorRegistry) -> bytes:
    """Render a CollectorRegistry off the event loop."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, generate_latest, registry)
    except Exception as e:
        raise RenderError(str(e) or e.__class__.__name__) from e


def create_default_registry() -> CollectorRegistry:
    """
    Build the registry served on /default-metrics.

    Holds the process, platform and garbage-collector collectors, kept apart
    from the plugin registry and from the prometheus_client global REGISTRY.
    """
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)
    return registry


_capture_lock = threading.Lock()


def _default_registry_collectors() -> List[object]:
    # prometheus_client has no public listing of registered collectors
    with REGISTRY._lock:
        return list(REGISTRY._collector_to_names)


@contextmanager
def capture_default_registrations() -> Iterator[List[object]]:
    """
    Collect what a block registers in prometheus_client's global REGISTRY.

    On exit, every collector added to REGISTRY inside the block is removed
    from it again and appended to the yielded list, whether or not the block
    raised. Captures are serialized, so concurrent plugin loads never claim
    each other's collectors.

    Example:
        with capture_default_registrations() as captured:
            exec_plugin_module()
        unit_collectors = tuple(captured)
    """
    log = logger.bind(context="capture_default_registrations")
    with _capture_lock:
        before = {id(collector) for collector in _default_registry_collectors()}
        captured: List[object] = []
        try:
            yield captured
        finally:
            for collector in _default_registry_collectors():
                if id(collector) in before:
                    continue
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    continue
                captured.append(collector)
            if captured:
                log.debug(f"Took {len(captured)} collectors out of the default registry")

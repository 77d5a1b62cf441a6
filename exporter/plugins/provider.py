"""
Metric provider contract.

This module defines what a plugin must look like once loaded:
- MetricProvider: Protocol every plugin instance satisfies
- BaseMetricProvider: Optional convenience base class
- FunctionProvider: Adapter for plugins exporting a plain function
- PluginUnit: The record stored in the plugin table for one identity

A provider receives its RegistryScope on every refresh cycle, registers the
collectors it needs (repeated registration of the same object is harmless)
and updates their values. apply() may be a coroutine function.
"""

import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Tuple, runtime_checkable

from ..registry import RegistryScope


@runtime_checkable
class MetricProvider(Protocol):
    """
    Protocol for metric provider plugins.

    Implementations register metrics into the scope they are given and
    update their values. Returning False signals failure; returning None
    or True signals success.
    """

    def apply(self, registry: RegistryScope) -> Any:
        """
        Update metrics.

        Args:
            registry: Scope of the shared metric registry owned by this plugin

        Example:
            def apply(self, registry):
                registry.register(self.gauge)
                self.gauge.set(self._read_value())
        """
        ...


class BaseMetricProvider:
    """
    Base class for metric providers (optional convenience).

    Subclasses declare their collectors in __init__, list them in
    `collectors`, and implement update(). apply() registers the collectors
    before calling update().
    """

    collectors: tuple = ()

    def apply(self, registry: RegistryScope) -> Any:
        for collector in self.collectors:
            registry.register(collector)
        return self.update()

    def update(self) -> Any:
        """Must be implemented by subclasses."""
        raise NotImplementedError(
            f"{self.__class__.__name__} must implement update()"
        )


class FunctionProvider:
    """Wraps a single-argument callable as a MetricProvider."""

    def __init__(self, func: Callable[[RegistryScope], Any]):
        if not callable(func):
            raise TypeError(f"Expected a callable, got {type(func)}")
        self.func = func
        self.__name__ = getattr(func, "__name__", self.__class__.__name__)

    def apply(self, registry: RegistryScope) -> Any:
        return self.func(registry)

    def is_coroutine(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    def __repr__(self) -> str:
        return f"FunctionProvider({self.__name__})"


def accepts_single_argument(func: Callable) -> bool:
    """Check whether func can be called with exactly one positional argument."""
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        # Builtins without introspectable signatures: accept and let apply fail
        return True
    try:
        signature.bind(None)
    except TypeError:
        return False
    return True


def is_coroutine_provider(provider: MetricProvider) -> bool:
    """True when the provider's apply() must be awaited on the event loop."""
    if isinstance(provider, FunctionProvider):
        return provider.is_coroutine()
    return inspect.iscoroutinefunction(provider.apply)


@dataclass(frozen=True)
class PluginUnit:
    """
    One loaded plugin.

    Attributes:
        identity: Resolved path of the plugin file
        provider: Provider instance built from the plugin module
        scope: Registry scope owned by this unit
        generation: Load counter, increases on every successful (re)load
        loaded_at: Epoch seconds of the load
        module_collectors: Collectors the module created in prometheus_client's
            default registry, moved into the unit's scope on every apply
    """
    identity: str
    provider: MetricProvider
    scope: RegistryScope
    generation: int
    loaded_at: float = field(default_factory=time.time)
    module_collectors: Tuple[object, ...] = ()

    @property
    def name(self) -> str:
        """Short display name (file name of the plugin)."""
        return self.identity.replace("\\", "/").rsplit("/", 1)[-1]

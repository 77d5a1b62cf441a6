"""
Refresh coordinator.

Runs every loaded plugin against the shared registry and publishes the
rendered exposition text into the serving cache.

Key Responsibilities:
    - Single in-flight cycle: concurrent refresh() calls join the running one
    - Failure isolation: one plugin raising, timing out or returning False is
      logged and recorded, the rest of the cycle goes on
    - Last-good serving: a render failure leaves the cached snapshot as it was
    - Retirement: units replaced or removed since the previous cycle get their
      registry scopes closed before the new cycle runs
    - Stuck plugins: synchronous providers run on a dedicated executor, and a
      unit whose previous apply() has not returned is skipped, so a blocked
      thread can neither pile up copies of itself nor starve rendering

Policies:
    - interval: a background task refreshes every N seconds, scrapes read the cache
    - on_request: every scrape awaits refresh() and serves what it published
"""

import asyncio
import functools
import inspect
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from loguru import logger

from .cache import ServingCache
from .errors import PluginExecutionError, RenderError
from .plugins.provider import PluginUnit, is_coroutine_provider
from .plugins.table import PluginTable
from .registry import MetricRegistry


class RefreshPolicy(str, Enum):
    """When plugins are re-run."""
    INTERVAL = "interval"
    ON_REQUEST = "on_request"


@dataclass
class RefreshResult:
    """
    Outcome of one refresh cycle.

    Attributes:
        cycle: Sequence number of the cycle (1-based)
        succeeded: Identities of plugins that applied successfully
        failed: Identity -> failure message for plugins that did not
        published: Whether a new snapshot reached the cache
        duration: Wall time of the cycle in seconds
        error: Render failure message, if rendering failed
    """
    cycle: int
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    published: bool = False
    duration: float = 0.0
    error: Optional[str] = None


class RefreshCoordinator:
    """
    Coordinates refresh cycles over the plugin table.

    Only one cycle runs at a time. The guard is a single task slot: while a
    cycle is in flight every refresh() call awaits that same task, so the
    periodic loop and scrape-triggered refreshes never interleave their
    writes to the registry.
    """

    def __init__(
        self,
        table: PluginTable,
        registry: MetricRegistry,
        cache: ServingCache,
        plugin_timeout: Optional[float] = 30.0,
        concurrent: bool = False,
        plugin_workers: Optional[int] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            table: Plugin table to read units from
            registry: Shared registry to render
            cache: Cache receiving each published render
            plugin_timeout: Seconds one plugin may take per cycle (None = unbounded)
            concurrent: Run plugins of one cycle concurrently instead of in order
            plugin_workers: Threads of the executor running synchronous providers
                (None = ThreadPoolExecutor default)
        """
        self.table = table
        self.registry = registry
        self.cache = cache
        self.plugin_timeout = plugin_timeout or None
        self.concurrent = concurrent
        self.plugin_workers = plugin_workers

        # Identity -> future of a synchronous apply() that outlived its timeout
        self._running_applies: Dict[str, asyncio.Future] = {}
        self._executor: Optional[ThreadPoolExecutor] = None

        self.is_running = False
        self.last_result: Optional[RefreshResult] = None
        self._cycles = 0
        self._in_flight: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None

    @property
    def in_progress(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def cycle_count(self) -> int:
        return self._cycles

    async def refresh(self) -> RefreshResult:
        """
        Run a refresh cycle, or join the one already running.

        The cycle task is shielded: cancelling the caller (for example a
        scrape whose client went away) does not abort the cycle.

        Returns:
            RefreshResult of the cycle that was run or joined
        """
        task = self._in_flight
        if task is None or task.done():
            task = asyncio.create_task(self._run_cycle())
            self._in_flight = task
        else:
            logger.bind(context="RefreshCoordinator.refresh").debug(
                "Refresh already in progress, joining it"
            )
        return await asyncio.shield(task)

    def start(self, interval: float) -> asyncio.Task:
        """Start the periodic refresh loop as a background task."""
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(self.run_periodic(interval))
        return self._periodic_task

    async def run_periodic(self, interval: float):
        """
        Refresh every `interval` seconds until stopped.

        The first cycle is expected to have been run explicitly at startup;
        this loop waits one interval before its first refresh.
        """
        log = logger.bind(context="RefreshCoordinator.run_periodic")
        log.info(f"Refreshing metrics every {interval:g}s")
        self.is_running = True
        try:
            while self.is_running:
                await asyncio.sleep(interval)
                if not self.is_running:
                    break
                await self.refresh()
        except asyncio.CancelledError:
            log.info("Periodic refresh cancelled")
            raise
        finally:
            self.is_running = False

    async def stop(self):
        """Stop the periodic loop and wait for an in-flight cycle to end."""
        log = logger.bind(context="RefreshCoordinator.stop")
        self.is_running = False
        task = self._periodic_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.in_progress:
            log.info("Waiting for in-flight refresh to finish")
            try:
                await asyncio.wait_for(asyncio.shield(self._in_flight), timeout=self.plugin_timeout)
            except asyncio.TimeoutError:
                log.warning("In-flight refresh did not finish before shutdown")

        executor, self._executor = self._executor, None
        if executor is not None:
            if self._running_applies:
                log.warning(
                    f"{len(self._running_applies)} plugins still running at shutdown: "
                    f"{', '.join(sorted(self._running_applies))}"
                )
            executor.shutdown(wait=False)

    async def _run_cycle(self) -> RefreshResult:
        log = logger.bind(context="RefreshCoordinator._run_cycle")
        self._cycles += 1
        result = RefreshResult(cycle=self._cycles)
        started = time.perf_counter()

        self._retire_units()
        units = self.table.snapshot()
        log.debug(f"Refresh cycle {result.cycle} over {len(units)} plugins")

        if self.concurrent:
            await asyncio.gather(*(self._apply_isolated(unit, result) for unit in units))
        else:
            for unit in units:
                await self._apply_isolated(unit, result)

        try:
            text = await self.registry.render()
        except RenderError as e:
            result.error = e.reason
            log.error(f"{e}; keeping previous metrics snapshot")
        else:
            self.cache.publish(text)
            result.published = True

        result.duration = time.perf_counter() - started
        if result.failed:
            log.warning(
                f"Refresh cycle {result.cycle}: {len(result.failed)} of {len(units)} plugins failed"
            )
        else:
            log.debug(f"Refresh cycle {result.cycle} finished in {result.duration:.3f}s")
        self.last_result = result
        return result

    def _retire_units(self):
        log = logger.bind(context="RefreshCoordinator._retire_units")
        for unit in self.table.drain_retired():
            removed = unit.scope.close()
            log.debug(
                f"Retired {unit.name} generation {unit.generation}, unregistered {removed} collectors"
            )

    async def _apply_isolated(self, unit: PluginUnit, result: RefreshResult):
        try:
            await self.apply_unit(unit)
        except PluginExecutionError as e:
            logger.bind(context="RefreshCoordinator._apply_isolated").error(str(e))
            result.failed[unit.identity] = e.reason
        else:
            result.succeeded.append(unit.identity)

    async def apply_unit(self, unit: PluginUnit):
        """
        Apply one unit to its registry scope.

        Collectors the plugin module created in the default registry are
        registered into the unit's scope first. Coroutine providers then run
        on the event loop; synchronous providers run on the plugin executor.
        Both are bounded by plugin_timeout.

        Raises:
            PluginExecutionError: If the provider raised, timed out, returned
                False or is still running from an earlier cycle
        """
        provider = unit.provider
        try:
            for collector in unit.module_collectors:
                unit.scope.register(collector)
        except ValueError as e:
            raise PluginExecutionError(unit.identity, f"cannot register module metrics: {e}") from e

        try:
            if is_coroutine_provider(provider):
                outcome = await asyncio.wait_for(
                    provider.apply(unit.scope), timeout=self.plugin_timeout
                )
            else:
                outcome = await self._apply_in_executor(unit)
                if inspect.isawaitable(outcome):
                    outcome = await asyncio.wait_for(outcome, timeout=self.plugin_timeout)
        except PluginExecutionError:
            raise
        except asyncio.TimeoutError as e:
            raise PluginExecutionError(
                unit.identity, f"timed out after {self.plugin_timeout:g}s"
            ) from e
        except Exception as e:
            raise PluginExecutionError(unit.identity, f"{e.__class__.__name__}: {e}") from e

        if outcome is False:
            raise PluginExecutionError(unit.identity, "provider reported failure")

    async def _apply_in_executor(self, unit: PluginUnit):
        """
        Run a synchronous apply() on the plugin executor.

        A thread cannot be interrupted, so on timeout the future is kept until
        the thread returns and the unit is skipped by every cycle in between.
        """
        if unit.identity in self._running_applies:
            raise PluginExecutionError(unit.identity, "previous apply() still running")

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._plugin_executor(), unit.provider.apply, unit.scope)
        try:
            # Shielded so the timeout leaves the future pending while the thread runs
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.plugin_timeout)
        except asyncio.TimeoutError:
            self._running_applies[unit.identity] = future
            future.add_done_callback(functools.partial(self._release_apply, unit.identity))
            raise

    def _release_apply(self, identity: str, future: asyncio.Future):
        if self._running_applies.get(identity) is future:
            del self._running_applies[identity]
        outcome = "was cancelled" if future.cancelled() else "returned"
        if not future.cancelled() and future.exception() is not None:
            outcome = f"raised {future.exception().__class__.__name__}"
        logger.bind(context="RefreshCoordinator._release_apply").info(
            f"Timed out apply() of {identity} {outcome}"
        )

    def _plugin_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.plugin_workers, thread_name_prefix="metrics-plugin"
            )
        return self._executor

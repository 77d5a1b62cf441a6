"""
Metrics Exporter - Main Orchestration

This module wires the exporter together and runs it.

Key Responsibilities:
    - Load plugins from the plugin directory at startup
    - Run the first refresh cycle before serving
    - Keep the directory watcher, the periodic refresher and the HTTP server
      running side by side in one event loop
    - Shut everything down on SIGINT/SIGTERM

Architecture:
    DirectoryWatcher -> PluginLoader -> PluginTable
        -> RefreshCoordinator -> ServingCache -> HTTP server
"""

import asyncio
import signal
import sys
from typing import List, Optional

from loguru import logger

from .cache import ServingCache
from .communication.http_server import ExporterHTTPServer, ProcessClock, create_app
from .config import ExporterConfig, load_config
from .errors import DirectoryAccessError
from .plugins.loader import PluginLoader, RemovalPolicy
from .plugins.table import PluginTable
from .refresh import RefreshCoordinator, RefreshPolicy
from .registry import MetricRegistry, create_default_registry
from .watcher import DirectoryWatcher


def setup_logging(config: ExporterConfig):
    """
    Configure logging based on exporter configuration.

    Args:
        config: Exporter configuration
    """
    logger.remove()  # Remove default handler

    log_level = config.logging.get("level", "INFO")
    log_format = config.logging.get("format", "text")

    if log_format == "json":
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        format_str = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>"
        logger.add(sys.stdout, level=log_level, format=format_str, colorize=True)

    # File logging if specified
    log_file = config.logging.get("file")
    if log_file:
        logger.add(
            log_file,
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function} | {message}",
            rotation="10 MB"
        )
        logger.info(f"Logging to file: {log_file}")


class MetricsExporter:
    """
    Owns every exporter component and their lifecycle.

    Startup order:
    1. Scan the plugin directory and load every eligible plugin
    2. Run one refresh cycle so the first scrape already has data
    3. Start the directory watcher
    4. Start the periodic refresher (interval policy only)
    5. Serve HTTP until shutdown
    """

    def __init__(self, config: ExporterConfig):
        """
        Build the components described by the configuration.

        Args:
            config: Exporter configuration
        """
        log = logger.bind(context="MetricsExporter.__init__")
        self.config = config
        self.policy = RefreshPolicy(config.refresh_policy)

        self.registry = MetricRegistry()
        self.default_registry = create_default_registry() if config.default_metrics else None
        self.table = PluginTable()
        self.cache = ServingCache()
        self.loader = PluginLoader(
            self.table,
            self.registry,
            extension=config.plugin_extension,
            export_name=config.export_name,
            on_remove=RemovalPolicy(config.on_remove),
        )
        self.coordinator = RefreshCoordinator(
            self.table,
            self.registry,
            self.cache,
            plugin_timeout=config.plugin_timeout_seconds,
            concurrent=config.concurrent_refresh,
        )
        self.watcher = DirectoryWatcher(
            config.plugin_dir,
            self.loader,
            debounce_ms=config.watch_debounce_ms,
            force_polling=config.watch_force_polling,
        )
        self.clock = ProcessClock()
        self.app = create_app(
            self.cache,
            self.coordinator,
            policy=self.policy,
            default_registry=self.default_registry,
            clock=self.clock,
        )
        self.server = ExporterHTTPServer(self.app, host=config.host, port=config.port)

        self.is_running = False
        self._tasks: List[asyncio.Task] = []

        log.info(f"Plugin directory: {config.plugin_dir}")
        log.info(f"Refresh policy: {self.policy.value}")
        if self.policy is RefreshPolicy.INTERVAL:
            log.info(f"Refresh interval: {config.refresh_interval_ms}ms")

    async def start(self) -> List[asyncio.Task]:
        """
        Load plugins, run the first refresh and start the background tasks.

        Returns:
            The long-lived tasks (watcher, refresher, HTTP server)
        """
        log = logger.bind(context="MetricsExporter.start")
        self.is_running = True

        try:
            await self.loader.load_directory(self.config.plugin_dir)
        except DirectoryAccessError as e:
            log.error(f"Failed to load metrics during initialization: {e}")

        await self.coordinator.refresh()

        self._tasks = [asyncio.create_task(self.watcher.run(), name="directory-watcher")]
        if self.policy is RefreshPolicy.INTERVAL:
            self._tasks.append(self.coordinator.start(self.config.refresh_interval))
        self._tasks.append(asyncio.create_task(self.server.start_server(), name="http-server"))

        log.info(
            f"Prometheus exporter running at http://{self.config.host}:{self.config.port}/metrics"
        )
        return self._tasks

    async def serve(self):
        """Run until the HTTP server exits or shutdown() is called."""
        tasks = await self.start()
        server_task = tasks[-1]
        try:
            await server_task
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Stop watcher, refresher and server, waiting for each briefly."""
        log = logger.bind(context="MetricsExporter.shutdown")
        if not self.is_running:
            return
        self.is_running = False
        log.info("Shutting down exporter...")

        self.watcher.stop()
        await self.server.stop_server()
        try:
            await asyncio.wait_for(self.coordinator.stop(), timeout=5.0)
        except asyncio.TimeoutError:
            log.warning("Refresh coordinator did not stop within 5 seconds")

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout=5.0
                )
            except asyncio.TimeoutError:
                log.warning("Task shutdown timed out after 5 seconds, cancelling")
                for task in pending:
                    task.cancel()
        log.info("Exporter stopped")


async def main(config: Optional[ExporterConfig] = None):
    """
    Main entry point to start the exporter.

    Args:
        config: Configuration to use; loaded from the environment if omitted
    """
    if config is None:
        config = load_config()
        setup_logging(config)

    log = logger.bind(context="exporter.main")
    log.info("Starting metrics exporter...")

    exporter = MetricsExporter(config)

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        log.info("Shutdown signal received")
        # Server exit ends serve(), which then runs the full shutdown
        loop.create_task(exporter.server.stop_server())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        await exporter.serve()
    except asyncio.CancelledError:
        log.info("Interrupt received")


def run():
    """Console-script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

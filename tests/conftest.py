"""
Pytest configuration and shared fixtures for exporter tests.

All tests run in-process. Plugin files are written into a temporary
directory per test, and every test gets its own prometheus_client registry,
so metric names never clash between tests.

Key Fixtures:
    - plugin_dir: Empty temporary plugin directory
    - metric_registry: Fresh MetricRegistry
    - plugin_table: Empty PluginTable
    - loader: PluginLoader over the table and registry
    - cache: Empty ServingCache
    - coordinator: RefreshCoordinator with a short plugin timeout
"""

import pytest
from loguru import logger

from exporter.cache import ServingCache
from exporter.plugins.loader import PluginLoader
from exporter.plugins.table import PluginTable
from exporter.refresh import RefreshCoordinator
from exporter.registry import MetricRegistry


@pytest.fixture
def plugin_dir(tmp_path):
    """Provide an empty plugin directory."""
    directory = tmp_path / "metrics"
    directory.mkdir()
    return directory


@pytest.fixture
def metric_registry():
    """Provide a registry backed by a fresh CollectorRegistry."""
    return MetricRegistry()


@pytest.fixture
def plugin_table():
    """Provide an empty plugin table."""
    return PluginTable()


@pytest.fixture
def loader(plugin_table, metric_registry):
    """Provide a loader with the default keep-on-remove policy."""
    return PluginLoader(plugin_table, metric_registry)


@pytest.fixture
def cache():
    """Provide an empty serving cache."""
    return ServingCache()


@pytest.fixture
def coordinator(plugin_table, metric_registry, cache):
    """Provide a refresh coordinator with a 2 second plugin timeout."""
    return RefreshCoordinator(plugin_table, metric_registry, cache, plugin_timeout=2.0)


def pytest_configure(config):
    """Configure pytest settings."""
    # Set up logging for tests
    logger.remove()  # Remove default logger
    logger.add(
        "tests.log",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name}:{function}:{line} | {message}",
        rotation="10 MB"
    )

    # Also log to console during tests
    logger.add(
        lambda msg: print(msg, end=""),
        level="INFO",
        format="{time:HH:mm:ss} | {level} | {message}"
    )


def pytest_sessionstart(session):
    """Called after the Session object has been created."""
    logger.info("Starting exporter test session")


def pytest_sessionfinish(session, exitstatus):
    """Called after whole test run finished."""
    logger.info(f"Exporter test session finished with status: {exitstatus}")

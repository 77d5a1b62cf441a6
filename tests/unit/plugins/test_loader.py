"""
Unit tests for PluginLoader.

Tests every accepted export shape, load failures, directory scans,
replace-on-reload and removal policies.
"""

import os

import pytest
from prometheus_client import REGISTRY

from exporter.errors import DirectoryAccessError, PluginLoadError
from exporter.plugins.loader import PluginLoader, RemovalPolicy
from exporter.plugins.provider import BaseMetricProvider, FunctionProvider
from tests.fixtures.plugin_sources import (
    CONSTRUCTOR_RAISES,
    DEFAULT_REGISTRY_THEN_RAISES,
    GAUGE_ASYNC,
    GAUGE_CLASS,
    GAUGE_DEFAULT_REGISTRY,
    GAUGE_FUNCTION,
    GAUGE_INSTANCE,
    MISSING_APPLY,
    NO_EXPORT,
    NOT_CALLABLE,
    SYNTAX_ERROR,
    TWO_ARGUMENTS,
    render_source,
    write_plugin,
)


class TestEligibility:
    """Test which files count as plugins."""

    def test_python_files_are_eligible(self, loader, plugin_dir):
        """Test the default extension."""
        assert loader.is_eligible(plugin_dir / "queue.py")
        assert not loader.is_eligible(plugin_dir / "notes.txt")
        assert not loader.is_eligible(plugin_dir / "queue.pyc")

    def test_hidden_and_private_files_are_skipped(self, loader, plugin_dir):
        """Test that editor temp files and helpers are not loaded."""
        assert not loader.is_eligible(plugin_dir / ".queue.py")
        assert not loader.is_eligible(plugin_dir / "__init__.py")
        assert not loader.is_eligible(plugin_dir / "_helpers.py")

    def test_extension_without_dot(self, plugin_table, metric_registry, plugin_dir):
        """Test that the extension is normalized."""
        loader = PluginLoader(plugin_table, metric_registry, extension="plugin")

        assert loader.extension == ".plugin"
        assert loader.is_eligible(plugin_dir / "queue.plugin")

    def test_identity_is_resolved_path(self, loader, plugin_dir):
        """Test that relative and absolute spellings share one identity."""
        path = plugin_dir / "queue.py"
        dotted = plugin_dir / "." / "queue.py"

        assert loader.identity_of(path) == loader.identity_of(dotted)
        assert loader.identity_of(path) == str(path.resolve())


class TestLoadShapes:
    """Test the accepted provider export shapes."""

    @pytest.mark.asyncio
    async def test_load_function_export(self, loader, plugin_table, plugin_dir):
        """Test that a plain function is wrapped in FunctionProvider."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric", value=10)

        unit = await loader.load(path)

        assert isinstance(unit.provider, FunctionProvider)
        assert unit.identity == str(path.resolve())
        assert unit.scope.owner == unit.identity
        assert plugin_table.get(unit.identity) is unit

    @pytest.mark.asyncio
    async def test_load_class_export(self, loader, plugin_dir):
        """Test that a class export is instantiated."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_CLASS, metric="a_metric")

        unit = await loader.load(path)

        assert isinstance(unit.provider, BaseMetricProvider)
        assert type(unit.provider).__name__ == "GaugeProvider"

    @pytest.mark.asyncio
    async def test_load_instance_export(self, loader, plugin_dir):
        """Test that a ready-made provider instance is used as is."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_INSTANCE, metric="a_metric")

        unit = await loader.load(path)

        assert type(unit.provider).__name__ == "GaugeProvider"
        assert not isinstance(unit.provider, FunctionProvider)

    @pytest.mark.asyncio
    async def test_load_async_function_export(self, loader, plugin_dir):
        """Test that coroutine functions are accepted."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_ASYNC, metric="a_metric")

        unit = await loader.load(path)

        assert unit.provider.is_coroutine()

    @pytest.mark.asyncio
    async def test_custom_export_name(self, plugin_table, metric_registry, plugin_dir):
        """Test loading from a different module attribute."""
        loader = PluginLoader(plugin_table, metric_registry, export_name="process")
        path = write_plugin(plugin_dir, "a.py", NO_EXPORT)

        unit = await loader.load(path)

        assert unit.provider.func.__name__ == "process"

    @pytest.mark.asyncio
    async def test_modules_are_independent(self, loader, plugin_dir):
        """Test that each load gets a fresh module and fresh metric objects."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric")

        first = await loader.load(path)
        second = await loader.load(path)

        assert first.provider.func is not second.provider.func
        assert first.scope is not second.scope
        assert second.generation > first.generation


class TestLoadFailures:
    """Test rejected plugin files."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("template, reason", [
        (NO_EXPORT, "does not export 'provider'"),
        (NOT_CALLABLE, "must be callable or implement MetricProvider"),
        (TWO_ARGUMENTS, "must accept exactly one argument"),
        (MISSING_APPLY, "does not implement MetricProvider.apply"),
        (CONSTRUCTOR_RAISES, "raised ValueError: missing credentials"),
        (SYNTAX_ERROR, "SyntaxError"),
    ])
    async def test_invalid_plugin_rejected(self, loader, plugin_table, plugin_dir, template, reason):
        """Test that invalid plugins raise PluginLoadError and are not stored."""
        path = write_plugin(plugin_dir, "bad.py", template)

        with pytest.raises(PluginLoadError) as exc_info:
            await loader.load(path)

        assert reason in exc_info.value.reason
        assert exc_info.value.identity == str(path.resolve())
        assert len(plugin_table) == 0

    @pytest.mark.asyncio
    async def test_missing_file(self, loader, plugin_dir):
        """Test loading a file that does not exist."""
        with pytest.raises(PluginLoadError, match="file not found"):
            await loader.load(plugin_dir / "missing.py")

    @pytest.mark.asyncio
    async def test_ineligible_file(self, loader, plugin_dir):
        """Test that load() refuses files with the wrong extension."""
        path = plugin_dir / "b.txt"
        path.write_text("not a plugin")

        with pytest.raises(PluginLoadError, match="not a .py plugin file"):
            await loader.load(path)

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_previous_unit(self, loader, plugin_table, plugin_dir):
        """Test that a broken edit leaves the last good unit in place."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric", value=10)
        good = await loader.load(path)

        write_plugin(plugin_dir, "a.py", SYNTAX_ERROR)
        result = await loader.reload(path)

        assert result is None
        assert plugin_table.get(good.identity) is good
        assert plugin_table.drain_retired() == []

    @pytest.mark.asyncio
    async def test_reload_ignores_ineligible(self, loader, plugin_table, plugin_dir):
        """Test that reload() skips non-plugin files without error."""
        path = plugin_dir / "b.txt"
        path.write_text("not a plugin")

        assert await loader.reload(path) is None
        assert len(plugin_table) == 0


class TestLoadDirectory:
    """Test the startup directory scan."""

    @pytest.mark.asyncio
    async def test_loads_only_eligible_files(self, loader, plugin_table, plugin_dir):
        """Test that a.py is loaded and b.txt is not."""
        write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric", value=10)
        (plugin_dir / "b.txt").write_text("ignored")

        units = await loader.load_directory(plugin_dir)

        assert [unit.name for unit in units] == ["a.py"]
        assert plugin_table.identities() == [str((plugin_dir / "a.py").resolve())]

    @pytest.mark.asyncio
    async def test_bad_plugin_does_not_stop_scan(self, loader, plugin_table, plugin_dir):
        """Test that one failing file does not block the others."""
        write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric")
        write_plugin(plugin_dir, "b.py", SYNTAX_ERROR)
        write_plugin(plugin_dir, "c.py", GAUGE_CLASS, metric="c_metric")

        units = await loader.load_directory(plugin_dir)

        assert [unit.name for unit in units] == ["a.py", "c.py"]
        assert len(plugin_table) == 2

    @pytest.mark.asyncio
    async def test_subdirectories_are_not_scanned(self, loader, plugin_dir):
        """Test that only top-level files are plugins."""
        nested = plugin_dir / "nested"
        nested.mkdir()
        write_plugin(nested, "deep.py", GAUGE_FUNCTION, metric="deep_metric")

        assert await loader.load_directory(plugin_dir) == []

    @pytest.mark.asyncio
    async def test_missing_directory(self, loader, tmp_path):
        """Test that an unreadable directory raises DirectoryAccessError."""
        with pytest.raises(DirectoryAccessError) as exc_info:
            await loader.load_directory(tmp_path / "does-not-exist")

        assert exc_info.value.directory == str(tmp_path / "does-not-exist")


class TestRemoval:
    """Test removal policies."""

    @pytest.mark.asyncio
    async def test_keep_policy(self, loader, plugin_table, plugin_dir):
        """Test that by default a deleted file keeps its unit."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric")
        unit = await loader.load(path)
        path.unlink()

        assert loader.remove(path) is None
        assert plugin_table.get(unit.identity) is unit

    @pytest.mark.asyncio
    async def test_unregister_policy(self, plugin_table, metric_registry, plugin_dir):
        """Test that the unregister policy drops and retires the unit."""
        loader = PluginLoader(plugin_table, metric_registry, on_remove=RemovalPolicy.UNREGISTER)
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric")
        unit = await loader.load(path)
        path.unlink()

        assert loader.remove(path) is unit
        assert unit.identity not in plugin_table
        assert plugin_table.drain_retired() == [unit]

    def test_policy_from_string(self, plugin_table, metric_registry):
        """Test that configuration strings map onto the policy."""
        loader = PluginLoader(plugin_table, metric_registry, on_remove="unregister")

        assert loader.on_remove is RemovalPolicy.UNREGISTER

    def test_remove_unknown(self, loader, plugin_dir):
        """Test removing a file that was never loaded."""
        assert loader.remove(plugin_dir / "never.py") is None


class TestIdentityUniqueness:
    """Test that reloads never duplicate an identity."""

    @pytest.mark.asyncio
    async def test_repeated_reloads(self, loader, plugin_table, plugin_dir):
        """Test arbitrary interleavings of writes and reloads."""
        names = ["a.py", "b.py", "a.py", "a.py", "b.py", "c.py", "a.py"]

        for index, name in enumerate(names):
            path = write_plugin(plugin_dir, name, GAUGE_FUNCTION, metric=f"{name[0]}_metric", value=index)
            await loader.reload(path)

        assert len(plugin_table) == 3
        assert len(set(plugin_table.identities())) == 3
        assert len(plugin_table.drain_retired()) == 4


class TestDefaultRegistryMetrics:
    """Test plugins that create metrics in prometheus_client's global REGISTRY."""

    @pytest.mark.asyncio
    async def test_module_collectors_taken_out_of_global_registry(self, loader, plugin_dir):
        """Test that a module-level Gauge() is moved onto the unit."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_DEFAULT_REGISTRY, metric="loader_global_gauge")

        unit = await loader.load(path)

        assert len(unit.module_collectors) == 1
        assert REGISTRY.get_sample_value("loader_global_gauge") is None

    @pytest.mark.asyncio
    async def test_reloading_default_registry_plugin(self, loader, plugin_table, plugin_dir):
        """Test that re-importing the same file does not clash with the first import."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_DEFAULT_REGISTRY, metric="loader_reload_gauge", value=10)
        first = await loader.load(path)

        write_plugin(plugin_dir, "a.py", GAUGE_DEFAULT_REGISTRY, metric="loader_reload_gauge", value=99)
        second = await loader.reload(path)

        assert second is not None
        assert plugin_table.get(first.identity) is second
        assert second.module_collectors[0] is not first.module_collectors[0]

    @pytest.mark.asyncio
    async def test_failed_import_leaves_global_registry_clean(self, loader, plugin_table, plugin_dir):
        """Test that a module raising after creating a Gauge leaves nothing behind."""
        path = write_plugin(plugin_dir, "a.py", DEFAULT_REGISTRY_THEN_RAISES, metric="loader_orphan_gauge")

        with pytest.raises(PluginLoadError, match="missing client library"):
            await loader.load(path)

        write_plugin(plugin_dir, "a.py", GAUGE_DEFAULT_REGISTRY, metric="loader_orphan_gauge")
        unit = await loader.load(path)
        assert len(unit.module_collectors) == 1
        assert len(plugin_table) == 1

    @pytest.mark.asyncio
    async def test_scoped_plugins_capture_nothing(self, loader, plugin_dir):
        """Test that registry=None metrics are not treated as module collectors."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric")

        unit = await loader.load(path)

        assert unit.module_collectors == ()


class TestSourceFreshness:
    """Test that every load compiles the current file contents."""

    @pytest.mark.asyncio
    async def test_same_size_edit_within_same_mtime(self, loader, plugin_dir, metric_registry):
        """Test an edit that keeps both the size and the mtime of the file."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric", value=10)
        first = await loader.load(path)
        stat = path.stat()

        path.write_text(render_source(GAUGE_FUNCTION, metric="a_metric", value=11))
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
        assert path.stat().st_size == stat.st_size
        second = await loader.load(path)

        first.provider.apply(first.scope)
        first.scope.close()
        second.provider.apply(second.scope)
        assert metric_registry.collector_registry.get_sample_value("a_metric") == 11.0

    @pytest.mark.asyncio
    async def test_no_bytecode_written(self, loader, plugin_dir):
        """Test that loading leaves no __pycache__ in the plugin directory."""
        path = write_plugin(plugin_dir, "a.py", GAUGE_FUNCTION, metric="a_metric")

        await loader.load(path)
        await loader.load(path)

        assert not (plugin_dir / "__pycache__").exists()

"""
Unit tests for the module registry

Discovery, stage binding, failure isolation and hot reload.
"""

import asyncio
import io
import pytest
from pathlib import Path

from tests.fixtures import EDGE_DIR

VIEWER = "stage = 'viewer-request'\ndef handler(event, context):\n    return None\n"
ORIGIN = "stage = 'origin-request'\ndef handler(event, context):\n    return None\n"


def quiet_logger(stream=None):
    from cloudfrontize.core.edge_logger import EdgeLogger
    return EdgeLogger(stream=stream or io.StringIO(), min_echo_level='DEBUG')


class TestDiscovery:
    """Test finding plugin files"""

    def test_single_file(self):
        """Should return the file itself"""
        from cloudfrontize.core.registry import discover_plugin_files

        path = EDGE_DIR / 'mobile_redirect.py'

        assert discover_plugin_files(path) == [path]

    def test_directory_sorted_direct_children(self, tmp_path):
        """Should list direct .py children in name order, nothing nested"""
        from cloudfrontize.core.registry import discover_plugin_files

        (tmp_path / 'b.py').write_text('')
        (tmp_path / 'a.py').write_text('')
        (tmp_path / 'notes.txt').write_text('')
        (tmp_path / 'nested').mkdir()
        (tmp_path / 'nested' / 'c.py').write_text('')

        assert [p.name for p in discover_plugin_files(tmp_path)] == ['a.py', 'b.py']

    def test_missing_path(self, tmp_path):
        """Should return nothing for a path that does not exist"""
        from cloudfrontize.core.registry import discover_plugin_files

        assert discover_plugin_files(tmp_path / 'missing') == []


class TestBuildStageMap:
    """Test indexing handlers by stage"""

    def test_single_file_binding(self):
        """Should bind one file to its declared stage"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.variable_store import VariableStore

        stage_map = build_stage_map(EDGE_DIR / 'security_headers.py', VariableStore(), quiet_logger())

        assert list(stage_map) == ['origin-response']
        assert stage_map['origin-response'][0].name == 'security_headers.py'

    def test_multi_hook_directory(self):
        """Should bind every stage in a directory and ignore helpers"""
        import cloudfrontize.core.registry as registry
        from cloudfrontize.core.variable_store import VariableStore

        stream = io.StringIO()
        stage_map = registry.build_stage_map(EDGE_DIR / 'multi_hook_app', VariableStore(), quiet_logger(stream))

        assert list(stage_map) == ['viewer-request', 'origin-response']
        assert 'Ignoring shared.py' in stream.getvalue()
        assert 'Loaded viewer_request.py for viewer-request' in stream.getvalue()

    def test_stage_map_in_pipeline_order(self, tmp_path):
        """Should key the map in stage order whatever the file order"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.variable_store import VariableStore

        (tmp_path / 'a_origin.py').write_text(ORIGIN)
        (tmp_path / 'z_viewer.py').write_text(VIEWER)

        stage_map = build_stage_map(tmp_path, VariableStore(), quiet_logger())

        assert list(stage_map) == ['viewer-request', 'origin-request']

    def test_legacy_hook_type_accepted(self, tmp_path):
        """Should accept `hook_type` as the stage declaration"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.variable_store import VariableStore

        (tmp_path / 'legacy.py').write_text(
            "hook_type = 'viewer-response'\ndef handler(event, context):\n    return None\n"
        )

        assert list(build_stage_map(tmp_path, VariableStore(), quiet_logger())) == ['viewer-response']

    def test_unknown_stage_ignored(self, tmp_path):
        """Should ignore files declaring a stage that does not exist"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.variable_store import VariableStore

        (tmp_path / 'odd.py').write_text("stage = 'edge-magic'\ndef handler(event, context):\n    return None\n")
        (tmp_path / 'nohandler.py').write_text("stage = 'viewer-request'\nhandler = 'not callable'\n")

        assert dict(build_stage_map(tmp_path, VariableStore(), quiet_logger())) == {}

    def test_duplicate_stage_aborts(self, tmp_path):
        """Should refuse a second binding for one stage"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.errors import DuplicateStageBinding
        from cloudfrontize.core.variable_store import VariableStore

        (tmp_path / 'first.py').write_text(VIEWER)
        (tmp_path / 'second.py').write_text(VIEWER)

        with pytest.raises(DuplicateStageBinding) as exc_info:
            build_stage_map(tmp_path, VariableStore(), quiet_logger())

        assert exc_info.value.stage == 'viewer-request'
        assert exc_info.value.existing.name == 'first.py'
        assert exc_info.value.duplicate.name == 'second.py'

    def test_broken_file_skipped(self, tmp_path):
        """Should log a file that fails to load and keep the others"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.variable_store import VariableStore

        (tmp_path / 'a_broken.py').write_text('def oops(:\n')
        (tmp_path / 'b_evil.py').write_text("import os\nstage = 'origin-request'\n")
        (tmp_path / 'c_good.py').write_text(VIEWER)
        stream = io.StringIO()

        stage_map = build_stage_map(tmp_path, VariableStore(), quiet_logger(stream))

        assert list(stage_map) == ['viewer-request']
        assert 'Failed to load edge module' in stream.getvalue()
        assert 'a_broken.py' in stream.getvalue()
        assert "Forbidden: import of 'os'" in stream.getvalue()

    def test_stage_map_is_immutable(self, tmp_path):
        """Should hand out a read-only map of tuples"""
        from cloudfrontize.core.registry import build_stage_map
        from cloudfrontize.core.variable_store import VariableStore

        (tmp_path / 'viewer.py').write_text(VIEWER)
        stage_map = build_stage_map(tmp_path, VariableStore(), quiet_logger())

        with pytest.raises(TypeError):
            stage_map['origin-request'] = ()
        assert isinstance(stage_map['viewer-request'], tuple)


class TestModuleRegistry:
    """Test load/reload/close"""

    def test_load_publishes_map_and_variables(self, tmp_path):
        """Should expose the map and the variables after load"""
        from cloudfrontize.core.registry import ModuleRegistry

        (tmp_path / 'viewer.py').write_text(VIEWER)
        bake = tmp_path / '.bake'
        bake.write_text('API_KEY=secret\n')

        registry = ModuleRegistry(tmp_path, bake_path=bake, logger=quiet_logger())
        registry.load()

        assert registry.stages() == ['viewer-request']
        assert registry.variables.bake_vars['API_KEY'] == 'secret'

    def test_missing_edge_path_is_empty(self, tmp_path):
        """Should warn and serve no hooks when the edge path is missing"""
        from cloudfrontize.core.registry import ModuleRegistry

        stream = io.StringIO()
        registry = ModuleRegistry(tmp_path / 'missing', logger=quiet_logger(stream))
        registry.load()

        assert registry.stages() == []
        assert 'Edge path not found' in stream.getvalue()

    def test_reload_picks_up_changes(self, tmp_path):
        """Should publish a new map on reload"""
        from cloudfrontize.core.registry import ModuleRegistry

        (tmp_path / 'viewer.py').write_text(VIEWER)
        registry = ModuleRegistry(tmp_path, logger=quiet_logger())
        registry.load()
        old_map = registry.stage_map

        (tmp_path / 'origin.py').write_text(ORIGIN)

        assert registry.reload() is True
        assert registry.stages() == ['viewer-request', 'origin-request']
        # The old map is untouched
        assert list(old_map) == ['viewer-request']

    def test_reload_keeps_previous_map_on_duplicate(self, tmp_path):
        """Should reject a reload that introduces a duplicate stage"""
        from cloudfrontize.core.registry import ModuleRegistry

        (tmp_path / 'viewer.py').write_text(VIEWER)
        stream = io.StringIO()
        registry = ModuleRegistry(tmp_path, logger=quiet_logger(stream))
        registry.load()
        old_map = registry.stage_map

        (tmp_path / 'viewer_two.py').write_text(VIEWER)

        assert registry.reload() is False
        assert registry.stage_map is old_map
        assert 'Reload rejected' in stream.getvalue()

    def test_reload_keeps_previous_map_on_restricted_env(self, tmp_path):
        """Should reject a reload whose env file became invalid"""
        from cloudfrontize.core.registry import ModuleRegistry

        edge = tmp_path / 'edge'
        edge.mkdir()
        (edge / 'viewer.py').write_text(VIEWER)
        env = tmp_path / '.env'
        env.write_text('AWS_REGION=us-east-1\n')

        registry = ModuleRegistry(edge, env_path=env, logger=quiet_logger())
        registry.load()
        old_variables = registry.variables

        env.write_text('DATABASE_URL=postgres://x\n')

        assert registry.reload() is False
        assert registry.variables is old_variables
        assert registry.stages() == ['viewer-request']

    def test_reload_keeps_previous_map_on_undecodable_env(self, tmp_path):
        """Should reject a reload whose env file is no longer UTF-8"""
        from cloudfrontize.core.registry import ModuleRegistry

        edge = tmp_path / 'edge'
        edge.mkdir()
        (edge / 'viewer.py').write_text(VIEWER)
        env = tmp_path / '.env'
        env.write_text('TZ=UTC\n')
        stream = io.StringIO()

        registry = ModuleRegistry(edge, env_path=env, logger=quiet_logger(stream))
        registry.load()
        old_map = registry.stage_map
        old_variables = registry.variables

        env.write_bytes(b'TZ=\xff\xfe\n')

        assert registry.reload() is False
        assert registry.stage_map is old_map
        assert registry.variables is old_variables
        assert 'Reload rejected' in stream.getvalue()
        assert 'Cannot read variables file' in stream.getvalue()

    def test_reload_survives_unexpected_errors(self, tmp_path, monkeypatch):
        """Should keep serving the previous map whatever the rebuild raises"""
        import cloudfrontize.core.registry as registry_module

        (tmp_path / 'viewer.py').write_text(VIEWER)
        stream = io.StringIO()
        registry = registry_module.ModuleRegistry(tmp_path, logger=quiet_logger(stream))
        registry.load()
        old_map = registry.stage_map

        def explode(*args, **kwargs):
            raise RuntimeError('disk went away')

        monkeypatch.setattr(registry_module, 'build_stage_map', explode)

        assert registry.reload() is False
        assert registry.stage_map is old_map
        assert 'Reload rejected, keeping previous edge modules: RuntimeError: disk went away' in stream.getvalue()

    def test_exiting_module_skipped(self, tmp_path):
        """Should skip a file whose body raises SystemExit and keep loading"""
        from cloudfrontize.core.registry import ModuleRegistry

        (tmp_path / 'a_quit.py').write_text('raise SystemExit\n')
        (tmp_path / 'b_viewer.py').write_text(VIEWER)
        stream = io.StringIO()

        registry = ModuleRegistry(tmp_path, logger=quiet_logger(stream))
        registry.load()

        assert registry.stages() == ['viewer-request']
        assert 'a_quit.py' in stream.getvalue()
        assert 'SystemExit' in stream.getvalue()

    @pytest.mark.asyncio
    async def test_module_level_timer_consistent_on_reload(self, tmp_path):
        """Should skip a module that schedules timers at load, at startup and on reload"""
        from cloudfrontize.core.registry import ModuleRegistry

        eager = "set_timeout(lambda: None, 10)\n" + VIEWER
        (tmp_path / 'viewer.py').write_text(eager)
        registry = ModuleRegistry(tmp_path, logger=quiet_logger())
        registry.load()
        assert registry.stages() == []

        (tmp_path / 'viewer.py').write_text(VIEWER)
        assert registry.reload() is True
        assert registry.stages() == ['viewer-request']

        (tmp_path / 'viewer.py').write_text(eager)
        assert registry.reload() is True
        assert registry.stages() == []

    def test_watch_targets(self, tmp_path):
        """Should watch the edge path and the variable files that exist"""
        from cloudfrontize.core.registry import ModuleRegistry

        edge = tmp_path / 'edge'
        edge.mkdir()
        bake = tmp_path / '.bake'
        bake.write_text('A=1\n')

        registry = ModuleRegistry(edge, bake_path=bake, env_path=tmp_path / '.env', logger=quiet_logger())

        assert registry.watch_targets() == [edge.resolve(), bake.resolve()]

    def test_close_without_watch_is_safe(self, tmp_path):
        """Should allow close() with no watcher, any number of times"""
        from cloudfrontize.core.registry import ModuleRegistry

        registry = ModuleRegistry(tmp_path, logger=quiet_logger())

        registry.close()
        registry.close()

    @pytest.mark.asyncio
    async def test_watch_reloads_on_change(self, tmp_path):
        """Should reload when a plugin file is added"""
        from cloudfrontize.core.registry import ModuleRegistry

        (tmp_path / 'viewer.py').write_text(VIEWER)
        registry = ModuleRegistry(tmp_path, logger=quiet_logger())
        registry.load()

        task = registry.watch(debounce=50, force_polling=True)
        try:
            # Let the watcher take its first snapshot
            await asyncio.sleep(0.5)
            (tmp_path / 'origin.py').write_text(ORIGIN)

            for _ in range(50):
                if 'origin-request' in registry.stage_map:
                    break
                await asyncio.sleep(0.1)

            assert registry.stages() == ['viewer-request', 'origin-request']
        finally:
            registry.close()
            registry.close()

        await asyncio.wait([task], timeout=5)
        assert task.done()

    @pytest.mark.asyncio
    async def test_watch_returns_running_task(self, tmp_path):
        """Should not start a second watcher while one is running"""
        from cloudfrontize.core.registry import ModuleRegistry

        registry = ModuleRegistry(tmp_path, logger=quiet_logger())
        registry.load()

        first = registry.watch(force_polling=True)
        second = registry.watch(force_polling=True)
        try:
            assert first is second
        finally:
            registry.close()

        await asyncio.wait([first], timeout=5)
        assert first.done()

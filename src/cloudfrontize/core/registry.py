"""
Module Registry

Discovers edge plugin files, evaluates them through the sandbox and indexes
the handlers by stage.

Design principles:
- A path is a single plugin file or a directory of them (direct children)
- A file that fails to evaluate is logged and skipped; the rest still load
- Files without a recognized stage and a callable handler are helpers and
  are ignored
- One handler per stage: a second binding aborts the whole load
- The StageMap is immutable and replaced wholesale; in-flight requests keep
  the map they started with
- Hot reload watches the plugin path and the bake/env files
"""

import asyncio
from pathlib import Path
from types import MappingProxyType, ModuleType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from watchfiles import awatch

from cloudfrontize.core.edge_logger import EdgeLogger
from cloudfrontize.core.errors import DuplicateStageBinding, EdgeError, ModuleLoadError
from cloudfrontize.core.records import STAGES
from cloudfrontize.core.sandbox import Sandbox
from cloudfrontize.core.variable_store import VariableStore


class PluginModule:
    """A loaded edge handler. Identity is the source file path."""

    def __init__(self, path: Path, stage: str, handler: Callable, module: ModuleType):
        self.path = Path(path)
        self.stage = stage
        self.handler = handler
        self.module = module

    @property
    def name(self) -> str:
        return self.path.name

    def __repr__(self) -> str:
        return f'PluginModule({self.path.name!r}, stage={self.stage!r})'


StageMap = Mapping[str, Tuple[PluginModule, ...]]

EMPTY_STAGE_MAP: StageMap = MappingProxyType({})


def discover_plugin_files(path: Path | str) -> List[Path]:
    """A single file, or the direct child .py files of a directory in name order"""
    path = Path(path)
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.is_file() and p.suffix == '.py')
    if path.is_file():
        return [path]
    return []


def declared_stage(module: ModuleType) -> Optional[str]:
    stage = getattr(module, 'stage', None) or getattr(module, 'hook_type', None)
    return stage if stage in STAGES else None


def build_stage_map(
    path: Path | str,
    variables: VariableStore,
    logger: EdgeLogger,
    output_path: Optional[Path | str] = None,
) -> StageMap:
    """
    Load every plugin under `path` and index the handlers by stage.

    Raises:
        DuplicateStageBinding: If two files declare the same stage
    """
    bindings: Dict[str, List[PluginModule]] = {}

    for file in discover_plugin_files(path):
        try:
            module = Sandbox(file, variables=variables, logger=logger, output_path=output_path).evaluate()
        except ModuleLoadError as e:
            logger.error(str(e), file=str(file))
            continue

        stage = declared_stage(module)
        handler = getattr(module, 'handler', None)
        if stage is None or not callable(handler):
            logger.debug(f'Ignoring {file.name}: no stage/handler exports', file=str(file))
            continue

        if bindings.get(stage):
            raise DuplicateStageBinding(stage, bindings[stage][0].path, file)

        bindings.setdefault(stage, []).append(PluginModule(file, stage, handler, module))
        logger.info(f'Loaded {file.name} for {stage}', file=str(file), stage=stage)

    return MappingProxyType({
        stage: tuple(bindings[stage]) for stage in STAGES if stage in bindings
    })


class ModuleRegistry:
    """
    Owns the active StageMap and the file watch that refreshes it.
    """

    def __init__(
        self,
        edge_path: Path | str,
        bake_path: Optional[Path | str] = None,
        env_path: Optional[Path | str] = None,
        output_path: Optional[Path | str] = None,
        logger: Optional[EdgeLogger] = None,
    ):
        """
        Initialize registry. Call load() to populate it.

        Args:
            edge_path: Plugin file or directory
            bake_path: Bake values file (optional)
            env_path: Restricted env file (optional)
            output_path: Where baked source is written (optional)
            logger: Runtime logger
        """
        self.edge_path = Path(edge_path).resolve()
        self.bake_path = Path(bake_path).resolve() if bake_path else None
        self.env_path = Path(env_path).resolve() if env_path else None
        self.output_path = Path(output_path) if output_path else None
        self.logger = logger or EdgeLogger()

        self.variables = VariableStore()
        self._stage_map: StageMap = EMPTY_STAGE_MAP

        self._watch_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._closed = False

    @property
    def stage_map(self) -> StageMap:
        """The active map. Read it once per request and keep that reference."""
        return self._stage_map

    def stages(self) -> List[str]:
        return list(self._stage_map.keys())

    def load(self, path: Optional[Path | str] = None) -> StageMap:
        """
        Rebuild variables and the StageMap, then publish both.

        Args:
            path: Plugin file or directory (default: the configured edge path)

        Raises:
            RestrictedVariable: If the env file holds a non-reserved key
            VariableFileError: If a bake or env file can't be read
            DuplicateStageBinding: If two files declare the same stage
        """
        if path is not None:
            self.edge_path = Path(path).resolve()

        variables = VariableStore.load(self.bake_path, self.env_path, logger=self.logger)

        if not self.edge_path.exists():
            self.logger.warning(f'Edge path not found: {self.edge_path}', file=str(self.edge_path))
            stage_map = EMPTY_STAGE_MAP
        else:
            stage_map = build_stage_map(self.edge_path, variables, self.logger, self.output_path)

        # Publish only after everything validated
        self.variables = variables
        self._stage_map = stage_map
        return stage_map

    def reload(self) -> bool:
        """
        Hot reload. A failed rebuild keeps the previous map active.

        Returns:
            True if a new map was published
        """
        try:
            self.load()
        except EdgeError as e:
            self.logger.error(f'Reload rejected, keeping previous edge modules: {e}')
            return False
        except Exception as e:
            self.logger.error(
                f'Reload rejected, keeping previous edge modules: {type(e).__name__}: {e}'
            )
            return False

        self.logger.info(f'Reloaded edge modules ({", ".join(self.stages()) or "none"})')
        return True

    def watch_targets(self) -> List[Path]:
        targets = [self.edge_path, self.bake_path, self.env_path]
        return [t for t in targets if t is not None and t.exists()]

    def watch(self, debounce: int = 200, force_polling: Optional[bool] = None) -> asyncio.Task:
        """
        Start watching the plugin path and variable files on the running loop.

        Returns:
            The watcher task (also cancelled by close())
        """
        if self._watch_task is not None and not self._watch_task.done():
            return self._watch_task

        self._closed = False
        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch_loop(self.watch_targets(), debounce, force_polling)
        )
        return self._watch_task

    async def _watch_loop(self, targets: List[Path], debounce: int, force_polling: Optional[bool]) -> None:
        if not targets:
            return

        async for changes in awatch(
            *targets,
            stop_event=self._stop_event,
            debounce=debounce,
            force_polling=force_polling,
        ):
            changed = ', '.join(sorted({Path(p).name for _, p in changes}))
            self.logger.info(f'Change detected ({changed}), reloading edge modules')
            self.reload()

    def close(self) -> None:
        """Stop watching. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True

        task = self._watch_task
        self._watch_task = None
        if task is None or task.done() or task.get_loop().is_closed():
            return

        self._stop_event.set()
        task.cancel()

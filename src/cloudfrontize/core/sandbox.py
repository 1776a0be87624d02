"""
Sandbox

Evaluates edge plugin source in an isolated, capability-gated namespace.

Design principles:
- Bake first: `__KEY__` tokens are replaced by literal bake values
- Every load gets a fresh module namespace; nothing is shared between files
- The global surface is small and fixed (console, timers, URL helpers,
  base64, a read-only `env`)
- Imports go through a gate: forbidden modules raise PermissionDenied,
  relative imports resolve inside the plugin directory only, everything
  else falls through to the host standard library
- `open`, `exec`, `eval`, `compile` and friends are not in the builtins

This gates capabilities by name. It models a managed edge platform for local
development; it is not a security boundary against hostile Python.
"""

import asyncio
import builtins
import re
import types
from base64 import b64decode, b64encode
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit

from cloudfrontize.core.edge_logger import Console, EdgeLogger
from cloudfrontize.core.errors import PLUGIN_ERRORS, ModuleLoadError, PermissionDenied
from cloudfrontize.core.variable_store import VariableStore

BAKE_TOKEN = re.compile(r'__([A-Z0-9_.\-]+)__')

FORBIDDEN_MODULES = frozenset({
    # filesystem
    'os', 'posix', 'nt', 'io', '_io', 'pathlib', 'shutil', 'tempfile',
    'glob', 'fileinput', 'mmap', 'fcntl',
    # process spawning
    'subprocess', 'multiprocessing', 'pty', 'signal', '_thread',
    # OS / interpreter info and escape hatches
    'sys', 'platform', 'sysconfig', 'resource', 'pwd', 'grp', 'ctypes',
    'importlib', 'builtins', 'gc', 'inspect', 'runpy', 'zipimport', 'pkgutil',
    'site', 'linecache',
    # modules that reach files through another door
    'codecs', 'posixpath', 'ntpath', 'genericpath', 'zipfile', 'tarfile',
    'shelve', 'dbm', 'sqlite3', 'filecmp',
})
# The gate checks import names only. Attributes of allowed modules that lead
# back to the OS (asyncio.create_subprocess_exec, for one) stay reachable.

BLOCKED_BUILTINS = frozenset({
    'open', 'exec', 'eval', 'compile', 'input', 'breakpoint',
    'exit', 'quit', 'help', '__import__',
})


def bake(source: str, bake_vars: Mapping[str, str]) -> str:
    """
    Replace `__KEY__` tokens with bake values.

    Replacement is literal: a value such as `$$complex$1` or `\\1` lands in
    the source exactly as written. Unknown keys are left untouched.
    """
    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in bake_vars:
            return str(bake_vars[key])
        return match.group(0)

    return BAKE_TOKEN.sub(replace, source)


class Timers:
    """
    set_timeout/set_interval/set_immediate for one plugin, on the running loop.

    Timers are armed once the module body has finished evaluating. Scheduling
    from module level fails the load the same way at startup and on reload.
    """

    def __init__(self, logger: EdgeLogger, plugin: str):
        self._logger = logger
        self._plugin = plugin
        self._armed = False

    def arm(self) -> None:
        self._armed = True

    def set_timeout(self, callback: Callable, delay: float = 0, *args) -> asyncio.TimerHandle:
        """Run callback after `delay` milliseconds"""
        return self._loop().call_later(max(delay, 0) / 1000.0, self._fire, callback, args)

    def set_immediate(self, callback: Callable, *args) -> asyncio.Handle:
        """Run callback on the next loop iteration"""
        return self._loop().call_soon(self._fire, callback, args)

    def set_interval(self, callback: Callable, delay: float = 0, *args) -> '_Interval':
        """Run callback every `delay` milliseconds until cleared"""
        return _Interval(self._loop(), max(delay, 0) / 1000.0,
                         lambda: self._fire(callback, args))

    @staticmethod
    def clear(handle: Any) -> None:
        if handle is not None:
            handle.cancel()

    def _loop(self) -> asyncio.AbstractEventLoop:
        if not self._armed:
            raise RuntimeError('timers cannot be scheduled while the module loads; schedule them from the handler')
        return asyncio.get_running_loop()

    def _fire(self, callback: Callable, args: tuple) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(self._contain(result))
        except PLUGIN_ERRORS as e:
            self._report(e)

    async def _contain(self, coroutine) -> None:
        try:
            await coroutine
        except (Exception, SystemExit, KeyboardInterrupt) as e:
            self._report(e)

    def _report(self, error: BaseException) -> None:
        self._logger.error(
            f'Timer callback in {self._plugin} failed: {type(error).__name__}: {error}',
            plugin=self._plugin,
        )


class _Interval:
    def __init__(self, loop: asyncio.AbstractEventLoop, seconds: float, tick: Callable[[], None]):
        self._loop = loop
        self._seconds = seconds
        self._tick = tick
        self._cancelled = False
        self._handle = loop.call_later(seconds, self._run)

    def _run(self) -> None:
        if self._cancelled:
            return
        self._tick()
        if not self._cancelled:
            self._handle = self._loop.call_later(self._seconds, self._run)

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()


class Sandbox:
    """
    Builds and evaluates one plugin file in its own namespace.

    Relative imports made by the plugin are evaluated through this same
    sandbox and cached for the lifetime of the instance, so one plugin load
    sees each helper exactly once.
    """

    def __init__(
        self,
        path: Path | str,
        variables: Optional[VariableStore] = None,
        logger: Optional[EdgeLogger] = None,
        output_path: Optional[Path | str] = None,
    ):
        """
        Initialize sandbox.

        Args:
            path: Path to the plugin .py file
            variables: Bake and env values (default: empty)
            logger: Runtime logger (console output and timer errors go here)
            output_path: Where to write the baked source (optional)
        """
        self.path = Path(path).resolve()
        self.directory = self.path.parent
        self.variables = variables or VariableStore()
        self.logger = logger or EdgeLogger()
        self.output_path = Path(output_path) if output_path else None
        self._local_modules: Dict[Path, types.ModuleType] = {}

    def evaluate(self) -> types.ModuleType:
        """
        Bake, optionally write out, and evaluate the plugin.

        Returns:
            The evaluated module (its namespace holds the exports)

        Raises:
            ModuleLoadError: If the source can't be read or evaluated
        """
        source = bake(self._read_source(self.path), self.variables.bake_vars)

        if self.output_path is not None:
            self._write_output(source)

        return self._execute(self.path, source)

    def _read_source(self, path: Path) -> str:
        try:
            return path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise ModuleLoadError(path, f'{type(e).__name__}: {e}') from e

    def _write_output(self, source: str) -> None:
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            self.output_path.write_text(source, encoding='utf-8')
        except OSError as e:
            raise ModuleLoadError(self.path, f'Cannot write baked output to {self.output_path}: {e}') from e

    def _execute(self, path: Path, source: str) -> types.ModuleType:
        module = types.ModuleType(f'edge_{path.stem}')
        timers = self._populate_globals(module.__dict__, path)

        try:
            code = compile(source, str(path), 'exec')
            exec(code, module.__dict__)
        except SyntaxError as e:
            raise ModuleLoadError(path, f'Syntax error: {e}') from e
        except PLUGIN_ERRORS as e:
            raise ModuleLoadError(path, f'{type(e).__name__}: {e}') from e

        timers.arm()
        return module

    def _populate_globals(self, namespace: Dict[str, Any], path: Path) -> Timers:
        """The fixed surface every plugin namespace starts with"""
        plugin = path.name
        timers = Timers(self.logger, plugin)

        namespace.update({
            '__file__': str(path),
            '__builtins__': self._restricted_builtins(path),
            'console': Console(self.logger, plugin),
            'env': self.variables.env_vars,
            'set_timeout': timers.set_timeout,
            'clear_timeout': timers.clear,
            'set_interval': timers.set_interval,
            'clear_interval': timers.clear,
            'set_immediate': timers.set_immediate,
            'urlsplit': urlsplit,
            'urlunsplit': urlunsplit,
            'parse_qsl': parse_qsl,
            'urlencode': urlencode,
            'quote': quote,
            'unquote': unquote,
            'b64encode': b64encode,
            'b64decode': b64decode,
        })
        # Implicit globals land in this module's own namespace only
        namespace['global_scope'] = namespace
        return timers

    def _restricted_builtins(self, path: Path) -> Dict[str, Any]:
        allowed = {k: v for k, v in vars(builtins).items() if k not in BLOCKED_BUILTINS}
        allowed['__import__'] = self._make_importer(path)
        return allowed

    def _make_importer(self, path: Path) -> Callable:
        base_dir = path.parent

        def gated_import(name, globals=None, locals=None, fromlist=(), level=0):
            if level > 0:
                return self._import_relative(base_dir, name, fromlist, level)

            if name.partition('.')[0] in FORBIDDEN_MODULES:
                raise PermissionDenied(name, path)

            return builtins.__import__(name, None, None, fromlist, 0)

        return gated_import

    def _import_relative(self, base_dir: Path, name: str, fromlist, level: int) -> types.ModuleType:
        anchor = base_dir
        for _ in range(level - 1):
            anchor = anchor.parent

        if not self._inside_plugin_dir(anchor):
            raise PermissionDenied('.' * level + name, self.path)

        if name:
            target = anchor.joinpath(*name.split('.'))
            module = self._load_local(target, name)
        else:
            target = anchor
            module = self._load_package(anchor)

        # `from . import helpers` / `from .lib import util` need the children as attributes
        if target.is_dir():
            for item in fromlist or ():
                if item == '*' or hasattr(module, item):
                    continue
                child = target / item
                if child.with_name(f'{item}.py').is_file() or child.is_dir():
                    setattr(module, item, self._load_local(child, item))

        return module

    def _load_local(self, target: Path, name: str) -> types.ModuleType:
        file = target.with_name(f'{target.name}.py')
        if file.is_file():
            return self._load_file(file)
        if target.is_dir():
            return self._load_package(target)
        raise ModuleNotFoundError(f"No edge module named '{name}' in {target.parent}", name=name)

    def _load_package(self, directory: Path) -> types.ModuleType:
        directory = directory.resolve()
        if directory in self._local_modules:
            return self._local_modules[directory]

        init = directory / '__init__.py'
        if init.is_file():
            package = self._load_file(init)
        else:
            package = types.ModuleType(f'edge_{directory.name}')
        package.__path__ = [str(directory)]

        self._local_modules[directory] = package
        return package

    def _load_file(self, file: Path) -> types.ModuleType:
        file = file.resolve()
        if not self._inside_plugin_dir(file):
            raise PermissionDenied(str(file), self.path)

        if file not in self._local_modules:
            source = bake(self._read_source(file), self.variables.bake_vars)
            self._local_modules[file] = self._execute(file, source)

        return self._local_modules[file]

    def _inside_plugin_dir(self, candidate: Path) -> bool:
        try:
            candidate.resolve().relative_to(self.directory)
        except ValueError:
            return False
        return True


def load_edge_module(
    path: Path | str,
    variables: Optional[VariableStore] = None,
    logger: Optional[EdgeLogger] = None,
    output_path: Optional[Path | str] = None,
) -> types.ModuleType:
    """
    Evaluate one plugin file in a fresh sandbox.

    Raises:
        ModuleLoadError: If the file can't be read or evaluated
    """
    return Sandbox(path, variables=variables, logger=logger, output_path=output_path).evaluate()

"""
Edge Errors

Every failure the edge runtime can raise.

Fatal (abort loading / startup):
- DuplicateStageBinding: two modules claim one stage
- RestrictedVariable: env file holds a key outside the reserved allow-list
- VariableFileError: a bake or env file exists but cannot be read

Degrading (logged, the pipeline keeps serving):
- ModuleLoadError: a plugin file failed to evaluate, it is skipped
- PermissionDenied: sandboxed code imported a forbidden module
- HandlerFailure: a handler threw, rejected or reported an error

PLUGIN_ERRORS is what plugin code may raise and still be contained. It
includes SystemExit and KeyboardInterrupt so a plugin cannot stop the server.
"""

from pathlib import Path
from typing import Optional

PLUGIN_ERRORS = (Exception, SystemExit, KeyboardInterrupt, GeneratorExit)


class EdgeError(Exception):
    """Base exception for edge runtime errors"""
    pass


class ModuleLoadError(EdgeError):
    """Raised when a plugin file can't be evaluated (syntax error, import error)"""

    def __init__(self, path: Path | str, message: str):
        self.path = Path(path)
        super().__init__(f"Failed to load edge module {self.path}: {message}")


class DuplicateStageBinding(EdgeError):
    """Raised when a second module is registered for an occupied stage"""

    def __init__(self, stage: str, existing: Path | str, duplicate: Path | str):
        self.stage = stage
        self.existing = Path(existing)
        self.duplicate = Path(duplicate)
        super().__init__(
            f"Stage '{stage}' is already bound to {self.existing}; "
            f"refusing second binding from {self.duplicate}"
        )


class RestrictedVariable(EdgeError):
    """Raised when the env file declares a key outside the allow-list"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f'Restricted Variable: "{key}" is not a reserved edge variable')


class VariableFileError(EdgeError):
    """Raised when a bake or env file exists but can't be read or decoded"""

    def __init__(self, path: Path | str, message: str):
        self.path = Path(path)
        super().__init__(f"Cannot read variables file {self.path}: {message}")


class PermissionDenied(EdgeError, ImportError):
    """Raised inside the sandbox when plugin code imports a forbidden module"""

    def __init__(self, module: str, path: Optional[Path | str] = None):
        where = f" (in {Path(path).name})" if path else ""
        super().__init__(f"Forbidden: import of '{module}' is not allowed at the edge{where}")
        # ImportError.__init__ resets name/path, so set them afterwards
        self.module = module
        self.name = module
        self.path = str(path) if path else None


class HandlerFailure(EdgeError):
    """A handler threw, returned a rejected awaitable or called back with an error"""

    def __init__(self, stage: str, cause: object, path: Optional[Path | str] = None):
        self.stage = stage
        self.cause = cause
        self.path = Path(path) if path else None
        if isinstance(cause, BaseException):
            detail = f"{type(cause).__name__}: {cause}"
        else:
            detail = repr(cause)
        super().__init__(f"{stage} handler failed: {detail}")

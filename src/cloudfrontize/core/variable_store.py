"""
Variable Store

Holds the two flat maps edge modules may see:

- bake_vars: build-time values substituted into plugin source text
  (`__KEY__` tokens). Any key is allowed.
- env_vars: runtime environment exposed to plugins as `env`. Only
  platform-reserved names are allowed; anything else aborts construction
  with RestrictedVariable, the way a real edge platform refuses to hand
  arbitrary process environment to a function.

Both files use dotenv syntax (KEY=value, one per line).
"""

from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from cloudfrontize.core.edge_logger import EdgeLogger
from cloudfrontize.core.errors import RestrictedVariable, VariableFileError

RESERVED_ENV_VARS = frozenset({
    'REGION',
    'DEFAULT_REGION',
    'FUNCTION_NAME',
    'FUNCTION_VERSION',
    'MEMORY_SIZE',
    'LOG_GROUP_NAME',
    'LOG_STREAM_NAME',
    'NODE_OPTIONS',
    'TZ',
    'LANG',
    'PATH',
    # Platform spellings of the same reserved names
    'AWS_REGION',
    'AWS_DEFAULT_REGION',
    'AWS_LAMBDA_FUNCTION_NAME',
    'AWS_LAMBDA_FUNCTION_VERSION',
    'AWS_LAMBDA_FUNCTION_MEMORY_SIZE',
    'AWS_LAMBDA_LOG_GROUP_NAME',
    'AWS_LAMBDA_LOG_STREAM_NAME',
})


def read_variables_file(path: Path | str) -> Dict[str, str]:
    """Parse a KEY=value file. `$` sequences are kept verbatim."""
    raw = dotenv_values(path, interpolate=False, encoding='utf-8')
    return {key: ('' if value is None else value) for key, value in raw.items()}


class VariableStore:
    """Bake values and allow-listed env values for one edge configuration"""

    def __init__(
        self,
        bake_vars: Optional[Mapping[str, str]] = None,
        env_vars: Optional[Mapping[str, str]] = None,
    ):
        env_vars = dict(env_vars or {})
        for key in env_vars:
            if key not in RESERVED_ENV_VARS:
                raise RestrictedVariable(key)

        self._bake_vars = dict(bake_vars or {})
        self._env_vars = env_vars

    @property
    def bake_vars(self) -> Mapping[str, str]:
        return MappingProxyType(self._bake_vars)

    @property
    def env_vars(self) -> Mapping[str, str]:
        return MappingProxyType(self._env_vars)

    @classmethod
    def load(
        cls,
        bake_path: Optional[Path | str] = None,
        env_path: Optional[Path | str] = None,
        logger: Optional[EdgeLogger] = None,
    ) -> 'VariableStore':
        """
        Load bake and env files.

        Args:
            bake_path: Path to the bake file (optional)
            env_path: Path to the env file (optional)
            logger: Where to report missing files

        Returns:
            VariableStore instance

        Raises:
            RestrictedVariable: If the env file holds a non-reserved key
            VariableFileError: If a file exists but cannot be read as UTF-8 text
        """
        bake_vars = cls._read_optional(bake_path, 'bake', logger)
        env_vars = cls._read_optional(env_path, 'env', logger)
        return cls(bake_vars=bake_vars, env_vars=env_vars)

    @staticmethod
    def _read_optional(path, kind: str, logger: Optional[EdgeLogger]) -> Dict[str, str]:
        if path is None:
            return {}

        path = Path(path)
        if not path.is_file():
            if logger:
                logger.warning(f'{kind} file not found, using no {kind} values: {path}', file=str(path))
            return {}

        try:
            return read_variables_file(path)
        except (OSError, UnicodeDecodeError) as e:
            raise VariableFileError(path, f'{type(e).__name__}: {e}') from e

    def __repr__(self) -> str:
        return f'VariableStore(bake={sorted(self._bake_vars)}, env={sorted(self._env_vars)})'

"""
Edge configuration loader

Reads cloudfrontize.tsv (key<TAB>value rows, # comments) for server and edge
settings. Keys missing from the file fall back to CLOUDFRONTIZE_* environment
variables, then to defaults.
"""

import csv
import os
from pathlib import Path
from typing import Any, Dict, Optional

ENV_PREFIX = 'CLOUDFRONTIZE_'

DEFAULTS: Dict[str, Any] = {
    'directory': '.',
    'host': '127.0.0.1',
    'port': 3000,
    'edge': None,
    'bake': None,
    'env': None,
    'output': None,
    'log_dir': None,
    'function_name': None,
}


class EdgeConfig:
    """Load and manage edge server configuration"""

    def __init__(self, config_file: str | Path = "cloudfrontize.tsv"):
        self.config_file = Path(config_file)
        self.values: Dict[str, str] = {}
        self._load()

    def _load(self):
        """Load configuration from TSV file"""
        if not self.config_file.exists():
            return

        with open(self.config_file, 'r', encoding='utf-8') as f:
            reader = csv.reader(
                (line for line in f if line.strip() and not line.startswith('#')),
                delimiter='\t'
            )

            for row in reader:
                if len(row) < 2 or not row[0].strip():
                    continue
                self.values[row[0].strip()] = row[1].strip()

    def get(self, key: str, default: Any = None) -> Any:
        """File value, then CLOUDFRONTIZE_<KEY> env var, then built-in default"""
        if key in self.values:
            return self.values[key]

        env_value = os.environ.get(f'{ENV_PREFIX}{key.upper()}')
        if env_value is not None:
            return env_value

        if default is not None:
            return default
        return DEFAULTS.get(key)

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        return int(self.get(key, default))

    def as_dict(self) -> Dict[str, Any]:
        return {key: self.get(key) for key in DEFAULTS}


# Global instance (lazy loaded)
_config = None


def get_config() -> EdgeConfig:
    """Get the global edge configuration"""
    global _config
    if _config is None:
        _config = EdgeConfig()
    return _config


def reload_config():
    """Reload configuration from file"""
    global _config
    _config = EdgeConfig()

"""
Edge Logger

The runtime logs to itself (not to an external logging system).

Design:
- Every entry is echoed to stderr so the operator sees it while serving
- With a log directory, entries are also stored in TSV files
  (human-readable, grep-able): logs/{log_id}/log.tsv
- Append-only. A file is rotated aside when it exceeds a size limit or
  when an entry carries a column its header lacks
- Query logs with filters (level, stage, plugin, custom fields)

No failure is swallowed silently: loader, sandbox, invocation and header
policy all report through this logger.
"""

import csv
import hashlib
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union

LOG_PREFIX = '[CloudFrontize]'

LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

BASE_FIELDS = ('entry_id', 'timestamp', 'level', 'message')

# Columns every new file starts with; anything else widens the header
KNOWN_FIELDS = ('stage', 'plugin', 'file', 'header', 'source')


class EdgeLogger:
    """
    Self-logging for the edge runtime.

    When base_dir is given, entries are stored in:
    {base_dir}/logs/{log_id}/log.tsv
    """

    def __init__(
        self,
        log_id: str = 'cloudfrontize',
        base_dir: Optional[Path | str] = None,
        max_log_size: Optional[int] = None,
        echo: bool = True,
        min_echo_level: str = 'INFO',
        stream: Optional[TextIO] = None,
    ):
        """
        Initialize edge logger.

        Args:
            log_id: Name of the log (directory under logs/)
            base_dir: Base directory for log storage (None = echo only)
            max_log_size: Maximum log file size in bytes before rotation
                         (default: 10MB)
            echo: Whether to echo entries to stderr
            min_echo_level: Lowest level that is echoed
            stream: Stream to echo to (default: sys.stderr at call time)
        """
        self.log_id = log_id
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.max_log_size = max_log_size or (10 * 1024 * 1024)  # 10MB default
        self.echo = echo
        self.min_echo_level = min_echo_level
        self.stream = stream

        self.log_dir: Optional[Path] = None
        self.log_file: Optional[Path] = None
        if self.base_dir is not None:
            self.log_dir = self.base_dir / 'logs' / log_id
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = self.log_dir / 'log.tsv'

    def log(self, level: str, message: str, **kwargs) -> None:
        """
        Log an entry.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Log message
            **kwargs: Additional fields to log (stage, plugin, etc.)
        """
        if self.echo and LEVELS.index(level) >= LEVELS.index(self.min_echo_level):
            self._echo(level, message)

        if self.log_file is not None:
            timestamp = datetime.now().isoformat()
            fields = {k: v for k, v in kwargs.items() if v is not None}
            self._append({
                'entry_id': self._generate_entry_id(timestamp, level, message),
                'timestamp': timestamp,
                'level': level,
                'message': message,
                **fields,
            })

    def debug(self, message: str, **kwargs) -> None:
        """Log DEBUG level message"""
        self.log('DEBUG', message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log INFO level message"""
        self.log('INFO', message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log WARNING level message"""
        self.log('WARNING', message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log ERROR level message"""
        self.log('ERROR', message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        """Log CRITICAL level message"""
        self.log('CRITICAL', message, **kwargs)

    def get_logs(
        self,
        level: Optional[Union[str, List[str]]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        **filters,
    ) -> List[Dict[str, Any]]:
        """
        Get log entries.

        Args:
            level: Filter by level (string or list of strings)
            limit: Maximum number of entries to return
            offset: Number of entries to skip
            **filters: Additional filters (e.g., stage='viewer-request')

        Returns:
            List of log entries (dictionaries), empty when echo-only
        """
        if self.log_dir is None:
            return []

        entries: List[Dict[str, Any]] = []
        # Rotated files hold older entries
        for log_file in sorted(self.log_dir.glob('log-*.tsv')) + [self.log_file]:
            if not log_file.exists():
                continue
            with open(log_file, 'r', newline='') as f:
                for row in csv.DictReader(f, delimiter='\t'):
                    entries.append({k: v for k, v in row.items() if v or k in BASE_FIELDS})

        if level is not None:
            if isinstance(level, str):
                level = [level]
            entries = [e for e in entries if e.get('level') in level]

        for key, value in filters.items():
            entries = [e for e in entries if e.get(key) == value]

        if offset > 0:
            entries = entries[offset:]

        if limit is not None:
            entries = entries[:limit]

        return entries

    def _echo(self, level: str, message: str) -> None:
        stream = self.stream or sys.stderr
        print(f'{LOG_PREFIX} {level}: {message}', file=stream, flush=True)

    def _append(self, entry: Dict[str, Any]) -> None:
        """Write one row, starting a fresh file when full or when the row has new columns"""
        columns = self._columns()
        if columns and (
            any(key not in columns for key in entry)
            or self.log_file.stat().st_size >= self.max_log_size
        ):
            self._rotate()
            columns = []

        with open(self.log_file, 'a', newline='') as f:
            writer = csv.writer(f, delimiter='\t')
            if not columns:
                columns = list(BASE_FIELDS + KNOWN_FIELDS)
                columns += [key for key in entry if key not in columns]
                writer.writerow(columns)
            writer.writerow(['' if entry.get(c) is None else entry[c] for c in columns])

    def _columns(self) -> List[str]:
        """Column names of the current file (empty when there is none)"""
        if not self.log_file.exists():
            return []
        with open(self.log_file, 'r', newline='') as f:
            header = f.readline().rstrip('\r\n')
        return header.split('\t') if header else []

    def _rotate(self) -> None:
        rotated = len(list(self.log_dir.glob('log-*.tsv')))
        target = self.log_dir / f'log-{rotated + 1:06d}.tsv'
        while target.exists():
            rotated += 1
            target = self.log_dir / f'log-{rotated + 1:06d}.tsv'
        self.log_file.rename(target)

    def _generate_entry_id(self, timestamp: str, level: str, message: str) -> str:
        content = f"{timestamp}:{self.log_id}:{level}:{message}"
        return hashlib.sha256(content.encode()).hexdigest()[:16]


class Console:
    """
    The `console` object exposed to plugin code.

    Routes plugin output into the runtime log, tagged with the plugin file.
    """

    def __init__(self, logger: EdgeLogger, plugin: str):
        self._logger = logger
        self._plugin = plugin

    def _write(self, level: str, args: tuple) -> None:
        message = ' '.join(str(a) for a in args)
        self._logger.log(level, f'({self._plugin}) {message}', plugin=self._plugin, source='console')

    def log(self, *args) -> None:
        self._write('INFO', args)

    def info(self, *args) -> None:
        self._write('INFO', args)

    def debug(self, *args) -> None:
        self._write('DEBUG', args)

    def warn(self, *args) -> None:
        self._write('WARNING', args)

    warning = warn

    def error(self, *args) -> None:
        self._write('ERROR', args)

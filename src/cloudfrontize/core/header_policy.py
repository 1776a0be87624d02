"""
Header Policy

Flags stages that touch headers a real edge platform controls.

A snapshot is taken before a stage runs and compared with the headers the
stage hands back. Any difference on a restricted name is reported as a
warning. Nothing is blocked: locally the pipeline keeps going, upstream the
same change would be rejected as an invalid function result.
"""

from typing import Any, List, Mapping, Optional, Tuple

from cloudfrontize.core.edge_logger import EdgeLogger

RESTRICTED_HEADERS = frozenset({
    'host',
    'via',
    'connection',
    'expect',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'proxy-connection',
    'trailer',
    'upgrade',
    'transfer-encoding',
    'x-real-ip',
    'x-forwarded-proto',
    'x-cache',
})

RESTRICTED_PREFIXES = ('x-amz-cf-', 'x-amzn-', 'x-edge-', 'x-accel-')

HeaderSnapshot = Mapping[str, Tuple[str, ...]]


def is_restricted(name: str) -> bool:
    name = name.lower()
    return name in RESTRICTED_HEADERS or name.startswith(RESTRICTED_PREFIXES)


def snapshot(headers: Optional[Mapping[str, Any]]) -> HeaderSnapshot:
    """
    Freeze a header multimap into {lowercase name: (values, ...)}.

    Keys are lowercased here as well, so a stage that re-keys `Host` under
    its display casing still compares against the original entry.
    """
    frozen = {}
    if not isinstance(headers, Mapping):
        return frozen
    for name, entries in headers.items():
        name = str(name)
        if isinstance(entries, list):
            values = tuple(
                str(e.get('value')) for e in entries if isinstance(e, Mapping)
            )
        else:
            values = (str(entries),)
        frozen[name.lower()] = frozen.get(name.lower(), ()) + values
    return frozen


def find_violations(before: HeaderSnapshot, after: HeaderSnapshot) -> List[str]:
    """Restricted header names added, removed or changed between two snapshots"""
    names = sorted(set(before) | set(after))
    return [
        name for name in names
        if is_restricted(name) and before.get(name) != after.get(name)
    ]


def validate(
    before: HeaderSnapshot,
    after: Optional[Mapping[str, Any]],
    stage: str,
    logger: EdgeLogger,
    plugin: Optional[str] = None,
) -> List[str]:
    """
    Warn for every restricted header a stage mutated.

    Args:
        before: Snapshot taken before the stage ran
        after: Header multimap the stage returned
        stage: Stage name, for the warning
        logger: Where warnings go
        plugin: Plugin file name, for the warning

    Returns:
        The offending header names (never raises)
    """
    if not isinstance(after, Mapping):
        return []

    violations = find_violations(before, snapshot(after))
    for name in violations:
        logger.warning(
            f'{stage} modified restricted header "{name}"; '
            f'CloudFront would reject this function result',
            stage=stage,
            header=name,
            plugin=plugin,
        )
    return violations

"""
CloudFrontize: run Lambda@Edge style functions against local traffic.

Edge functions are plain Python files that declare a stage and a handler:

    stage = 'viewer-request'

    def handler(event, context, callback):
        request = event['Records'][0]['cf']['request']
        request['headers']['x-edge'] = [{'key': 'X-Edge', 'value': 'local'}]
        callback(None, request)

The runtime provides:
- Four stages in a fixed order (viewer-request, origin-request,
  origin-response, viewer-response)
- A sandbox per file (no filesystem, process or OS access)
- Callback, return-value and async handlers with exactly-once settlement
- Build-time baking of __KEY__ tokens and an allow-listed env
- Header policy warnings for headers the platform controls
- Hot reload of plugins and variable files

Example:
    >>> from cloudfrontize import EdgeRunner
    >>> runner = EdgeRunner('edge/')
    >>> outcome = await runner.run_request_hooks({'url': '/index.html', 'headers': {}})
"""

__version__ = "0.1.0"

from cloudfrontize.core.errors import (
    DuplicateStageBinding,
    EdgeError,
    HandlerFailure,
    ModuleLoadError,
    PermissionDenied,
    RestrictedVariable,
    VariableFileError,
)
from cloudfrontize.runtime.edge_runtime import EdgeRunner

__all__ = [
    "__version__",
    "EdgeRunner",
    "EdgeError",
    "ModuleLoadError",
    "DuplicateStageBinding",
    "RestrictedVariable",
    "VariableFileError",
    "PermissionDenied",
    "HandlerFailure",
]

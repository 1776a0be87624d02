"""
Invocation Adapter

Runs one handler against one record and settles exactly once.

A handler can finish three ways:
- call callback(error, result)
- return a value
- return an awaitable (e.g. `async def handler(event, context)`)

Whichever signal arrives first wins; every later signal is ignored. The
handler only ever sees a deep copy of the record, and the settled result is
deep-copied at the moment of settlement, so work a handler leaves running
(timers, unfinished coroutines) cannot reach what the caller observed.

Any failure resolves to PASS_THROUGH (fail open) and is logged.
"""

import asyncio
import copy
import functools
import inspect
import uuid
from typing import Any, Callable, Dict, Optional

from cloudfrontize.core.edge_logger import EdgeLogger
from cloudfrontize.core.errors import PLUGIN_ERRORS, HandlerFailure
from cloudfrontize.core.records import RESPONSE_STAGES

DEFAULT_FUNCTION_NAME = 'cloudfrontize-local'
DEFAULT_FUNCTION_VERSION = '$LATEST'
REMAINING_TIME_MS = 3000
MEMORY_LIMIT_MB = 128


class _PassThrough:
    """Stage declined to change anything (or failed and fails open)"""

    def __repr__(self) -> str:
        return 'PASS_THROUGH'

    def __bool__(self) -> bool:
        return False


PASS_THROUGH = _PassThrough()


class LambdaContext:
    """
    Mocked execution context.

    The remaining time is a fixed number; nothing enforces it.
    """

    def __init__(
        self,
        function_name: str = DEFAULT_FUNCTION_NAME,
        function_version: str = DEFAULT_FUNCTION_VERSION,
        memory_limit_in_mb: int = MEMORY_LIMIT_MB,
        remaining_time_ms: int = REMAINING_TIME_MS,
    ):
        self.function_name = function_name
        self.function_version = function_version
        self.memory_limit_in_mb = memory_limit_in_mb
        self.aws_request_id = f'req-{uuid.uuid4()}'
        self.invoked_function_arn = (
            f'arn:aws:lambda:us-east-1:000000000000:function:{function_name}:{function_version}'
        )
        self.log_group_name = f'/aws/lambda/us-east-1.{function_name}'
        self.log_stream_name = f'local/[{function_version}]{self.aws_request_id}'
        self._remaining_time_ms = remaining_time_ms

    def get_remaining_time_in_millis(self) -> int:
        return self._remaining_time_ms


def build_event(record: Dict[str, Any], stage: str, request_id: str) -> Dict[str, Any]:
    """Wrap a record in the CloudFront event envelope"""
    cf: Dict[str, Any] = {
        'config': {
            'distributionDomainName': 'd111111abcdef8.cloudfront.net',
            'distributionId': 'EDFDVBD6EXAMPLE',
            'eventType': stage,
            'requestId': request_id,
        },
    }
    if stage in RESPONSE_STAGES:
        cf['request'] = record['request']
        cf['response'] = record['response']
    else:
        cf['request'] = record

    return {'Records': [{'cf': cf}]}


def accepts_callback(handler: Callable) -> bool:
    """True when the handler takes a third positional `callback` argument"""
    try:
        params = inspect.signature(handler).parameters.values()
    except (TypeError, ValueError):
        return False

    positional = 0
    for param in params:
        if param.kind == param.VAR_POSITIONAL:
            return True
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 3


async def invoke(
    handler: Callable,
    record: Dict[str, Any],
    stage: str,
    *,
    function_name: str = DEFAULT_FUNCTION_NAME,
    logger: Optional[EdgeLogger] = None,
    plugin: Optional[str] = None,
) -> Any:
    """
    Invoke a handler for one stage.

    Args:
        handler: The plugin's handler
        record: Request record, or {'request', 'response'} for response stages
        stage: Stage name
        function_name: Reported by the mocked context
        logger: Where failures are reported
        plugin: Plugin file name, for log lines

    Returns:
        A deep copy of whatever the handler settled with, or PASS_THROUGH
        if it failed or settled with None
    """
    logger = logger or EdgeLogger()
    settled = asyncio.get_running_loop().create_future()

    context = LambdaContext(function_name=function_name)
    event = build_event(copy.deepcopy(record), stage, context.aws_request_id)

    def finish(error: Any = None, result: Any = None) -> None:
        if settled.done():
            return
        if isinstance(error, HandlerFailure):
            settled.set_exception(error)
            return
        if error is not None:
            settled.set_exception(HandlerFailure(stage, error, plugin))
            return
        try:
            snapshot = copy.deepcopy(result)
        except PLUGIN_ERRORS as e:
            settled.set_exception(HandlerFailure(stage, e, plugin))
            return
        settled.set_result(snapshot)

    takes_callback = accepts_callback(handler)

    try:
        returned = handler(event, context, finish) if takes_callback else handler(event, context)
    except PLUGIN_ERRORS as e:
        finish(e)
    else:
        if inspect.isawaitable(returned):
            task = asyncio.ensure_future(_contained(returned, stage, plugin))
            task.add_done_callback(functools.partial(_settle_from_task, finish, settled, logger, stage))
        elif returned is not None or not takes_callback:
            finish(None, returned)
        # else: a callback-style handler that returned None; wait for the callback

    try:
        result = await settled
    except HandlerFailure as failure:
        logger.error(f'{failure} (failing open)', stage=stage, plugin=plugin)
        return PASS_THROUGH

    return PASS_THROUGH if result is None else result


def _settle_from_task(finish: Callable, settled: asyncio.Future, logger: EdgeLogger,
                      stage: str, task: asyncio.Future) -> None:
    if task.cancelled():
        finish(asyncio.CancelledError(f'{stage} handler was cancelled'))
        return

    error = task.exception()
    if error is not None:
        if settled.done():
            logger.debug(f'{stage} handler raised after it had settled: {type(error).__name__}: {error}',
                         stage=stage)
            return
        finish(error)
        return

    finish(None, task.result())


async def _contained(awaitable: Any, stage: str, plugin: Optional[str]) -> Any:
    """Await a handler's result with interpreter exits turned into HandlerFailure"""
    try:
        return await awaitable
    except (SystemExit, KeyboardInterrupt) as e:
        raise HandlerFailure(stage, e, plugin) from e

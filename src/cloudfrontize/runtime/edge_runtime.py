"""
Edge Runtime

Runs the four-stage pipeline for one edge configuration.

Request side:   viewer-request -> origin-request
Response side:  origin-response -> viewer-response

Each bound stage is invoked in order with the record the previous stage
produced. A request stage that answers with a status and no uri is a
generated response: the pipeline stops there and nothing later runs, not
even the origin. A stage that fails or returns nothing is skipped.

The runtime:
- Loads plugins through the module registry
- Invokes handlers through the invocation adapter
- Checks every stage against the header policy
- Hands the file server a normalized outcome
"""

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from cloudfrontize.core import header_policy
from cloudfrontize.core.edge_logger import EdgeLogger
from cloudfrontize.core.records import (
    REQUEST_STAGES,
    RESPONSE_STAGES,
    build_request_record,
    build_response_record,
    flatten_headers,
    is_generated_response,
    join_path,
)
from cloudfrontize.core.registry import ModuleRegistry, StageMap
from cloudfrontize.runtime.invocation import DEFAULT_FUNCTION_NAME, PASS_THROUGH, invoke


def _unwrap(result: Mapping[str, Any], key: str, marker: str) -> Mapping[str, Any]:
    """Accept {'request': {...}} / {'response': {...}} wrappers as well as bare records"""
    inner = result.get(key)
    if marker not in result and isinstance(inner, Mapping):
        return inner
    return result


def _status_code(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class EdgeRunner:
    """
    Pipeline orchestrator for one edge configuration.

    Example:
        >>> runner = EdgeRunner('edge/', bake_path='.bake', env_path='.env')
        >>> outcome = await runner.run_request_hooks({'method': 'GET', 'url': '/page?a=1', 'headers': {}})
        >>> outcome['path']
        '/page?a=1'
    """

    def __init__(
        self,
        edge_path: Path | str,
        bake_path: Optional[Path | str] = None,
        env_path: Optional[Path | str] = None,
        output_path: Optional[Path | str] = None,
        log_dir: Optional[Path | str] = None,
        function_name: Optional[str] = None,
        logger: Optional[EdgeLogger] = None,
    ):
        """
        Initialize runtime and load the edge modules.

        Args:
            edge_path: Plugin file or directory
            bake_path: Bake values file (optional)
            env_path: Restricted env file (optional)
            output_path: Where baked source is written (optional)
            log_dir: Base directory for TSV logs (optional, echo-only without it)
            function_name: Name reported by the mocked context

        Raises:
            RestrictedVariable: If the env file holds a non-reserved key
            VariableFileError: If a bake or env file can't be read
            DuplicateStageBinding: If two plugins declare the same stage
        """
        self.logger = logger or EdgeLogger(base_dir=log_dir)
        self._function_name = function_name

        self.registry = ModuleRegistry(
            edge_path,
            bake_path=bake_path,
            env_path=env_path,
            output_path=output_path,
            logger=self.logger,
        )
        self.registry.load()

    @property
    def edge_path(self) -> Path:
        return self.registry.edge_path

    @property
    def modules(self) -> StageMap:
        return self.registry.stage_map

    @property
    def function_name(self) -> str:
        if self._function_name:
            return self._function_name
        env = self.registry.variables.env_vars
        return env.get('FUNCTION_NAME') or env.get('AWS_LAMBDA_FUNCTION_NAME') or DEFAULT_FUNCTION_NAME

    def stages(self) -> List[str]:
        return self.registry.stages()

    def has_response_hooks(self) -> bool:
        stage_map = self.registry.stage_map
        return any(stage in stage_map for stage in RESPONSE_STAGES)

    async def run_request_hooks(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Run viewer-request then origin-request.

        Args:
            request: {'method', 'url', 'headers'} from the HTTP layer

        Returns:
            Short-circuit:
                {'short_circuit': True, 'status', 'status_description',
                 'headers', 'body', 'body_encoding', 'stage', 'response'}
            Forward:
                {'short_circuit': False, 'path', 'headers', 'stage', 'request'}
        """
        stage_map = self.registry.stage_map
        record: Mapping[str, Any] = build_request_record(request)
        last_stage = None

        for stage in REQUEST_STAGES:
            for plugin in stage_map.get(stage, ()):
                before = header_policy.snapshot(record.get('headers'))
                result = await invoke(
                    plugin.handler, record, stage,
                    function_name=self.function_name,
                    logger=self.logger,
                    plugin=plugin.name,
                )

                if result is PASS_THROUGH:
                    continue

                if not isinstance(result, Mapping):
                    self.logger.warning(
                        f'{stage} handler in {plugin.name} returned {type(result).__name__}, '
                        f'expected a request or response; ignoring it',
                        stage=stage, plugin=plugin.name,
                    )
                    continue

                if is_generated_response(result):
                    if self._malformed_headers(result, stage, plugin.name):
                        continue
                    outcome = self._short_circuit(result, stage, plugin.name)
                    if outcome is not None:
                        return outcome
                    continue

                result = _unwrap(result, 'request', 'uri')
                if self._malformed_headers(result, stage, plugin.name):
                    continue
                header_policy.validate(before, result.get('headers'), stage, self.logger, plugin.name)
                record = result
                last_stage = stage

        return {
            'short_circuit': False,
            'path': join_path(record.get('uri') or '/', record.get('querystring')),
            'headers': flatten_headers(record.get('headers')),
            'stage': last_stage,
            'request': record,
        }

    async def run_response_hooks(
        self,
        request: Mapping[str, Any],
        response: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, str]:
        """
        Run origin-response then viewer-response.

        Args:
            request: {'method', 'url', 'headers'} from the HTTP layer
            response: {'status', 'headers'} (default: a bare 200)

        Returns:
            Flat {header-name: value} map to apply before any body bytes
        """
        stage_map = self.registry.stage_map
        request_record = build_request_record(request)
        record: Mapping[str, Any] = build_response_record(response)

        for stage in RESPONSE_STAGES:
            for plugin in stage_map.get(stage, ()):
                before = header_policy.snapshot(record.get('headers'))
                result = await invoke(
                    plugin.handler, {'request': request_record, 'response': record}, stage,
                    function_name=self.function_name,
                    logger=self.logger,
                    plugin=plugin.name,
                )

                if result is PASS_THROUGH:
                    continue

                if not isinstance(result, Mapping):
                    self.logger.warning(
                        f'{stage} handler in {plugin.name} returned {type(result).__name__}, '
                        f'expected a response; ignoring it',
                        stage=stage, plugin=plugin.name,
                    )
                    continue

                result = _unwrap(result, 'response', 'status')
                if self._malformed_headers(result, stage, plugin.name):
                    continue
                header_policy.validate(before, result.get('headers'), stage, self.logger, plugin.name)
                record = result

        return flatten_headers(record.get('headers'))

    def _malformed_headers(self, result: Mapping[str, Any], stage: str, plugin: str) -> bool:
        headers = result.get('headers')
        if headers is None or isinstance(headers, Mapping):
            return False
        self.logger.error(
            f'{stage} handler in {plugin} returned headers as {type(headers).__name__}, '
            f'expected a mapping; failing open',
            stage=stage, plugin=plugin,
        )
        return True

    def _short_circuit(self, result: Mapping[str, Any], stage: str, plugin: str) -> Optional[Dict[str, Any]]:
        status = _status_code(result.get('status'))
        if status is None:
            self.logger.error(
                f'{stage} handler in {plugin} generated a response with invalid status '
                f'{result.get("status")!r}; ignoring it',
                stage=stage, plugin=plugin,
            )
            return None

        self.logger.debug(f'{stage} generated a {status} response', stage=stage, plugin=plugin)
        return {
            'short_circuit': True,
            'status': status,
            'status_description': result.get('statusDescription') or '',
            'headers': flatten_headers(result.get('headers')),
            'body': result.get('body'),
            'body_encoding': result.get('bodyEncoding') or 'text',
            'stage': stage,
            'response': result,
        }

    def reload(self) -> bool:
        return self.registry.reload()

    def watch(self, **kwargs):
        """Start hot reload on the running loop (see ModuleRegistry.watch)"""
        return self.registry.watch(**kwargs)

    def close(self) -> None:
        self.registry.close()

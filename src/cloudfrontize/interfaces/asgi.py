"""
ASGI static file server with edge hooks

The file-serving side of the emulator. It knows nothing about plugins; it
consumes the runtime's outcome contract:

- short-circuit: write the generated response verbatim, serve nothing
- forward: serve the rewritten path if it exists, else the original path
  (a failed rewrite never turns into a client-visible 404)
- response hooks: a flat header map, applied before any body bytes

CloudFront-style details: gzip only for bodies up to 10MB, pre-compressed
.br/.gz rewrites get their Content-Encoding, ETags, optional CORS and SPA
fallback, clean URLs.

Run with uvicorn:
    uvicorn.run(EdgeServer('public', runner=EdgeRunner('edge/')), port=3000)
"""

import gzip
import hashlib
import mimetypes
from base64 import b64decode
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from cloudfrontize.core.edge_logger import EdgeLogger
from cloudfrontize.runtime.edge_runtime import EdgeRunner

COMPRESSION_THRESHOLD = 10 * 1024 * 1024

COMPRESSIBLE_TYPES = (
    'text/',
    'application/javascript',
    'application/json',
    'application/xml',
    'application/xhtml+xml',
    'image/svg+xml',
)

PRECOMPRESSED = {'.br': 'br', '.gz': 'gzip'}


def _scope_headers(scope: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for raw_name, raw_value in scope.get('headers', []):
        name = raw_name.decode('latin-1')
        value = raw_value.decode('latin-1')
        headers[name] = f'{headers[name]}, {value}' if name in headers else value
    return headers


def _content_type(path: Path | str) -> str:
    content_type, _ = mimetypes.guess_type(str(path))
    if content_type is None:
        return 'application/octet-stream'
    if content_type.startswith('text/') or content_type in ('application/javascript', 'application/json'):
        return f'{content_type}; charset=utf-8'
    return content_type


def _is_compressible(content_type: str) -> bool:
    return content_type.startswith(COMPRESSIBLE_TYPES)


class EdgeServer:
    """ASGI application: static files from `directory`, filtered through an EdgeRunner"""

    def __init__(
        self,
        directory: Path | str,
        runner: Optional[EdgeRunner] = None,
        single: bool = False,
        cors: bool = False,
        etag: bool = True,
        compression: bool = True,
        debug: bool = False,
        watch: bool = True,
        logger: Optional[EdgeLogger] = None,
    ):
        """
        Initialize server.

        Args:
            directory: Directory to serve
            runner: Edge runtime (None = plain static server)
            single: SPA mode, serve /index.html for unknown paths
            cors: Add Access-Control-Allow-Origin: *
            etag: Send ETags and answer If-None-Match with 304
            compression: Gzip compressible bodies up to 10MB
            debug: Log rewrites and injected headers at INFO
            watch: Start hot reload on ASGI lifespan startup
        """
        self.directory = Path(directory).resolve()
        self.runner = runner
        self.single = single
        self.cors = cors
        self.etag = etag
        self.compression = compression
        self.debug = debug
        self.watch = watch
        self.logger = logger or (runner.logger if runner else EdgeLogger())

    async def __call__(self, scope, receive, send):
        if scope['type'] == 'lifespan':
            await self._lifespan(receive, send)
        elif scope['type'] == 'http':
            await self._handle(scope, send)

    async def _lifespan(self, receive, send):
        while True:
            message = await receive()
            if message['type'] == 'lifespan.startup':
                if self.runner is not None and self.watch:
                    self.runner.watch()
                await send({'type': 'lifespan.startup.complete'})
            elif message['type'] == 'lifespan.shutdown':
                if self.runner is not None:
                    self.runner.close()
                await send({'type': 'lifespan.shutdown.complete'})
                return

    def _trace(self, message: str, **kwargs) -> None:
        self.logger.log('INFO' if self.debug else 'DEBUG', message, **kwargs)

    async def _handle(self, scope, send):
        method = scope['method']
        query = scope.get('query_string', b'').decode('latin-1')
        url = f"{scope['path']}?{query}" if query else scope['path']
        headers = _scope_headers(scope)
        accept_encoding = headers.get('accept-encoding', '')
        request = {'method': method, 'url': url, 'headers': headers}

        served_path = url.partition('?')[0]

        # 1. Request hooks (viewer-request, origin-request)
        if self.runner is not None:
            outcome = await self.runner.run_request_hooks(request)

            if outcome['short_circuit']:
                self._trace(f"{outcome['stage']}: generated {outcome['status']} for {url}")
                await self._send_generated(outcome, send, head=(method == 'HEAD'))
                return

            rewritten = outcome['path']
            if rewritten != url:
                rewritten_path = rewritten.partition('?')[0]
                if self._resolve(rewritten_path) is not None:
                    self._trace(f"{outcome['stage'] or 'request-hook'}: {url} -> {rewritten}")
                    served_path = rewritten_path
                else:
                    self._trace(f'Fallback: {rewritten} not found, serving original {url}')

        if method not in ('GET', 'HEAD'):
            await self._send(send, 405, [('allow', 'GET, HEAD')], b'Method Not Allowed', head=False)
            return

        file = self._resolve(served_path)
        if file is None and self.single:
            file = self._resolve('/index.html')
        if file is None:
            await self._send(send, 404, [('content-type', 'text/plain; charset=utf-8')], b'Not Found',
                             head=(method == 'HEAD'))
            return

        response_headers: Dict[str, str] = {}

        # 2. Pre-compressed asset chosen by a rewrite
        encoding = PRECOMPRESSED.get(file.suffix)
        if encoding and encoding in accept_encoding:
            response_headers['content-encoding'] = encoding
            response_headers['content-type'] = _content_type(file.with_suffix(''))
        else:
            response_headers['content-type'] = _content_type(file)

        if self.cors:
            response_headers['access-control-allow-origin'] = '*'

        # 3. Response hooks (origin-response, viewer-response), before any body bytes
        if self.runner is not None and self.runner.has_response_hooks():
            injected = await self.runner.run_response_hooks(request, {'status': 200, 'headers': {}})
            for name, value in injected.items():
                response_headers[name.lower()] = value
            if injected:
                self._trace(f"response-hooks: injected {', '.join(injected)}")

        body = file.read_bytes()

        if self.etag:
            etag = f'"{hashlib.sha1(body).hexdigest()}"'
            response_headers['etag'] = etag
            if headers.get('if-none-match') == etag:
                await self._send(send, 304, list(response_headers.items()), b'', head=True)
                return

        # 4. CloudFront compresses only bodies up to 10MB
        if (
            self.compression
            and 'content-encoding' not in response_headers
            and 'gzip' in accept_encoding
            and len(body) <= COMPRESSION_THRESHOLD
            and _is_compressible(response_headers['content-type'])
        ):
            body = gzip.compress(body)
            response_headers['content-encoding'] = 'gzip'
            response_headers['vary'] = 'Accept-Encoding'

        await self._send(send, 200, list(response_headers.items()), body, head=(method == 'HEAD'))

    def _resolve(self, url_path: str) -> Optional[Path]:
        """Map a URL path to a file under the served directory (clean URLs)"""
        relative = unquote(url_path).lstrip('/')
        candidate = (self.directory / relative).resolve()
        try:
            candidate.relative_to(self.directory)
        except ValueError:
            return None

        if candidate.is_dir():
            candidate = candidate / 'index.html'
        if candidate.is_file():
            return candidate

        if relative and not relative.endswith('/'):
            html = candidate.with_name(f'{candidate.name}.html')
            if html.is_file():
                return html

        return None

    async def _send_generated(self, outcome: Dict[str, Any], send, head: bool) -> None:
        body = outcome.get('body') or ''
        if outcome.get('body_encoding') == 'base64':
            payload = b64decode(body)
        else:
            payload = str(body).encode('utf-8')

        headers = [(name.lower(), value) for name, value in outcome['headers'].items()]
        await self._send(send, outcome['status'], headers, payload, head=head)

    async def _send(self, send, status: int, headers: List[Tuple[str, str]], body: bytes, head: bool) -> None:
        names = {name for name, _ in headers}
        if 'content-length' not in names and status != 304:
            headers = headers + [('content-length', str(len(body)))]

        await send({
            'type': 'http.response.start',
            'status': status,
            'headers': [(n.encode('latin-1'), str(v).encode('latin-1')) for n, v in headers],
        })
        await send({'type': 'http.response.body', 'body': b'' if head else body})

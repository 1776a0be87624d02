"""
Command line entry point: static server with Lambda@Edge emulation

Usage:
    cloudfrontize public --edge edge/ --bake .bake --env .env

Defaults come from cloudfrontize.tsv / CLOUDFRONTIZE_* environment variables.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from cloudfrontize import __version__
from cloudfrontize.config import EdgeConfig, get_config
from cloudfrontize.core.edge_logger import EdgeLogger
from cloudfrontize.core.errors import DuplicateStageBinding, RestrictedVariable, VariableFileError
from cloudfrontize.interfaces.asgi import EdgeServer
from cloudfrontize.runtime.edge_runtime import EdgeRunner


def build_parser(config: EdgeConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cloudfrontize',
        description='Static server with CloudFront Lambda@Edge emulation',
    )
    parser.add_argument('directory', nargs='?', default=config.get('directory'),
                        help='Directory to serve (default: .)')
    parser.add_argument('-p', '--port', type=int, default=config.get_int('port'),
                        help='Port to listen on (default: 3000)')
    parser.add_argument('--host', default=config.get('host'), help='Interface to bind (default: 127.0.0.1)')
    parser.add_argument('-e', '--edge', default=config.get('edge'), help='Edge plugin file or directory')
    parser.add_argument('-b', '--bake', default=config.get('bake'), help='Bake values file (KEY=value)')
    parser.add_argument('--env', default=config.get('env'), help='Restricted env file (reserved keys only)')
    parser.add_argument('-o', '--output', default=config.get('output'), help='Write baked plugin source here')
    parser.add_argument('--log-dir', default=config.get('log_dir'), help='Directory for TSV logs')
    parser.add_argument('--function-name', default=config.get('function_name'),
                        help='Function name reported by the mocked context')
    parser.add_argument('-s', '--single', action='store_true', help='SPA mode: serve index.html for unknown paths')
    parser.add_argument('-C', '--cors', action='store_true', help='Enable CORS')
    parser.add_argument('-d', '--debug', action='store_true', help='Log rewrites and injected headers')
    parser.add_argument('-u', '--no-compression', action='store_true', help='Disable gzip compression')
    parser.add_argument('--no-etag', action='store_true', help='Disable ETag')
    parser.add_argument('--no-watch', action='store_true', help='Disable hot reload of edge modules')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def build_app(args: argparse.Namespace, logger: Optional[EdgeLogger] = None) -> EdgeServer:
    """
    Build the ASGI app from parsed arguments.

    Raises:
        RestrictedVariable: If the env file holds a non-reserved key
        VariableFileError: If a bake or env file can't be read
        DuplicateStageBinding: If two plugins declare the same stage
    """
    logger = logger or EdgeLogger(base_dir=args.log_dir, min_echo_level='DEBUG' if args.debug else 'INFO')

    runner = None
    if args.edge:
        runner = EdgeRunner(
            args.edge,
            bake_path=args.bake,
            env_path=args.env,
            output_path=args.output,
            function_name=args.function_name,
            logger=logger,
        )

    return EdgeServer(
        args.directory,
        runner=runner,
        single=args.single,
        cors=args.cors,
        etag=not args.no_etag,
        compression=not args.no_compression,
        debug=args.debug,
        watch=not args.no_watch,
        logger=logger,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point"""
    args = build_parser(get_config()).parse_args(argv)

    try:
        app = build_app(args)
    except (RestrictedVariable, DuplicateStageBinding, VariableFileError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print("=" * 60)
    print("CloudFrontize")
    print("=" * 60)
    print(f"Serving: {Path(args.directory).resolve()}")
    print(f"Listening on http://{args.host}:{args.port}")
    if app.runner is not None:
        stages = ', '.join(app.runner.stages()) or 'none'
        print(f"Edge modules: {app.runner.edge_path.name} ({stages})")
        print(f"Hot reload: {'off' if args.no_watch else 'on'}")
    if args.debug:
        print("Debug mode active")
    print("Press Ctrl+C to stop")
    print("=" * 60)

    uvicorn.run(app, host=args.host, port=args.port, log_level='debug' if args.debug else 'warning')
    return 0


if __name__ == '__main__':
    sys.exit(main())

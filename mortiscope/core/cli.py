# mortiscope/core/cli.py
"""
CLI for the mortiscope worker and maintenance commands.

Module path resolution:
1. User provides dotted module path: `mortiscope worker app.configs.mortiscope:app`
2. User is responsible for PYTHONPATH / running from correct directory
3. Convenience: if cwd has pyproject.toml, we add cwd to sys.path
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable

from mortiscope.core.app import Mortiscope
from mortiscope.core.errors import ConfigurationError, ErrorCode, MortiscopeError
from mortiscope.core.logging import get_logger
from mortiscope.core.utils.imports import import_file_path, setup_sys_path_from_cwd
from mortiscope.core.worker.worker import Worker

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  mortiscope worker app.configs.mortiscope:app  (recommended)\n'
                '  mortiscope worker app/configs/mortiscope.py:app  (file path)\n'
                '  mortiscope worker app.configs.mortiscope  (auto-discover app variable)'
            ),
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Parse a module locator into (module_path, attribute_name).

    - "app.configs.mortiscope:app" -> ("app.configs.mortiscope", "app")
    - "app/configs/mortiscope.py" -> ("app/configs/mortiscope.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(module_locator: str) -> Mortiscope:
    """Import the module named by `module_locator` and return its Mortiscope app."""
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)
    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        module = import_file_path(module_path)
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Mortiscope):
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module.__name__}' is not a Mortiscope app",
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'got {type(obj).__name__}'],
            )
        app = obj
    else:
        apps = [
            (name, obj)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, Mortiscope)
        ]
        if len(apps) != 1:
            raise ConfigurationError(
                message=f'expected exactly one Mortiscope app in {module.__name__}, '
                f'found {len(apps)}',
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f"candidates: {', '.join(name for name, _ in apps) or 'none'}"],
                help_text='specify which one: module.path:variable',
            )
        attr_name, app = apps[0]

    logger.info(f"Discovered mortiscope app '{attr_name}' from {module.__name__}")
    return app


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    from mortiscope.core.logging import set_default_level

    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('mortiscope.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def _run_with_app(
    args: argparse.Namespace, body: Callable[[Mortiscope], Awaitable[Any]]
) -> Any:
    """Discover the app, register workflows, run `body`, then close the app."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    try:
        app = discover_app(_resolve_module_argument(args))
        app.register_workflows()
    except MortiscopeError as e:
        logger.error(str(e))
        sys.exit(1)

    async def _main() -> Any:
        try:
            return await body(app)
        finally:
            await app.close_async()

    try:
        return asyncio.run(_main())
    except MortiscopeError as e:
        logger.error(str(e))
        sys.exit(1)


def worker_command(args: argparse.Namespace) -> None:
    async def body(app: Mortiscope) -> None:
        app.config.log_config(get_logger('cli'))
        await app.ensure_schema_initialized()
        worker = Worker(app.executor)
        worker.install_signal_handlers()
        await worker.run_forever()

    _run_with_app(args, body)


def run_once_command(args: argparse.Namespace) -> None:
    async def body(app: Mortiscope) -> int:
        return await app.executor.run_until_idle(max_ticks=args.max_ticks)

    invoked = _run_with_app(args, body)
    print(f'{invoked} run invocation(s)')


def send_command(args: argparse.Namespace) -> None:
    try:
        data = json.loads(args.data)
    except json.JSONDecodeError as e:
        print(f'invalid JSON payload: {e}', file=sys.stderr)
        sys.exit(2)
    ts = datetime.fromisoformat(args.ts) if args.ts else None

    async def body(app: Mortiscope) -> list[str]:
        return await app.send_named_event(args.event, data, ts=ts, event_id=args.event_id)

    for run_id in _run_with_app(args, body):
        print(run_id)


def init_schema_command(args: argparse.Namespace) -> None:
    async def body(app: Mortiscope) -> None:
        await app.ensure_schema_initialized()

    _run_with_app(args, body)
    print('schema ready')


def _add_common_arguments(parser: argparse.ArgumentParser, default_level: str) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., app.configs.mortiscope:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., app.configs.mortiscope:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mortiscope',
        description='MortiScope workflow worker and maintenance commands',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mortiscope worker app.configs.mortiscope:app
  mortiscope run-once app.configs.mortiscope:app
  mortiscope send app.configs.mortiscope:app --event analysis/request.sent --data '{"caseId": "case-1"}'
  mortiscope init-schema app/configs/mortiscope.py:app
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    worker_parser = subparsers.add_parser('worker', help='Start a polling worker')
    _add_common_arguments(worker_parser, 'INFO')

    once_parser = subparsers.add_parser(
        'run-once', help='Execute due runs until none is left, then exit'
    )
    _add_common_arguments(once_parser, 'INFO')
    once_parser.add_argument(
        '--max-ticks',
        type=int,
        default=100,
        help='Upper bound on claim passes (default: 100)',
    )

    send_parser = subparsers.add_parser('send', help='Send a trigger event')
    _add_common_arguments(send_parser, 'WARNING')
    send_parser.add_argument('--event', required=True, help='Event name')
    send_parser.add_argument('--data', required=True, help='JSON payload (camelCase keys)')
    send_parser.add_argument('--ts', default=None, help='ISO-8601 delivery time')
    send_parser.add_argument('--event-id', default=None, help='Idempotency key')

    schema_parser = subparsers.add_parser(
        'init-schema', help='Create the run and step tables'
    )
    _add_common_arguments(schema_parser, 'INFO')
    return parser


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = build_parser()
        args = parser.parse_args()

        match args.command:
            case 'worker':
                worker_command(args)
            case 'run-once':
                run_once_command(args)
            case 'send':
                send_command(args)
            case 'init-schema':
                init_schema_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()

"""
Test harness entry points.

run_with_server() wraps a whole test run: start the server, run the suite,
stop the server. Lifecycle failures become exit status 1, otherwise the
suite's own status is returned.

The pgtestkit command does the same around an arbitrary command, exporting
the libpq environment (PGHOST, PGPORT, ..., DATABASE_URL) to it:

    pgtestkit -- pytest -x tests/
"""

import argparse
import asyncio
import inspect
import logging
import os
import sys
from typing import Awaitable, Callable, List, Optional, Union

from pgtestkit.config.config_manager import ConfigManager, ConfigValidationError, ServerConfig
from pgtestkit.errors import PgTestKitError, ServerStopError
from pgtestkit.logging_config import configure_logging
from pgtestkit.server.lifecycle import EmbeddedPostgres

logger = logging.getLogger(__name__)

Suite = Callable[[EmbeddedPostgres], Union[int, None, Awaitable[Optional[int]]]]


async def run_with_server(
    suite: Suite,
    config: Optional[ServerConfig] = None,
    server: Optional[EmbeddedPostgres] = None,
) -> int:
    """
    Run a test suite against a freshly started server.

    Args:
        suite: Callable receiving the running server; returns an exit status
            (or an awaitable of one; None counts as 0)
        config: Server configuration when no server is given
        server: Pre-built lifecycle to use instead of a new one

    Returns:
        1 if the server failed to start or stop, else the suite's status
    """
    server = server or EmbeddedPostgres(config)
    logger.info("Starting test execution")

    try:
        await server.start()
    except PgTestKitError as e:
        logger.error(f"Failed to start embedded PostgreSQL server: {e}")
        return 1

    logger.info("Running tests...")
    try:
        result = suite(server)
        if inspect.isawaitable(result):
            result = await result
    except BaseException:
        await _stop_after_failure(server)
        raise
    code = int(result or 0)

    logger.info("Tests completed, stopping PostgreSQL server")
    try:
        await server.stop()
    except ServerStopError as e:
        logger.error(f"Failed to stop embedded PostgreSQL server: {e}")
        return 1

    logger.info(f"Test execution completed with exit code {code}")
    return code


async def _stop_after_failure(server: EmbeddedPostgres):
    try:
        await server.stop()
    except ServerStopError as e:
        logger.error(f"Failed to stop embedded PostgreSQL server after suite error: {e}")


async def run_command(command: List[str], server: EmbeddedPostgres) -> int:
    """Run a command with the server's libpq environment; returns its exit status."""
    env = dict(os.environ)
    env.update(server.dsn_environment())
    logger.info(f"Running {' '.join(command)} against port {server.port}")
    process = await asyncio.create_subprocess_exec(*command, env=env)
    return await process.wait()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgtestkit",
        description="Run a command against an ephemeral PostgreSQL server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -- pytest tests/                  # Run pytest with PG* variables set
  %(prog)s --backend local -- make test      # Use locally installed binaries
  %(prog)s --pg-version 16 -v -- ./run.sh    # Pick a version, verbose logging
        """
    )
    parser.add_argument('--backend', choices=['docker', 'local'], help='Server backend')
    parser.add_argument('--pg-version', dest='version', help='PostgreSQL major version')
    parser.add_argument('--port', type=int, help='Port to listen on (default: a free port)')
    parser.add_argument('--start-timeout', type=float, help='Seconds to wait for the server')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable logging output')
    parser.add_argument('command', nargs=argparse.REMAINDER, help='Command to run')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == '--':
        command = command[1:]
    if not command:
        parser.error("a command to run is required")

    configure_logging(enabled=True if args.verbose else None)

    try:
        config = ConfigManager().server_config(
            backend=args.backend,
            version=args.version,
            port=args.port,
            start_timeout=args.start_timeout,
        )
    except ConfigValidationError as e:
        print(f"pgtestkit: {e}", file=sys.stderr)
        return 2

    async def suite(server: EmbeddedPostgres) -> int:
        return await run_command(command, server)

    return asyncio.run(run_with_server(suite, config))

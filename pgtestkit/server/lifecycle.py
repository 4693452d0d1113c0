"""
Embedded PostgreSQL server lifecycle.

EmbeddedPostgres owns the shared server state for a test run: it starts the
server at most once, hands out isolated databases through its provisioner and
tears everything down exactly once, either through stop() or through the
synchronous shutdown() used by signal handlers.

The object is bound to the event loop that started it; the base connection
is an asyncpg connection of that loop.
"""

import asyncio
import logging
import os
import shutil
import signal
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import asyncpg

from pgtestkit.config.config_manager import ServerConfig
from pgtestkit.connectors.base import ClientT, Connector
from pgtestkit.database.provisioner import DatabaseProvisioner, TestDatabase
from pgtestkit.errors import (
    ServerAlreadyStoppedError,
    ServerStartError,
    ServerStopError,
    wrap_error,
)
from pgtestkit.server.process import (
    ServerProcess,
    ServerProcessFactory,
    create_server_process,
    find_free_port,
)

logger = logging.getLogger(__name__)

CACHE_ROOT = ".embedded-postgres-py"

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ServerStatus(str, Enum):
    """Lifecycle states; STOPPED is terminal."""
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class ServerState:
    """Mutable state guarded by the lifecycle lock."""
    started: bool = False
    stopped: bool = False
    port: int = 0
    cache_dir: Optional[Path] = None
    owns_cache_dir: bool = False
    base_connection: Optional[asyncpg.Connection] = None
    process: Optional[ServerProcess] = None
    status: ServerStatus = ServerStatus.NOT_STARTED


def build_connection_string(username: str, password: str, port: int, database: str) -> str:
    """postgres:// URL for a database on the local server."""
    return (
        f"postgres://{quote(username, safe='')}:{quote(password, safe='')}"
        f"@localhost:{port}/{quote(database, safe='')}"
        f"?sslmode=disable&client_encoding=UTF8"
    )


class EmbeddedPostgres:
    """
    Lifecycle manager for one ephemeral PostgreSQL server.

    Usage:
        server = EmbeddedPostgres(ServerConfig())
        await server.start()
        db = await server.create_database(AsyncpgConnector())
        ...
        await db.close()
        await server.stop()
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        process_factory: Optional[ServerProcessFactory] = None,
        logger: Optional[logging.Logger] = None,
        exit_func: Callable[[int], None] = os._exit,
    ):
        """
        Initialize the lifecycle.

        Args:
            config: Server configuration (defaults to ServerConfig())
            process_factory: Builds the server process from the resolved config
            logger: Logger for lifecycle and provisioning messages
            exit_func: Called with the exit status after a signal-driven shutdown
        """
        self.config = config or ServerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._process_factory = process_factory or create_server_process
        self._exit = exit_func

        self._state = ServerState()
        self._lock = asyncio.Lock()
        # Guards the process/directory release shared by stop() and shutdown()
        self._release_lock = threading.Lock()
        # Set once a synchronous shutdown begins; later shutdown calls return at once
        self._shutting_down = False
        self._start_task: Optional[asyncio.Future] = None

        self._signals_installed = False
        self._previous_handlers: Dict[int, object] = {}

        self.provisioner = DatabaseProvisioner(self, logger=self.logger)

    # State accessors

    @property
    def lock(self) -> asyncio.Lock:
        """Lock serializing administrative operations on the base connection."""
        return self._lock

    @property
    def status(self) -> ServerStatus:
        return self._state.status

    @property
    def is_running(self) -> bool:
        return self._state.started and not self._state.stopped

    @property
    def is_stopped(self) -> bool:
        return self._state.stopped

    @property
    def port(self) -> int:
        return self._state.port

    @property
    def cache_dir(self) -> Optional[Path]:
        return self._state.cache_dir

    @property
    def base_connection(self) -> Optional[asyncpg.Connection]:
        return self._state.base_connection

    def connection_string(self, database: Optional[str] = None) -> str:
        """Connection URL for a database on this server (default database if None)."""
        return build_connection_string(
            self.config.username,
            self.config.password,
            self._state.port,
            database or self.config.database,
        )

    def dsn_environment(self, database: Optional[str] = None) -> Dict[str, str]:
        """libpq environment variables pointing at this server."""
        database = database or self.config.database
        return {
            'PGHOST': 'localhost',
            'PGPORT': str(self._state.port),
            'PGUSER': self.config.username,
            'PGPASSWORD': self.config.password,
            'PGDATABASE': database,
            'PGSSLMODE': 'disable',
            'DATABASE_URL': self.connection_string(database),
        }

    # Start

    async def start(self) -> None:
        """
        Start the server; runs at most once per instance.

        Concurrent and repeated callers all wait on the same attempt and see
        the same outcome. A failed attempt is not retried.

        Raises:
            ServerAlreadyStoppedError: If the server was already stopped
            ServerStartError: If the single start attempt failed
        """
        if self._state.stopped:
            self.logger.error("Failed to start server: server has been stopped")
            raise ServerAlreadyStoppedError("server has been stopped and cannot be restarted")

        if self._start_task is None:
            self._start_task = asyncio.ensure_future(self._start_once())
        await asyncio.shield(self._start_task)

    async def _start_once(self):
        async with self._lock:
            self.logger.info("Starting embedded PostgreSQL server")
            self._state.status = ServerStatus.STARTING

            process: Optional[ServerProcess] = None
            connection: Optional[asyncpg.Connection] = None
            cache_dir: Optional[Path] = None
            owns_cache_dir = False
            try:
                port = self.config.port or find_free_port()
                cache_dir, owns_cache_dir = self._prepare_cache_dir(port)
                resolved = self.config.with_overrides(
                    port=port,
                    runtime_path=cache_dir,
                    data_path=self.config.data_path or cache_dir / "data",
                )
                process = self._process_factory(resolved)
                await asyncio.to_thread(process.start)
                self.logger.info(f"PostgreSQL server started on port {port}")

                connection = await asyncpg.connect(
                    build_connection_string(
                        self.config.username, self.config.password, port, self.config.database
                    ),
                    timeout=self.config.start_timeout,
                )
                await connection.fetchval("SELECT 1")
            except Exception as e:
                self.logger.error(f"Failed to start PostgreSQL server: {e}")
                await self._rollback_start(process, connection, cache_dir if owns_cache_dir else None)
                self._state.status = ServerStatus.NOT_STARTED
                raise ServerStartError(f"failed to start postgres server: {e}") from e

            self._state.port = port
            self._state.cache_dir = cache_dir
            self._state.owns_cache_dir = owns_cache_dir
            self._state.process = process
            self._state.base_connection = connection
            self._state.started = True
            self._state.status = ServerStatus.RUNNING
            self.logger.info("Successfully connected to PostgreSQL server")

        if self.config.handle_signals:
            self.install_signal_handlers()

    def _prepare_cache_dir(self, port: int):
        """Create a fresh cache directory; returns (path, created_by_us)."""
        if self.config.runtime_path is not None:
            path = Path(self.config.runtime_path).expanduser()
            owned = not path.exists()
        else:
            path = Path.home() / CACHE_ROOT / f"{self.config.database}_{port}"
            if path.exists():
                # Leftover from a run that was killed before cleanup
                shutil.rmtree(path)
            owned = True
        path.mkdir(parents=True, exist_ok=True)
        return path, owned

    async def _rollback_start(
        self,
        process: Optional[ServerProcess],
        connection: Optional[asyncpg.Connection],
        cache_dir: Optional[Path],
    ):
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                self.logger.error(f"Failed to close database connection after start error: {e}")
        if process is not None:
            try:
                await asyncio.to_thread(process.stop)
            except Exception as e:
                self.logger.error(f"Failed to stop PostgreSQL server after start error: {e}")
        if cache_dir is not None:
            try:
                shutil.rmtree(cache_dir)
            except OSError as e:
                self.logger.error(f"Failed to remove cache directory {cache_dir}: {e}")

    # Stop

    async def stop(self) -> None:
        """
        Stop the server and remove its cache directory.

        A no-op when the server never started or is already stopped. Every
        step runs even if an earlier one failed.

        Raises:
            ServerStopError: With every failure that occurred
        """
        async with self._lock:
            self.logger.info("Stopping PostgreSQL server")
            if not self.is_running:
                self.logger.debug("PostgreSQL server is not running or already stopped")
                return

            self._state.status = ServerStatus.STOPPING
            errors: List[BaseException] = []

            connection = self._state.base_connection
            self._state.base_connection = None
            if connection is not None:
                self.logger.debug("Closing base database connection")
                try:
                    await connection.close()
                except Exception as e:
                    self.logger.error(f"Failed to close base database connection: {e}")
                    errors.append(wrap_error("failed to close base database connection", e))

            errors.extend(await asyncio.to_thread(self._release))

        self.restore_signal_handlers()
        if errors:
            raise ServerStopError("stopping PostgreSQL", errors)
        self.logger.info("Successfully stopped PostgreSQL server and cleaned up all resources")

    def _release(self) -> List[BaseException]:
        """Stop the process, mark stopped and remove the cache directory."""
        with self._release_lock:
            if self._state.stopped:
                return []
            errors: List[BaseException] = []

            process = self._state.process
            self._state.process = None
            if process is not None:
                self.logger.debug("Stopping PostgreSQL server process")
                try:
                    process.stop()
                except Exception as e:
                    self.logger.error(f"Failed to stop PostgreSQL server: {e}")
                    errors.append(wrap_error("failed to stop postgres server", e))

            # Marked stopped even when the process refused to stop; no retries
            self._state.stopped = True
            self._state.started = False
            self._state.status = ServerStatus.STOPPED

            cache_dir = self._state.cache_dir
            if cache_dir is not None and self._state.owns_cache_dir:
                self.logger.debug(f"Removing cache directory {cache_dir}")
                try:
                    shutil.rmtree(cache_dir)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    self.logger.error(f"Failed to remove cache directory {cache_dir}: {e}")
                    errors.append(wrap_error(f"failed to remove cache directory {cache_dir}", e))
            return errors

    def shutdown(self, signum: Optional[int] = None) -> None:
        """
        Tear the server down synchronously.

        Usable from signal handlers and atexit hooks where no event loop can
        be awaited: the base connection is terminated rather than closed.
        A call made while a shutdown is already in progress returns
        immediately.

        Raises:
            ServerStopError: With every failure that occurred
        """
        if self._shutting_down:
            self.logger.debug("Shutdown already in progress")
            return
        reason = f" after signal {signal.Signals(signum).name}" if signum else ""
        self.logger.info(f"Shutting down PostgreSQL server{reason}")
        if not self.is_running:
            return
        self._shutting_down = True

        errors: List[BaseException] = []
        connection = self._state.base_connection
        self._state.base_connection = None
        if connection is not None:
            try:
                connection.terminate()
            except Exception as e:
                errors.append(wrap_error("failed to terminate base database connection", e))

        errors.extend(self._release())
        if errors:
            raise ServerStopError("shutting down PostgreSQL", errors)

    # Signals

    def install_signal_handlers(self, signals: Iterable[int] = DEFAULT_SIGNALS) -> bool:
        """
        Route termination signals to shutdown() followed by process exit.

        Installed once; only possible from the main thread.

        Returns:
            True if the handlers are in place
        """
        if self._signals_installed:
            return True
        if threading.current_thread() is not threading.main_thread():
            self.logger.warning("Signal handlers can only be installed from the main thread")
            return False

        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        self._signals_installed = True
        self.logger.debug("Installed termination signal handlers")
        return True

    def restore_signal_handlers(self) -> None:
        """Put back the handlers that were active before installation."""
        if not self._signals_installed:
            return
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()
        self._signals_installed = False

    def _handle_signal(self, signum, frame):
        if self._shutting_down:
            # Repeated signal while the first one is still tearing down
            self.logger.warning(f"Received signal {signal.Signals(signum).name} during shutdown, exiting")
            self._exit(128 + signum)
            return
        self.logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        try:
            self.shutdown(signum)
        except ServerStopError as e:
            self.logger.error(f"Error during shutdown: {e}")
        self._exit(128 + signum)

    # Provisioning

    async def create_database(self, connector: Connector[ClientT]) -> TestDatabase[ClientT]:
        """Provision an isolated database; see DatabaseProvisioner.create."""
        return await self.provisioner.create(connector)

    async def reset_database(self, handle: TestDatabase) -> None:
        """Reset a database through its connector; see DatabaseProvisioner.reset."""
        await self.provisioner.reset(handle)

    async def __aenter__(self) -> "EmbeddedPostgres":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def __repr__(self) -> str:
        return f"<EmbeddedPostgres {self.status.value} port={self.port or '-'}>"

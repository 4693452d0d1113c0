"""
Server process interface.

A server process owns one running PostgreSQL instance. The lifecycle hands it
a fully resolved ServerConfig (port, runtime and data paths filled in) and only
ever calls start() once and stop() at most once per start.
"""

import socket
from typing import Callable, Protocol, runtime_checkable

from pgtestkit.config.config_manager import ServerConfig


@runtime_checkable
class ServerProcess(Protocol):
    """
    Protocol for the external process manager running PostgreSQL.

    Implementations block in start() until the server accepts TCP connections
    on config.port, and raise ServerProcessError on failure. stop() must be
    safe to call after a failed or partial start.
    """

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


ServerProcessFactory = Callable[[ServerConfig], ServerProcess]


def find_free_port() -> int:
    """Ask the OS for a currently unused TCP port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


def create_server_process(config: ServerConfig) -> ServerProcess:
    """Build the server process for the configured backend."""
    if config.backend == "local":
        from pgtestkit.server.local_process import LocalServerProcess
        return LocalServerProcess(config)

    from pgtestkit.server.docker_process import DockerServerProcess
    return DockerServerProcess(config)

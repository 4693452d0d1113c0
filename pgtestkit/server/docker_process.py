"""
Docker Server Process

Runs PostgreSQL in a throwaway container from the official postgres image and
publishes it on the configured host port.
"""

import logging
import time
import uuid
from typing import Any, Dict, Optional

import docker
from docker.errors import DockerException, NotFound

from pgtestkit.config.config_manager import ServerConfig
from pgtestkit.errors import ServerProcessError

logger = logging.getLogger(__name__)

CONTAINER_PORT = '5432/tcp'
CONTAINER_LABEL = 'pgtestkit'

# Docker expresses healthcheck durations in nanoseconds
_SECOND_NS = 1_000_000_000


class DockerServerProcess:
    """PostgreSQL server running in a Docker container."""

    def __init__(self, config: ServerConfig, client: Optional[Any] = None):
        """
        Initialize the Docker server process.

        Args:
            config: Resolved server configuration; config.port must be set
            client: Docker client; created with docker.from_env() on start
        """
        if config.port is None:
            raise ServerProcessError("DockerServerProcess requires a resolved port")
        self.config = config
        self.client = client
        self.container: Optional[Any] = None

    def _container_kwargs(self) -> Dict[str, Any]:
        config = self.config
        container_name = f"{CONTAINER_LABEL}_{config.port}_{uuid.uuid4().hex[:8]}"
        ready_check = (
            f"pg_isready -h 127.0.0.1 -p 5432 -U {config.username} -d {config.database}"
        )
        return {
            'image': config.image_name,
            'name': container_name,
            'ports': {CONTAINER_PORT: ('127.0.0.1', config.port)},
            'environment': {
                'POSTGRES_USER': config.username,
                'POSTGRES_PASSWORD': config.password,
                'POSTGRES_DB': config.database,
                'POSTGRES_INITDB_ARGS': f"--encoding=UTF8 --locale={config.locale}",
            },
            'healthcheck': {
                'test': ['CMD-SHELL', ready_check],
                'interval': _SECOND_NS // 2,
                'timeout': 5 * _SECOND_NS,
                'retries': max(1, int(config.start_timeout * 2)),
            },
            'labels': {CONTAINER_LABEL: 'true'},
        }

    def start(self) -> None:
        """
        Start the container and wait until PostgreSQL accepts connections.

        Raises:
            ServerProcessError: If Docker is unavailable, the container cannot
                be created, or it does not become healthy in time
        """
        try:
            if self.client is None:
                self.client = docker.from_env()
            container_kwargs = self._container_kwargs()
            logger.info(
                f"Starting PostgreSQL container {container_kwargs['name']} "
                f"from {self.config.image_name} on port {self.config.port}"
            )
            self.container = self.client.containers.create(**container_kwargs)
            self.container.start()
        except DockerException as e:
            # A created but unstartable container is removed here
            self._discard_container()
            raise ServerProcessError(f"failed to start postgres container: {e}") from e

        if not self.wait_for_health(timeout=self.config.start_timeout):
            logs = self._tail_logs()
            raise ServerProcessError(
                f"postgres container did not become healthy within "
                f"{self.config.start_timeout}s{': ' + logs if logs else ''}"
            )
        logger.info(f"PostgreSQL container {self.container.name} is healthy")

    def _discard_container(self):
        if self.container is None:
            return
        try:
            self.stop()
        except ServerProcessError as e:
            logger.error(f"Failed to remove container after start error: {e}")

    def wait_for_health(self, timeout: float = 30, poll_interval: float = 0.5) -> bool:
        """Wait for the container healthcheck to report healthy."""
        if self.container is None:
            return False

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                self.container.reload()
            except DockerException as e:
                logger.error(f"Could not inspect container {self.container.name}: {e}")
                return False
            health = self.container.attrs.get('State', {}).get('Health', {})
            if health.get('Status') == 'healthy':
                return True
            if self.container.status in ('exited', 'dead'):
                logger.error(f"Container {self.container.name} exited during startup")
                return False
            time.sleep(poll_interval)

        return False

    def _tail_logs(self, lines: int = 20) -> str:
        try:
            return self.container.logs(tail=lines).decode('utf-8', errors='replace').strip()
        except DockerException:
            return ''

    def stop(self) -> None:
        """
        Stop and remove the container together with its anonymous volumes.

        Raises:
            ServerProcessError: If the container could not be removed
        """
        container = self.container
        if container is None:
            return
        self.container = None

        try:
            container.stop(timeout=10)
        except DockerException as e:
            # Removal below is forced, so a failed graceful stop is not fatal
            logger.warning(f"Graceful stop of container {container.name} failed: {e}")

        try:
            container.remove(force=True, v=True)
        except NotFound:
            logger.debug(f"Container {container.name} was already removed")
            return
        except DockerException as e:
            raise ServerProcessError(f"failed to remove postgres container {container.name}: {e}") from e
        logger.info(f"Removed PostgreSQL container {container.name}")

"""
Local Server Process

Runs PostgreSQL from binaries installed on the host (initdb, pg_ctl,
createdb), keeping the cluster, socket and log inside the run's cache
directory.
"""

import logging
import os
import re
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from pgtestkit.config.config_manager import ServerConfig
from pgtestkit.errors import ServerProcessError

logger = logging.getLogger(__name__)

_VERSION_PATTERN = re.compile(r"\(PostgreSQL\)\s+(\d+)")


class LocalServerProcess:
    """PostgreSQL server started from locally installed binaries."""

    def __init__(self, config: ServerConfig):
        if config.port is None or config.runtime_path is None:
            raise ServerProcessError("LocalServerProcess requires a resolved port and runtime path")
        self.config = config
        self.runtime_path = Path(config.runtime_path)
        self.data_path = Path(config.data_path) if config.data_path else self.runtime_path / "data"
        self.log_path = self.runtime_path / "postgres.log"
        self._running = False

    def _binary(self, name: str) -> str:
        """Locate a PostgreSQL binary in binaries_path, then on PATH."""
        if self.config.binaries_path:
            base = Path(self.config.binaries_path)
            for candidate in (base / name, base / "bin" / name):
                if candidate.exists():
                    return str(candidate)
            raise ServerProcessError(f"{name} not found in {base}")

        found = shutil.which(name)
        if not found:
            raise ServerProcessError(
                f"{name} not found on PATH; install PostgreSQL or set binaries_path"
            )
        return found

    def _run(self, args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        logger.debug(f"Running {' '.join(args)}")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.config.start_timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise ServerProcessError(f"timeout running {args[0]}") from e
        except OSError as e:
            raise ServerProcessError(f"cannot run {args[0]}: {e}") from e
        if result.returncode != 0:
            raise ServerProcessError(
                f"{Path(args[0]).name} failed with exit code {result.returncode}: "
                f"{(result.stderr or result.stdout).strip()}"
            )
        return result.stdout

    def _check_version(self, pg_ctl: str):
        output = self._run([pg_ctl, "--version"])
        match = _VERSION_PATTERN.search(output)
        if match is None:
            logger.warning(f"Could not parse PostgreSQL version from {output.strip()!r}")
            return
        installed = match.group(1)
        wanted = self.config.version.split(".")[0]
        if installed != wanted:
            raise ServerProcessError(
                f"installed PostgreSQL is version {installed}, configuration asks for {wanted}"
            )

    def _init_cluster(self):
        if (self.data_path / "PG_VERSION").exists():
            logger.debug(f"Reusing existing cluster in {self.data_path}")
            return

        self.data_path.mkdir(parents=True, exist_ok=True)
        password_file = self.runtime_path / ".pwfile"
        password_file.write_text(self.config.password)
        try:
            self._run([
                self._binary("initdb"),
                "-D", str(self.data_path),
                "-U", self.config.username,
                "-A", "scram-sha-256",
                "--pwfile", str(password_file),
                "-E", "UTF8",
                "--locale", self.config.locale,
            ])
        finally:
            password_file.unlink()

    def _create_default_database(self):
        if self.config.database == "postgres":
            return
        env = dict(os.environ, PGPASSWORD=self.config.password)
        try:
            self._run([
                self._binary("createdb"),
                "-h", "localhost",
                "-p", str(self.config.port),
                "-U", self.config.username,
                self.config.database,
            ], env=env)
        except ServerProcessError as e:
            if "already exists" not in str(e):
                raise

    def start(self) -> None:
        """
        Initialise the cluster if needed and start the server.

        Raises:
            ServerProcessError: If binaries are missing, the version does not
                match, or initdb/pg_ctl fail
        """
        pg_ctl = self._binary("pg_ctl")
        self._check_version(pg_ctl)
        self.runtime_path.mkdir(parents=True, exist_ok=True)
        self._init_cluster()

        server_options = (
            f"-p {self.config.port} -c listen_addresses=localhost "
            f"-k {shlex.quote(str(self.runtime_path))}"
        )
        logger.info(f"Starting local PostgreSQL on port {self.config.port} with data in {self.data_path}")
        self._run([
            pg_ctl,
            "-D", str(self.data_path),
            "-l", str(self.log_path),
            "-o", server_options,
            "-w",
            "-t", str(int(self.config.start_timeout)),
            "start",
        ])
        self._running = True
        self._create_default_database()

    def stop(self) -> None:
        """
        Stop the server with a fast shutdown.

        Raises:
            ServerProcessError: If pg_ctl stop fails
        """
        if not self._running:
            return
        self._running = False
        self._run([
            self._binary("pg_ctl"),
            "-D", str(self.data_path),
            "-m", "fast",
            "-w",
            "stop",
        ])
        logger.info(f"Stopped local PostgreSQL on port {self.config.port}")

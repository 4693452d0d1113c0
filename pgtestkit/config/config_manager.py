"""
Configuration Manager for pgtestkit

Handles the server configuration surface: defaults, environment variable
overrides, environment file loading and validation.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pgtestkit.errors import PgTestKitError

logger = logging.getLogger(__name__)

DEFAULT_USER = "postgres"
DEFAULT_PASSWORD = "postgres"
DEFAULT_DATABASE = "postgres"
DEFAULT_LOCALE = "en_US.UTF-8"
DEFAULT_VERSION = "15"
DEFAULT_START_TIMEOUT = 60.0


class ConfigValidationError(PgTestKitError):
    """Raised when configuration validation fails."""
    pass


class ServerConfig(BaseModel):
    """
    Settings used to start the ephemeral PostgreSQL server.

    Attributes:
        username: Superuser created in the new cluster
        password: Password of the superuser
        database: Default database the administrative connection uses
        locale: Cluster locale passed to initdb
        version: Major PostgreSQL version (selects the image or checks binaries)
        port: Explicit port; a free port is picked when unset
        runtime_path: Cache directory for this run; defaults to one under $HOME
        data_path: Cluster data directory; defaults to <runtime_path>/data
        binaries_path: Directory holding initdb/pg_ctl for the local backend
        start_timeout: Seconds to wait for the server to accept connections
        backend: "docker" runs a container, "local" runs installed binaries
        image: Docker image; defaults to postgres:<version>
        handle_signals: Install SIGINT/SIGTERM teardown after the first start
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    username: str = Field(default=DEFAULT_USER, min_length=1)
    password: str = DEFAULT_PASSWORD
    database: str = Field(default=DEFAULT_DATABASE, min_length=1)
    locale: str = DEFAULT_LOCALE
    version: str = DEFAULT_VERSION
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    runtime_path: Optional[Path] = None
    data_path: Optional[Path] = None
    binaries_path: Optional[Path] = None
    start_timeout: float = Field(default=DEFAULT_START_TIMEOUT, gt=0)
    backend: Literal["docker", "local"] = "docker"
    image: Optional[str] = None
    handle_signals: bool = True

    @property
    def image_name(self) -> str:
        """Docker image used by the docker backend."""
        return self.image or f"postgres:{self.version}"

    def with_overrides(self, **overrides: Any) -> "ServerConfig":
        """Return a validated copy with the given fields replaced."""
        values = self.model_dump()
        values.update(overrides)
        return build_server_config(values)


def build_server_config(values: Dict[str, Any]) -> ServerConfig:
    """
    Validate raw values into a ServerConfig.

    Raises:
        ConfigValidationError: If any value is invalid
    """
    try:
        return ServerConfig(**values)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigValidationError(f"Invalid server configuration - {problems}") from e


class ConfigManager:
    """
    Central configuration management for pgtestkit.

    Provides:
    - Server settings from PGTESTKIT_* environment variables
    - Environment file loading with precedence (.env, then .env.test)
    - Logging toggles (PGTESTKIT_LOG, ENV)
    - Configuration validation
    """

    # Environment variable mappings
    ENV_VARS = {
        'username': 'PGTESTKIT_USER',
        'password': 'PGTESTKIT_PASSWORD',
        'database': 'PGTESTKIT_DATABASE',
        'locale': 'PGTESTKIT_LOCALE',
        'version': 'PGTESTKIT_VERSION',
        'port': 'PGTESTKIT_PORT',
        'runtime_path': 'PGTESTKIT_RUNTIME_PATH',
        'data_path': 'PGTESTKIT_DATA_PATH',
        'binaries_path': 'PGTESTKIT_BINARIES_PATH',
        'start_timeout': 'PGTESTKIT_START_TIMEOUT',
        'backend': 'PGTESTKIT_BACKEND',
        'image': 'PGTESTKIT_IMAGE',
        'handle_signals': 'PGTESTKIT_HANDLE_SIGNALS',
    }

    ENV_FILES = ('.env', '.env.test')

    TRUE_VALUES = ('1', 'true', 'yes', 'on')
    FALSE_VALUES = ('0', 'false', 'no', 'off')

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize ConfigManager.

        Args:
            config_dir: Directory containing environment files (defaults to cwd)
        """
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()
        self._env_vars: Dict[str, str] = {}
        self._load_env_files()

    def _load_env_files(self):
        """Load environment files; later files override earlier ones."""
        for env_file in self.ENV_FILES:
            env_path = self.config_dir / env_file
            if env_path.exists():
                self._load_env_file(env_path)

    def _load_env_file(self, env_path: Path):
        """Load a single environment file into our internal env_vars dict."""
        try:
            with open(env_path, 'r') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        self._env_vars[key.strip()] = value.strip().strip('"').strip("'")
        except OSError as e:
            logger.warning(f"Could not read environment file {env_path}: {e}")

    def get(self, env_var: str, default: Optional[str] = None) -> Optional[str]:
        """Look up a variable: os.environ first, then loaded env files."""
        value = os.getenv(env_var)
        if value is None or value == '':
            value = self._env_vars.get(env_var)
        return value if value not in (None, '') else default

    def _parse_port(self, env_var: str, value: str) -> int:
        try:
            port = int(value)
        except ValueError:
            raise ConfigValidationError(
                f"Invalid {env_var}: '{value}' - port must be a number between 1 and 65535"
            )
        if not (1 <= port <= 65535):
            raise ConfigValidationError(
                f"Invalid {env_var}: '{value}' - port must be between 1 and 65535"
            )
        return port

    def _parse_bool(self, env_var: str, value: str) -> bool:
        lowered = value.strip().lower()
        if lowered in self.TRUE_VALUES:
            return True
        if lowered in self.FALSE_VALUES:
            return False
        raise ConfigValidationError(f"Invalid {env_var}: '{value}' - expected a boolean")

    def _parse_float(self, env_var: str, value: str) -> float:
        try:
            return float(value)
        except ValueError:
            raise ConfigValidationError(f"Invalid {env_var}: '{value}' - expected a number")

    def load_values(self) -> Dict[str, Any]:
        """Collect the configured (non-default) server settings."""
        values: Dict[str, Any] = {}
        for field, env_var in self.ENV_VARS.items():
            raw = self.get(env_var)
            if raw is None:
                continue
            if field == 'port':
                values[field] = self._parse_port(env_var, raw)
            elif field == 'handle_signals':
                values[field] = self._parse_bool(env_var, raw)
            elif field == 'start_timeout':
                values[field] = self._parse_float(env_var, raw)
            else:
                values[field] = raw
        return values

    def server_config(self, **overrides: Any) -> ServerConfig:
        """
        Build the server configuration.

        Args:
            **overrides: Explicit values; these win over environment settings

        Returns:
            Validated ServerConfig

        Raises:
            ConfigValidationError: If a setting is invalid
        """
        values = self.load_values()
        values.update({key: value for key, value in overrides.items() if value is not None})
        return build_server_config(values)

    @property
    def logging_enabled(self) -> Optional[bool]:
        """PGTESTKIT_LOG as a boolean, or None when unset."""
        raw = self.get('PGTESTKIT_LOG')
        if raw is None:
            return None
        return self._parse_bool('PGTESTKIT_LOG', raw)

    @property
    def environment(self) -> str:
        """Deployment environment name used to pick the log format."""
        return self.get('ENV', 'test')

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == 'development'

"""Configuration management package for pgtestkit."""

from .config_manager import (
    ConfigManager,
    ConfigValidationError,
    ServerConfig,
    build_server_config,
)

__all__ = ['ConfigManager', 'ConfigValidationError', 'ServerConfig', 'build_server_config']

"""
mcpprobe Configuration - Configuration loading and validation.

This module provides the Config class for managing mcpprobe configuration
from both global (~/.mcpprobe/config.yaml) and local (.mcpprobe/config.yaml)
sources.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from mcpprobe import __version__
from mcpprobe.verifier.schema import ServerDescriptor, TransportKind
from mcpprobe.verifier.tokens import DEFAULT_FRAMING_ENVELOPE
from mcpprobe.verifier.transport import DEFAULT_CLIENT_NAME, DEFAULT_PROTOCOL_VERSION


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class VerifierSettings(BaseModel):
    """Configuration for verification attempts."""

    timeout_ms: int = Field(default=30000, gt=0)
    client_name: str = DEFAULT_CLIENT_NAME
    client_version: str = __version__
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    chars_per_token: int = Field(default=4, gt=0)
    include_framing: bool = True
    framing_envelope: str = DEFAULT_FRAMING_ENVELOPE
    max_stderr_lines: int = Field(default=50, ge=0)


class ServerEntry(BaseModel):
    """Configuration for a single MCP server."""

    type: TransportKind = TransportKind.STDIO
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    def to_descriptor(self, name: str) -> ServerDescriptor:
        if self.type is TransportKind.STDIO:
            return ServerDescriptor(
                name=name, kind=self.type, command=self.command, args=self.args, env=self.env
            )
        return ServerDescriptor(name=name, kind=self.type, url=self.url, headers=self.headers)


class ProbeConfig(BaseModel):
    """Complete mcpprobe configuration schema."""

    verifier: VerifierSettings = Field(default_factory=VerifierSettings)
    log_level: str = "WARNING"
    servers: Dict[str, ServerEntry] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


class Config:
    """
    mcpprobe configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.mcpprobe/config.yaml
    - Local: .mcpprobe/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> config.merged.verifier.timeout_ms
        30000
        >>> servers = config.server_descriptors(["everything"])
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".mcpprobe"
    LOCAL_CONFIG_DIR = Path(".mcpprobe")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[ProbeConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            path: Explicit local config file, used instead of searching.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        if path is not None and not Path(path).exists():
            raise ConfigError(f"Config file not found: {path}")
        local_config = cls._load_yaml(Path(path) if path else cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> ProbeConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = ProbeConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def server_descriptors(self, names: Optional[Sequence[str]] = None) -> List[ServerDescriptor]:
        """
        Enabled configured servers as descriptors, in file order.

        Args:
            names: Only return servers with these names (case-insensitive).
        """
        wanted = {n.lower() for n in names} if names else None
        descriptors = []
        for name, entry in self.merged.servers.items():
            if not entry.enabled:
                continue
            if wanted is not None and name.lower() not in wanted:
                continue
            try:
                descriptors.append(entry.to_descriptor(name))
            except ValidationError as e:
                raise ConfigError(f"Invalid server '{name}': {e}")
        return descriptors

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

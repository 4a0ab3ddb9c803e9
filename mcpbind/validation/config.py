"""
mcpbind Configuration - Host descriptor loading and validation.

This module provides the Config class for reading the MCP host document
(``.mcp.json``) and the optional ``mcpbind`` settings block that lives
next to it.

Example document::

    {
      "mcpServers": {
        "github": {
          "type": "stdio",
          "command": "npx",
          "args": ["-y", "@modelcontextprotocol/server-github"],
          "env": {"GITHUB_TOKEN": "${GITHUB_TOKEN}"}
        },
        "search": {
          "type": "http",
          "url": "https://mcp.example.com/mcp",
          "headers": {"Authorization": "Bearer ${SEARCH_TOKEN}"}
        }
      },
      "mcpbind": {"output_dir": "servers", "stale_after_days": 7}
    }
"""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from mcpbind.errors import ConfigurationError

_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


class HostDescriptor(BaseModel):
    """Connection parameters for one MCP host. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal["stdio", "http"] = "stdio"
    # stdio
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    # http
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _infer_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data and data.get("url") and not data.get("command"):
            data = {**data, "type": "http"}
        return data

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "HostDescriptor":
        if self.type == "stdio" and not self.command:
            raise ValueError(f"stdio host '{self.name}' requires 'command'")
        if self.type == "http" and not self.url:
            raise ValueError(f"http host '{self.name}' requires 'url'")
        return self


class BindingSettings(BaseModel):
    """Settings for generation and freshness checks."""

    output_dir: str = "servers"
    stale_after_days: float = 7
    operation_timeout_ms: int = 30000
    batch_timeout_ms: int = 10000

    @property
    def stale_after(self) -> timedelta:
        return timedelta(days=self.stale_after_days)


class MCPBindConfig(BaseModel):
    """Complete validated configuration."""

    hosts: Dict[str, HostDescriptor] = Field(default_factory=dict)
    settings: BindingSettings = Field(default_factory=BindingSettings)


def substitute_env(text: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Replace ``${VAR}`` placeholders with environment values (empty when unset)."""
    env = os.environ if environ is None else environ
    return _PLACEHOLDER.sub(lambda m: env.get(m.group(1), ""), text)


class Config:
    """
    mcpbind configuration manager.

    Reads the host document from an explicit path or by walking up from the
    working directory looking for ``.mcp.json``. Placeholders are resolved
    against the process environment (after loading ``.env``) before the
    document is parsed.

    Example:
        >>> config = Config.load()
        >>> config.host_names()
        ['github', 'search']
        >>> config.get_host("github").command
        'npx'
    """

    CONFIG_FILENAME = ".mcp.json"

    def __init__(self, data: Optional[Dict[str, Any]] = None, path: Optional[Path] = None):
        """
        Initialize Config.

        Args:
            data: Parsed configuration document (placeholders already resolved).
            path: File the document was read from, used to anchor relative paths.
        """
        self._data = data or {}
        self.path = Path(path) if path else None
        self._merged: Optional[MCPBindConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from ``path`` or the nearest ``.mcp.json``.

        Raises:
            ConfigurationError: If no document is found or it cannot be parsed.
        """
        load_dotenv()

        config_path = Path(path) if path else cls._find_config()
        if config_path is None or not config_path.exists():
            raise ConfigurationError(
                f"No {cls.CONFIG_FILENAME} found"
                + (f" at {config_path}" if config_path else " in this directory or its parents")
            )

        try:
            text = config_path.read_text()
            data = yaml.safe_load(substitute_env(text))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at the top level")

        return cls(data=data, path=config_path)

    @classmethod
    def _find_config(cls) -> Optional[Path]:
        """Find the host document by walking up the directory tree."""
        current = Path.cwd()
        while True:
            candidate = current / cls.CONFIG_FILENAME
            if candidate.exists():
                return candidate
            if current == current.parent:
                return None
            current = current.parent

    @property
    def merged(self) -> MCPBindConfig:
        """Get the validated configuration."""
        if self._merged is None:
            servers = self._data.get("mcpServers") or {}
            if not isinstance(servers, dict):
                raise ConfigurationError("'mcpServers' must be a mapping of host name to descriptor")
            try:
                hosts = {}
                for name, raw in servers.items():
                    if not isinstance(raw, dict):
                        raise ConfigurationError(f"Descriptor for host '{name}' must be a mapping")
                    hosts[name] = HostDescriptor(**{**raw, "name": name})
                settings = BindingSettings(**(self._data.get("mcpbind") or {}))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration: {e}")
            self._merged = MCPBindConfig(hosts=hosts, settings=settings)
        return self._merged

    @property
    def settings(self) -> BindingSettings:
        return self.merged.settings

    def host_names(self) -> List[str]:
        """Configured host names in document order."""
        return list(self.merged.hosts)

    def get_host(self, name: str) -> HostDescriptor:
        """
        Look up one host descriptor.

        Raises:
            ConfigurationError: If the host is not configured.
        """
        host = self.merged.hosts.get(name)
        if host is None:
            where = f" in {self.path}" if self.path else ""
            raise ConfigurationError(f"MCP server '{name}' not found{where}")
        return host

    @property
    def output_path(self) -> Path:
        """Bindings root, resolved relative to the config file's directory."""
        output = Path(self.settings.output_dir)
        if output.is_absolute():
            return output
        base = self.path.parent if self.path else Path.cwd()
        return base / output

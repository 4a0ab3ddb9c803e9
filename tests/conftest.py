"""Shared fixtures: fake MCP channels and connectors standing in for live hosts."""

import asyncio
import json
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
import yaml

from mcpbind.validation.config import Config
from mcpbind.wrappers.client import use_bridge


def make_tool(name: str, description: str = "", input_schema=None, output_schema=None) -> SimpleNamespace:
    """Object shaped like ``mcp.types.Tool``."""
    return SimpleNamespace(
        name=name,
        description=description,
        inputSchema=input_schema,
        outputSchema=output_schema,
    )


def text_result(text: str, is_error: bool = False) -> SimpleNamespace:
    """Object shaped like ``mcp.types.CallToolResult`` with one text block."""
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)], isError=is_error)


class FakeChannel:
    """In-memory stand-in for ``mcpbind.wrappers.transport.Channel``."""

    def __init__(
        self,
        host_name: str,
        tools: Optional[List[Any]] = None,
        instructions: Optional[str] = None,
        responses: Optional[Dict[str, Any]] = None,
        list_delay: float = 0,
    ):
        self.host_name = host_name
        self.instructions: Optional[str] = None
        self.initialized = False
        self.calls: List[tuple] = []
        self._tools = tools or []
        self._instructions = instructions
        self._responses = responses or {}
        self._list_delay = list_delay

    async def initialize(self, timeout_ms: int = 30000):
        self.initialized = True
        self.instructions = self._instructions
        return SimpleNamespace(instructions=self._instructions)

    async def list_tools(self, timeout_ms: int = 30000):
        if self._list_delay:
            await asyncio.sleep(self._list_delay)
        return list(self._tools)

    async def call_tool(self, name: str, arguments=None, timeout_ms: int = 30000):
        self.calls.append((name, arguments))
        response = self._responses.get(name, text_result(json.dumps({"tool": name})))
        if isinstance(response, BaseException):
            raise response
        return response


class FakeConnector:
    """
    Replacement for ``open_channel`` that counts opens.

    ``hosts`` maps host name to the keyword arguments for ``FakeChannel``;
    ``errors`` maps host name to an exception raised on open.
    """

    def __init__(self, hosts: Optional[Dict[str, dict]] = None, errors: Optional[Dict[str, BaseException]] = None,
                 open_delay: float = 0):
        self.hosts = hosts or {}
        self.errors = errors or {}
        self.open_delay = open_delay
        self.open_count = 0
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.channels: Dict[str, FakeChannel] = {}

    def __call__(self, descriptor, timeout_ms: int = 30000):
        return self._open(descriptor)

    @asynccontextmanager
    async def _open(self, descriptor):
        self.open_count += 1
        self.opened.append(descriptor.name)
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if descriptor.name in self.errors:
            raise self.errors[descriptor.name]
        channel = FakeChannel(descriptor.name, **self.hosts.get(descriptor.name, {}))
        self.channels[descriptor.name] = channel
        try:
            yield channel
        finally:
            self.closed.append(descriptor.name)


def write_config(directory, servers: Dict[str, dict], settings: Optional[dict] = None):
    """Write a ``.mcp.json`` into ``directory`` and return its path."""
    data: Dict[str, Any] = {"mcpServers": servers}
    if settings:
        data["mcpbind"] = settings
    path = directory / ".mcp.json"
    path.write_text(json.dumps(data, indent=2))
    return path


@pytest.fixture
def make_config(tmp_path):
    """Build a ``Config`` for stdio hosts named in ``names``."""

    def _make(*names: str, **settings) -> Config:
        servers = {name: {"type": "stdio", "command": "fake-server", "args": [name]} for name in names}
        path = write_config(tmp_path, servers, settings or None)
        return Config.load(path)

    return _make


@pytest.fixture(autouse=True)
def reset_default_bridge():
    yield
    use_bridge(None)


def read_yaml(path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)

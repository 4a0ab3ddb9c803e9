"""Exception hierarchy shared by the transport, generator and client bridge."""

from __future__ import annotations

from typing import Any, Optional


class MCPBindError(Exception):
    """Base class for every error raised by mcpbind."""


class TransportConnectionError(MCPBindError, ConnectionError):
    """Raised when a channel to an MCP host cannot be established."""


class OperationTimeoutError(MCPBindError, TimeoutError):
    """Raised when a single remote operation exceeds its time bound."""

    def __init__(self, operation: str, timeout_ms: int):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(f"Operation '{operation}' timed out after {timeout_ms}ms")


class SchemaError(MCPBindError):
    """Raised when a tool's JSON Schema cannot be turned into a Python type."""

    def __init__(self, message: str, type_name: Optional[str] = None):
        self.type_name = type_name
        if type_name:
            message = f"{type_name}: {message}"
        super().__init__(message)


class InvocationError(MCPBindError):
    """Raised when a remote tool call comes back with an error payload."""

    def __init__(self, host: str, tool: str, payload: Any = None, message: Optional[str] = None):
        self.host = host
        self.tool = tool
        self.payload = payload
        if message is None:
            message = f"Tool '{tool}' on '{host}' failed: {payload}"
        super().__init__(message)


class ConfigurationError(MCPBindError):
    """Raised when the host configuration is unreadable, invalid, or lacks a host."""

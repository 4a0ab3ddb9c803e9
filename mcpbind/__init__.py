"""
mcpbind - Typed local call stubs for remote MCP tools.

Connects to the MCP hosts listed in ``.mcp.json``, reads their tool
catalogs, and writes one small Python module per tool under
``servers/<host>/``. Application code imports the stubs and calls them
like local async functions; the stubs delegate to a shared client bridge
that keeps one connection per host.

Lifecycle:
- ``mcpbind generate`` writes bindings for every configured host
- ``mcpbind ensure`` runs at startup: regenerates missing or stale
  bindings and falls back to the previous generation when a host is down
- generated stubs call ``mcpbind.wrappers.client.call_tool`` at runtime
"""

__version__ = "1.0.0"

from mcpbind.errors import (
    ConfigurationError,
    InvocationError,
    MCPBindError,
    OperationTimeoutError,
    SchemaError,
    TransportConnectionError,
)

__all__ = [
    "ConfigurationError",
    "InvocationError",
    "MCPBindError",
    "OperationTimeoutError",
    "SchemaError",
    "TransportConnectionError",
    "__version__",
]

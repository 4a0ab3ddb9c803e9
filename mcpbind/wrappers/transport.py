"""MCP host communication over a stdio subprocess or a streamable HTTP endpoint."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from mcpbind.errors import MCPBindError, OperationTimeoutError, TransportConnectionError
from mcpbind.validation.config import HostDescriptor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 30000


async def with_timeout(awaitable: Awaitable[T], timeout_ms: int, operation: str) -> T:
    """
    Await ``awaitable`` in the current task, cancelling it after ``timeout_ms``.

    Raises ``OperationTimeoutError(operation, timeout_ms)`` on expiry.
    """
    try:
        async with asyncio.timeout(timeout_ms / 1000):
            return await awaitable
    except OperationTimeoutError:
        raise
    except TimeoutError as exc:
        raise OperationTimeoutError(operation, timeout_ms) from exc


class Channel:
    """
    An open MCP client session to one host.

    Transport-agnostic: the stdio and HTTP variants both end up here. The
    handshake is explicit (``initialize``) so introspection can time it
    separately from opening the transport.
    """

    def __init__(self, host_name: str, session: Any):
        self.host_name = host_name
        self.session = session
        self.instructions: Optional[str] = None
        self.initialized = False

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> Any:
        """Perform the MCP initialize handshake and capture host instructions."""
        result = await with_timeout(
            self.session.initialize(), timeout_ms, f"initializing {self.host_name}"
        )
        self.instructions = getattr(result, "instructions", None) or None
        self.initialized = True
        return result

    async def list_tools(self, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> List[Any]:
        """Fetch the full tool list, following pagination cursors."""
        operation = f"listing tools from {self.host_name}"
        result = await with_timeout(self.session.list_tools(), timeout_ms, operation)
        tools = list(result.tools)
        cursor = getattr(result, "nextCursor", None)
        while cursor:
            result = await with_timeout(self.session.list_tools(cursor=cursor), timeout_ms, operation)
            tools.extend(result.tools)
            cursor = getattr(result, "nextCursor", None)
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> Any:
        """Call a tool on the host and return the raw ``CallToolResult``."""
        return await with_timeout(
            self.session.call_tool(name, arguments=arguments or {}),
            timeout_ms,
            f"calling {name} on {self.host_name}",
        )


def _transport_for(descriptor: HostDescriptor):
    if descriptor.type == "http":
        return streamablehttp_client(descriptor.url, headers=dict(descriptor.headers) or None)

    params = StdioServerParameters(
        command=descriptor.command,
        args=list(descriptor.args),
        env={**os.environ, **descriptor.env},
    )
    return stdio_client(params)


def _leaves(group: BaseExceptionGroup) -> List[BaseException]:
    leaves: List[BaseException] = []
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            leaves.extend(_leaves(exc))
        else:
            leaves.append(exc)
    return leaves


def _from_group(descriptor: HostDescriptor, group: BaseExceptionGroup) -> BaseException:
    """
    Pick the error to raise for a failure that left the SDK's task groups.

    Our own errors (a timed-out handshake, say) win, then cancellation and
    other non-``Exception`` leaves. Anything else means the channel broke.
    """
    leaves = _leaves(group)
    for exc in leaves:
        if isinstance(exc, MCPBindError):
            return exc
    for exc in leaves:
        if not isinstance(exc, Exception):
            return exc
    error = TransportConnectionError(
        f"Connection to MCP server '{descriptor.name}' failed: {leaves[0] if leaves else group}"
    )
    error.__cause__ = group
    return error


@asynccontextmanager
async def open_channel(
    descriptor: HostDescriptor, timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> AsyncIterator[Channel]:
    """
    Open a channel to ``descriptor``'s host.

    The stdio variant spawns the host as a child process; leaving the
    context terminates it. The HTTP variant attaches ``descriptor.headers``
    to every request.

    Errors raised inside the ``async with`` body come back out of the SDK's
    task groups as an ``ExceptionGroup``; they are unwrapped so callers see
    the errors below rather than the group.

    Raises
    ------
    TransportConnectionError
        The process could not be started, the endpoint could not be reached,
        or the channel broke while in use.
    OperationTimeoutError
        Opening the transport, or an operation on the channel, took longer
        than its bound.
    """
    try:
        async with AsyncExitStack() as stack:
            try:
                streams = await with_timeout(
                    stack.enter_async_context(_transport_for(descriptor)),
                    timeout_ms,
                    f"connecting to {descriptor.name}",
                )
                read_stream, write_stream = streams[0], streams[1]
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            except (MCPBindError, BaseExceptionGroup):
                raise
            except FileNotFoundError as exc:
                raise TransportConnectionError(
                    f"MCP server command not found: {descriptor.command}. "
                    "Make sure the package is installed."
                ) from exc
            except Exception as exc:
                raise TransportConnectionError(
                    f"Could not connect to MCP server '{descriptor.name}' ({descriptor.type}): {exc}"
                ) from exc

            logger.debug("Opened %s transport to %s", descriptor.type, descriptor.name)
            yield Channel(descriptor.name, session)
    except BaseExceptionGroup as group:
        raise _from_group(descriptor, group)

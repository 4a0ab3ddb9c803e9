"""Connection registry: one live channel per host, opened lazily and shared."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from mcpbind.validation.config import HostDescriptor
from mcpbind.wrappers.transport import DEFAULT_TIMEOUT_MS, Channel, open_channel

logger = logging.getLogger(__name__)


class _Handle:
    """
    Keeps one channel open inside a dedicated owner task.

    The owner task enters the transport context, runs the handshake,
    publishes the channel, and then waits for ``close()``. Leaving the
    transport context therefore always happens in the task that entered it,
    whichever task asked for the close.
    """

    def __init__(self, host_name: str):
        self.host_name = host_name
        self.channel: Optional[Channel] = None
        self._closing = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    async def open(cls, descriptor: HostDescriptor, connector: Callable, timeout_ms: int) -> "_Handle":
        handle = cls(descriptor.name)
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        handle._task = asyncio.create_task(
            handle._hold(descriptor, connector, timeout_ms, ready),
            name=f"mcp-connection-{descriptor.name}",
        )
        try:
            handle.channel = await ready
        except BaseException:
            handle._task.cancel()
            await asyncio.gather(handle._task, return_exceptions=True)
            raise
        return handle

    async def _hold(
        self, descriptor: HostDescriptor, connector: Callable, timeout_ms: int, ready: asyncio.Future
    ) -> None:
        try:
            async with connector(descriptor, timeout_ms) as channel:
                await channel.initialize(timeout_ms)
                ready.set_result(channel)
                logger.info("[MCP Client] Connected to %s server", descriptor.name)
                await self._closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("Connection to %s ended with an error: %s", descriptor.name, exc)

    async def close(self) -> None:
        self._closing.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class ConnectionRegistry:
    """
    Process-wide cache of open channels, keyed by host name.

    Construct once per process and hand the same instance to every client
    bridge. Concurrent first calls for a host wait on a per-host lock, so
    exactly one channel is opened. A failed open is not cached; a cached
    channel that dies is not replaced automatically (use ``discard``).

    Parameters
    ----------
    resolver : maps a host name to its ``HostDescriptor`` (raises
        ``ConfigurationError`` for unknown hosts)
    connector : async context manager factory ``(descriptor, timeout_ms)``,
        ``open_channel`` by default
    timeout_ms : bound for opening the transport and for the handshake
    """

    def __init__(
        self,
        resolver: Callable[[str], HostDescriptor],
        connector: Callable = open_channel,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self._resolver = resolver
        self._connector = connector
        self._timeout_ms = timeout_ms
        self._handles: Dict[str, _Handle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def connected_hosts(self) -> List[str]:
        return list(self._handles)

    def __contains__(self, host_name: str) -> bool:
        return host_name in self._handles

    async def get(self, host_name: str) -> Channel:
        """Return the cached channel for ``host_name``, opening it on first use."""
        handle = self._handles.get(host_name)
        if handle is not None:
            return handle.channel

        lock = self._locks.setdefault(host_name, asyncio.Lock())
        async with lock:
            handle = self._handles.get(host_name)
            if handle is None:
                descriptor = self._resolver(host_name)
                handle = await _Handle.open(descriptor, self._connector, self._timeout_ms)
                self._handles[host_name] = handle
        return handle.channel

    async def discard(self, host_name: str) -> None:
        """Close and forget one host's channel; the next ``get`` reopens it."""
        handle = self._handles.pop(host_name, None)
        if handle is None:
            logger.warning("No connection found for MCP server: %s", host_name)
            return
        await handle.close()
        logger.info("Disconnected from MCP server: %s", host_name)

    async def aclose(self) -> None:
        """Close every open channel."""
        for host_name in list(self._handles):
            await self.discard(host_name)

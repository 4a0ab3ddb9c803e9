"""Catalog introspection: handshake with a host and read its tool list."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from mcpbind.wrappers.schema import ToolDescriptor
from mcpbind.wrappers.transport import DEFAULT_TIMEOUT_MS, Channel

logger = logging.getLogger(__name__)


async def introspect(
    channel: Channel, timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> Tuple[List[ToolDescriptor], Optional[str]]:
    """
    Return ``(tools, instructions)`` for the host behind ``channel``.

    Each step runs under ``timeout_ms``. Instructions from the initialize
    response are passed through verbatim (``None`` when the host sends none).
    """
    if not channel.initialized:
        await channel.initialize(timeout_ms)
    logger.info("Connected to %s MCP server", channel.host_name)

    raw_tools = await channel.list_tools(timeout_ms)
    tools = [ToolDescriptor.from_mcp(raw) for raw in raw_tools]
    logger.info("Found %d tools on %s", len(tools), channel.host_name)
    return tools, channel.instructions

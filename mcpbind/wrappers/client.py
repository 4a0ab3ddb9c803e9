"""
Runtime side of generated stubs.

Every generated stub ends in::

    return await _call_tool("github", "github__create_issue", arguments)

``call_tool`` forwards to the installed ``ClientBridge`` which reuses (or
lazily opens) the host's channel from its ``ConnectionRegistry``, calls the
tool, and decodes the reply.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from mcpbind.errors import InvocationError, MCPBindError
from mcpbind.validation.config import Config
from mcpbind.wrappers.registry import ConnectionRegistry
from mcpbind.wrappers.schema import CallRecord
from mcpbind.wrappers.transport import DEFAULT_TIMEOUT_MS, Channel

logger = logging.getLogger(__name__)

# ── Result decoding ───────────────────────────────────────────────────────

NO_MATCH = object()


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first_text(result: Any) -> Optional[str]:
    content = _field(result, "content")
    if not content:
        return None
    text = _field(content[0], "text")
    return text if isinstance(text, str) and text else None


def decode_structured(result: Any) -> Any:
    """First content block's text parsed as JSON."""
    text = _first_text(result)
    if text is None:
        return NO_MATCH
    try:
        return json.loads(text)
    except ValueError:
        return NO_MATCH


def decode_text(result: Any) -> Any:
    """First content block's raw text."""
    text = _first_text(result)
    return NO_MATCH if text is None else text


def decode_envelope(result: Any) -> Any:
    """The reply itself, untouched."""
    return result


DECODERS = (decode_structured, decode_text, decode_envelope)


def decode_result(result: Any) -> Any:
    """Run the decoders in order and return the first match."""
    for decoder in DECODERS:
        value = decoder(result)
        if value is not NO_MATCH:
            return value
    return result


# ── Bridge ────────────────────────────────────────────────────────────────


class ClientBridge:
    """
    Dispatches tool calls to MCP hosts over cached connections.

    Example:
        >>> bridge = ClientBridge(Config.load())
        >>> await bridge.invoke("github", "github__create_issue", {"title": "Bug"})
        {'number': 42, ...}
        >>> await bridge.aclose()

    Args:
        config: Host configuration; required unless ``registry`` is given.
        registry: Shared connection registry. Built from ``config`` if omitted.
        call_timeout_ms: Bound for each remote call.
        on_call: Optional callback receiving a ``CallRecord`` for every call
            (success or failure), e.g. a session logger.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[ConnectionRegistry] = None,
        call_timeout_ms: Optional[int] = None,
        on_call: Optional[Callable[[CallRecord], None]] = None,
    ):
        if registry is None:
            if config is None:
                raise ValueError("ClientBridge needs a config or a registry")
            registry = ConnectionRegistry(
                config.get_host, timeout_ms=config.settings.operation_timeout_ms
            )
        if call_timeout_ms is None:
            call_timeout_ms = config.settings.operation_timeout_ms if config else DEFAULT_TIMEOUT_MS
        self.registry = registry
        self.call_timeout_ms = call_timeout_ms
        self._on_call = on_call

    async def invoke(self, host_name: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call ``tool_name`` on ``host_name`` and return the decoded output.

        Raises:
            ConfigurationError: ``host_name`` is not configured.
            TransportConnectionError: The host could not be reached.
            OperationTimeoutError: Connecting or the call itself timed out.
            InvocationError: The host reported an error for this call.
        """
        record = CallRecord(host=host_name, tool_name=tool_name, arguments=dict(arguments or {}))
        t0 = time.perf_counter()
        try:
            channel = await self.registry.get(host_name)
            try:
                raw = await channel.call_tool(tool_name, arguments or {}, self.call_timeout_ms)
            except MCPBindError:
                raise
            except Exception as exc:
                payload = getattr(exc, "error", None) or str(exc)
                raise InvocationError(host_name, tool_name, payload) from exc

            if _field(raw, "isError"):
                raise InvocationError(host_name, tool_name, decode_result(raw))

            record.output = decode_result(raw)
            return record.output
        except Exception as exc:
            record.error = str(exc) or type(exc).__name__
            raise
        finally:
            record.duration_ms = int((time.perf_counter() - t0) * 1000)
            self._record(record)

    async def get_client(self, host_name: str) -> Channel:
        """Return the live channel for a host (for inspection and debugging)."""
        return await self.registry.get(host_name)

    def _record(self, record: CallRecord) -> None:
        if record.error:
            logger.debug("%s.%s failed after %dms: %s", record.host, record.tool_name, record.duration_ms, record.error)
        else:
            logger.debug("%s.%s completed in %dms", record.host, record.tool_name, record.duration_ms)
        if self._on_call is not None:
            self._on_call(record)

    async def aclose(self) -> None:
        await self.registry.aclose()

    async def __aenter__(self) -> "ClientBridge":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# ── Default bridge for generated stubs ────────────────────────────────────

_default_bridge: Optional[ClientBridge] = None


def use_bridge(bridge: Optional[ClientBridge]) -> None:
    """Install the bridge generated stubs dispatch through (``None`` resets)."""
    global _default_bridge
    _default_bridge = bridge


def default_bridge() -> ClientBridge:
    """Return the installed bridge, building one from ``Config.load()`` on first use."""
    global _default_bridge
    if _default_bridge is None:
        _default_bridge = ClientBridge(Config.load())
    return _default_bridge


async def call_tool(host_name: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
    """Entry point used by generated stubs."""
    return await default_bridge().invoke(host_name, tool_name, arguments)

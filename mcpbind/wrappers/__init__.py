"""
Tool bindings for MCP hosts.

Generation time: open a channel, introspect the catalog, write one typed
stub module per tool plus a manifest and a metadata record.

Startup: ``FreshnessOrchestrator.ensure_bindings`` regenerates missing or
stale hosts and falls back to the previous generation when a host is down.

Run time: stubs call ``call_tool`` which goes through a ``ClientBridge``
and its shared ``ConnectionRegistry`` (one channel per host).
"""

from mcpbind.wrappers.client import ClientBridge, call_tool, decode_result, default_bridge, use_bridge
from mcpbind.wrappers.compiler import SchemaCompiler, TypedDictCompiler
from mcpbind.wrappers.freshness import FreshnessOrchestrator
from mcpbind.wrappers.generator import BindingGenerator
from mcpbind.wrappers.introspect import introspect
from mcpbind.wrappers.registry import ConnectionRegistry
from mcpbind.wrappers.schema import (
    CallRecord,
    EnsureResult,
    FreshnessState,
    GeneratedBinding,
    GenerationMetadata,
    GenerationResult,
    HostReport,
    HostStatus,
    ToolDescriptor,
)
from mcpbind.wrappers.transport import Channel, open_channel

__all__ = [
    "BindingGenerator",
    "CallRecord",
    "Channel",
    "ClientBridge",
    "ConnectionRegistry",
    "EnsureResult",
    "FreshnessOrchestrator",
    "FreshnessState",
    "GeneratedBinding",
    "GenerationMetadata",
    "GenerationResult",
    "HostReport",
    "HostStatus",
    "SchemaCompiler",
    "ToolDescriptor",
    "TypedDictCompiler",
    "call_tool",
    "decode_result",
    "default_bridge",
    "introspect",
    "open_channel",
    "use_bridge",
]

"""Turns a host's tool catalog into importable Python stubs."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import textwrap
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from mcpbind.errors import ConfigurationError
from mcpbind.wrappers.compiler import TYPING_IMPORTS, SchemaCompiler, TypedDictCompiler, to_identifier, to_pascal_case
from mcpbind.wrappers.introspect import introspect
from mcpbind.wrappers.registry import ConnectionRegistry
from mcpbind.wrappers.schema import GeneratedBinding, GenerationMetadata, GenerationResult, ToolDescriptor, utc_now
from mcpbind.wrappers.transport import DEFAULT_TIMEOUT_MS, open_channel
from mcpbind.validation.config import HostDescriptor

logger = logging.getLogger(__name__)

MANIFEST_FILE = "__init__.py"
METADATA_FILE = ".metadata.yaml"
INSTRUCTIONS_FILE = "README.md"

UNTYPED_INPUT = "Dict[str, Any]"
UNTYPED_OUTPUT = "Any"

_STUB_TEMPLATE = '''\
"""Auto-generated wrapper for {tool_name}.

Regenerate with ``mcpbind generate``; manual edits will be overwritten.
"""

{typing_imports}

from mcpbind.wrappers.client import call_tool as _call_tool

{types}

async def {func_name}({param}) -> {output_type}:
{docstring}
    return await _call_tool({server_name!r}, {tool_name!r}, arguments)
'''

_README_TEMPLATE = """\
# {server_name} MCP Server

## Server Instructions

{instructions}

---
*These instructions were provided by the MCP server during initialization.*
"""


def _stub_docstring(description: str) -> str:
    text = (description or "No description provided").strip()
    text = text.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    if text.endswith('"'):
        text += " "
    body = textwrap.indent(text, "    ")
    if "\n" in text:
        return f'    """\n{body}\n    """'
    return f'    """{text}"""'


class BindingGenerator:
    """
    Writes one package of stubs per host under ``output_dir``.

    Layout for host ``github``::

        servers/github/__init__.py       # re-exports every stub
        servers/github/create_issue.py   # one stub per tool
        servers/github/.metadata.yaml    # generation record
        servers/github/README.md         # host instructions, if any

    A host's files are written into a staging directory and swapped in
    only once everything (metadata last) is on disk, so a failure or a
    cancellation never leaves a half-written host directory behind.

    Duplicate short names inside one host (``a__search`` and ``b__search``)
    are not de-duplicated: the last tool in catalog order wins, a warning
    is logged, and the manifest lists the collision.
    """

    def __init__(
        self,
        output_dir: Path,
        compiler: Optional[SchemaCompiler] = None,
        operation_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        connector: Callable = open_channel,
        registry: Optional[ConnectionRegistry] = None,
    ):
        self.output_dir = Path(output_dir)
        self.compiler = compiler or TypedDictCompiler()
        self.operation_timeout_ms = operation_timeout_ms
        self.registry = registry
        self._connector = connector

    def host_dir(self, server_name: str) -> Path:
        return self.output_dir / to_identifier(server_name)

    def check_layout(self, server_names: Iterable[str]) -> None:
        """Raise ``ConfigurationError`` if two hosts would share one bindings directory."""
        seen: Dict[str, str] = {}
        for name in server_names:
            key = self.host_dir(name).name
            other = seen.setdefault(key, name)
            if other != name:
                raise ConfigurationError(
                    f"MCP servers '{other}' and '{name}' would both write to {self.host_dir(name)}"
                )

    # ── Rendering ─────────────────────────────────────────────────────────

    def render_binding(self, server_name: str, tool: ToolDescriptor) -> GeneratedBinding:
        """Render the stub module for one tool."""
        short_name = to_identifier(tool.short_name)
        stem = to_pascal_case(tool.short_name)

        types: List[str] = []
        input_type = UNTYPED_INPUT
        if tool.input_schema is not None:
            input_type = f"{stem}Input"
            types.append(self.compiler.compile(tool.input_schema, input_type))

        output_type = UNTYPED_OUTPUT
        if tool.output_schema is not None:
            output_type = f"{stem}Output"
            types.append(self.compiler.compile(tool.output_schema, output_type))

        required = (tool.input_schema or {}).get("required") or []
        param = f"arguments: {input_type}"
        if not required:
            param = f"arguments: Optional[{input_type}] = None"

        source = _STUB_TEMPLATE.format(
            tool_name=tool.name,
            typing_imports=TYPING_IMPORTS,
            types="\n\n".join(types) + "\n" if types else "",
            func_name=short_name,
            param=param,
            output_type=output_type,
            docstring=_stub_docstring(tool.description),
            server_name=server_name,
        )
        return GeneratedBinding(
            short_name=short_name,
            tool_name=tool.name,
            input_type=input_type,
            output_type=output_type,
            source=source,
        )

    def render_manifest(
        self, server_name: str, bindings: Iterable[GeneratedBinding], duplicates: List[str]
    ) -> str:
        """Render the host package ``__init__.py`` that re-exports every stub."""
        bindings = list(bindings)
        lines = [f'"""Auto-generated bindings for the {server_name} MCP server.', ""]
        lines.append(f"{len(bindings)} tools. Regenerate with ``mcpbind generate``.")
        if duplicates:
            lines.append("")
            lines.append("Short-name collisions (last tool in catalog order kept):")
            lines.extend(f"    {name}" for name in duplicates)
        lines.extend(['"""', ""])

        exported: List[str] = []
        for binding in bindings:
            names = [binding.short_name]
            for type_name in (binding.input_type, binding.output_type):
                if type_name in (UNTYPED_INPUT, UNTYPED_OUTPUT):
                    continue
                if type_name not in names:
                    names.append(type_name)
            lines.append(f"from .{binding.short_name} import {', '.join(sorted(names))}")
            exported.extend(names)

        lines.append("")
        lines.append("__all__ = [")
        lines.extend(f"    {name!r}," for name in exported)
        lines.append("]")
        return "\n".join(lines) + "\n"

    # ── Writing ───────────────────────────────────────────────────────────

    def generate(
        self,
        server_name: str,
        tools: List[ToolDescriptor],
        instructions: Optional[str] = None,
        started: Optional[float] = None,
    ) -> GenerationResult:
        """
        Write stubs, manifest, metadata and (optionally) README for one host.

        Parameters
        ----------
        server_name : host name from the configuration
        tools : catalog returned by ``introspect``
        instructions : host instructions captured during the handshake
        started : ``time.perf_counter()`` value the generation run began at
        """
        started = time.perf_counter() if started is None else started

        by_name: Dict[str, GeneratedBinding] = {}
        duplicates: List[str] = []
        for tool in tools:
            binding = self.render_binding(server_name, tool)
            if binding.short_name in by_name:
                previous = by_name.pop(binding.short_name)
                duplicates.append(f"{binding.short_name}: {previous.tool_name} -> {tool.name}")
                logger.warning(
                    "Duplicate short name %s on %s: %s overwrites %s",
                    binding.short_name, server_name, tool.name, previous.tool_name,
                )
            by_name[binding.short_name] = binding
        bindings = list(by_name.values())

        files: Dict[str, str] = {b.file_name: b.source for b in bindings}
        files[MANIFEST_FILE] = self.render_manifest(server_name, bindings, duplicates)
        if instructions:
            files[INSTRUCTIONS_FILE] = _README_TEMPLATE.format(
                server_name=server_name, instructions=instructions
            )

        metadata = GenerationMetadata(
            generated_at=utc_now().isoformat(),
            server_name=server_name,
            tool_count=len(bindings),
            generation_duration_ms=int((time.perf_counter() - started) * 1000),
            has_instructions=bool(instructions),
        )
        files[METADATA_FILE] = yaml.dump(metadata.model_dump(), default_flow_style=False, sort_keys=False)

        target = self._write_atomically(server_name, files)
        written = [str(target / name) for name in files]
        for binding in bindings:
            logger.debug("Generated: %s", binding.file_name)
        logger.info(
            "Completed wrappers for %s in %dms (%d tools)",
            server_name, metadata.generation_duration_ms, len(bindings),
        )
        return GenerationResult(
            server_name=server_name,
            written_files=written,
            metadata=metadata,
            duplicates=duplicates,
        )

    def _write_atomically(self, server_name: str, files: Dict[str, str]) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        root_marker = self.output_dir / "__init__.py"
        if not root_marker.exists():
            root_marker.write_text('"""Generated MCP tool bindings."""\n')

        target = self.host_dir(server_name)
        staging = Path(tempfile.mkdtemp(prefix=f".{target.name}.", suffix=".tmp", dir=self.output_dir))
        backup: Optional[Path] = None
        try:
            staging.chmod(0o755)
            for name, content in files.items():
                (staging / name).write_text(content)
            if target.exists():
                backup = self.output_dir / f".{target.name}.{uuid.uuid4().hex[:8]}.old"
                target.rename(backup)
            staging.rename(target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            if backup is not None and not target.exists():
                backup.rename(target)
            raise

        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)
        return target

    # ── Hosts ─────────────────────────────────────────────────────────────

    async def generate_host(self, descriptor: HostDescriptor) -> GenerationResult:
        """
        Connect to one host, introspect it, and write its bindings.

        With a shared ``registry`` the host's cached channel is used (and
        left open for later calls); otherwise a channel is opened for this
        run only.
        """
        started = time.perf_counter()
        logger.info("Generating wrappers for server: %s", descriptor.name)

        if self.registry is not None:
            channel = await self.registry.get(descriptor.name)
            tools, instructions = await introspect(channel, self.operation_timeout_ms)
        else:
            async with self._connector(descriptor, self.operation_timeout_ms) as channel:
                tools, instructions = await introspect(channel, self.operation_timeout_ms)

        return self.generate(descriptor.name, tools, instructions, started=started)

    async def generate_all(
        self, descriptors: Iterable[HostDescriptor]
    ) -> Dict[str, Union[GenerationResult, Exception]]:
        """
        Generate every host concurrently.

        A failure is recorded against its own host and never stops the others.
        Hosts whose names map to the same directory are rejected up front
        with ``ConfigurationError``.
        """
        descriptors = list(descriptors)
        self.check_layout(d.name for d in descriptors)

        async def _one(descriptor: HostDescriptor) -> Tuple[str, Union[GenerationResult, Exception]]:
            try:
                return descriptor.name, await self.generate_host(descriptor)
            except Exception as exc:
                logger.error("Error generating wrappers for %s: %s", descriptor.name, exc)
                return descriptor.name, exc

        results = await asyncio.gather(*(_one(d) for d in descriptors))
        return dict(results)

"""Data models for tool descriptors, generated bindings, metadata, and status reports."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

_QUALIFIER = re.compile(r"^.*__")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ToolDescriptor(BaseModel):
    """One entry in a host's tool catalog, as returned by ``tools/list``."""

    name: str  # qualified, e.g. "github__create_issue"
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None

    @property
    def short_name(self) -> str:
        """Name with any ``<prefix>__`` qualifier stripped (``create_issue``)."""
        return _QUALIFIER.sub("", self.name)

    @classmethod
    def from_mcp(cls, tool: Any) -> "ToolDescriptor":
        """Build from an ``mcp.types.Tool`` (or any object with the same attributes)."""
        return cls(
            name=tool.name,
            description=getattr(tool, "description", None) or "",
            input_schema=getattr(tool, "inputSchema", None),
            output_schema=getattr(tool, "outputSchema", None),
        )


class GeneratedBinding(BaseModel):
    """A single generated stub, before it is written to disk."""

    short_name: str  # python identifier, also the module name
    tool_name: str  # qualified remote name
    input_type: str  # "CreateIssueInput" or "Dict[str, Any]"
    output_type: str  # "CreateIssueOutput" or "Any"
    source: str

    @property
    def file_name(self) -> str:
        return f"{self.short_name}.py"


class GenerationMetadata(BaseModel):
    """Per-host record stored in ``<host>/.metadata.yaml``."""

    generated_at: str
    server_name: str
    tool_count: int  # stub modules written, after short-name collisions
    generation_duration_ms: int
    has_instructions: bool = False

    def generated_datetime(self) -> datetime:
        return parse_timestamp(self.generated_at)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utc_now()) - self.generated_datetime()


class GenerationResult(BaseModel):
    """Outcome of writing one host's bindings."""

    server_name: str
    written_files: List[str] = Field(default_factory=list)
    metadata: GenerationMetadata
    duplicates: List[str] = Field(default_factory=list)


class FreshnessState(str, Enum):
    MISSING = "missing"
    STALE = "stale"
    FRESH = "fresh"
    READY = "ready"


class HostStatus(BaseModel):
    """What is currently on disk for one host."""

    server_name: str
    state: FreshnessState
    has_bindings: bool = False  # manifest on disk, usable as a fallback
    metadata: Optional[GenerationMetadata] = None
    age_seconds: Optional[float] = None
    tool_count: int = 0

    def age_text(self) -> str:
        if self.age_seconds is None:
            return "unknown age"
        hours = int(self.age_seconds // 3600)
        if hours >= 48:
            return f"{hours // 24} days old"
        return f"{hours}h old"


class HostReport(BaseModel):
    """Per-host entry of an ``ensure_bindings`` result."""

    host_name: str
    ready: bool = False
    degraded: bool = False
    regenerated: bool = False
    tool_count: int = 0
    state: FreshnessState = FreshnessState.MISSING
    error: Optional[str] = None


class EnsureResult(BaseModel):
    """Aggregate result handed to the startup caller."""

    success: bool = True
    hosts: List[HostReport] = Field(default_factory=list)
    regenerated: bool = False
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def get(self, host_name: str) -> Optional[HostReport]:
        for report in self.hosts:
            if report.host_name == host_name:
                return report
        return None


class CallRecord(BaseModel):
    """Record of a single tool invocation through the client bridge."""

    call_id: str = ""
    host: str = ""
    tool_name: str = ""  # qualified remote name
    arguments: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    duration_ms: int = 0
    timestamp: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.timestamp:
            self.timestamp = utc_now().isoformat()
        if not self.call_id:
            raw = f"{self.host}:{self.tool_name}:{self.arguments}:{self.timestamp}"
            self.call_id = hashlib.sha256(raw.encode()).hexdigest()[:12]

    @property
    def success(self) -> bool:
        return self.error is None

"""
Startup freshness checks for generated bindings.

Per host:

    MISSING --generate ok--> READY
    MISSING --generate failed--> error (no fallback)
    STALE   --generate ok--> READY
    STALE   --generate failed--> READY (degraded, previous bindings kept)
    FRESH   --------------------> READY

Staleness alone is never fatal; absence is fatal unless generation succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from mcpbind.errors import ConfigurationError, OperationTimeoutError
from mcpbind.validation.config import Config
from mcpbind.wrappers.generator import MANIFEST_FILE, METADATA_FILE, BindingGenerator
from mcpbind.wrappers.registry import ConnectionRegistry
from mcpbind.wrappers.schema import (
    EnsureResult,
    FreshnessState,
    GenerationMetadata,
    GenerationResult,
    HostReport,
    HostStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

Outcome = Union[GenerationResult, BaseException]


class FreshnessOrchestrator:
    """
    Decides, per configured host, whether to regenerate, reuse, or fall back.

    Pass the process's ``ConnectionRegistry`` to introspect over the same
    channels the client bridge will use afterwards.

    Example:
        >>> orchestrator = FreshnessOrchestrator(Config.load())
        >>> result = await orchestrator.ensure_bindings(timeout_ms=10000)
        >>> result.success
        True
    """

    def __init__(
        self,
        config: Config,
        generator: Optional[BindingGenerator] = None,
        registry: Optional[ConnectionRegistry] = None,
        stale_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self._generator = generator
        self._registry = registry
        self._stale_after = stale_after
        self._clock = clock

    @property
    def generator(self) -> BindingGenerator:
        # built on first use so an invalid config surfaces through ensure_bindings
        if self._generator is None:
            self._generator = BindingGenerator(
                self.config.output_path,
                operation_timeout_ms=self.config.settings.operation_timeout_ms,
                registry=self._registry,
            )
        return self._generator

    @property
    def stale_after(self) -> timedelta:
        if self._stale_after is not None:
            return self._stale_after
        return self.config.settings.stale_after

    # ── Status ────────────────────────────────────────────────────────────

    def read_metadata(self, server_name: str) -> Optional[GenerationMetadata]:
        path = self.generator.host_dir(server_name) / METADATA_FILE
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            return GenerationMetadata(**data)
        except (OSError, yaml.YAMLError, TypeError, ValidationError) as e:
            logger.warning("Ignoring unreadable metadata for %s: %s", server_name, e)
            return None

    def check_status(self, server_name: str) -> HostStatus:
        """Classify what is on disk for one host as missing, stale or fresh."""
        host_dir = self.generator.host_dir(server_name)
        if not host_dir.is_dir():
            return HostStatus(server_name=server_name, state=FreshnessState.MISSING)

        has_manifest = (host_dir / MANIFEST_FILE).exists()
        stubs = [p for p in host_dir.glob("*.py") if p.name != MANIFEST_FILE]
        metadata = self.read_metadata(server_name)

        if not has_manifest or metadata is None:
            return HostStatus(
                server_name=server_name,
                state=FreshnessState.MISSING,
                has_bindings=has_manifest,
                tool_count=len(stubs),
            )

        age = metadata.age(self._clock())
        state = FreshnessState.STALE if age > self.stale_after else FreshnessState.FRESH
        return HostStatus(
            server_name=server_name,
            state=state,
            has_bindings=True,
            metadata=metadata,
            age_seconds=age.total_seconds(),
            tool_count=metadata.tool_count,
        )

    def statuses(self) -> List[HostStatus]:
        return [self.check_status(name) for name in self.config.host_names()]

    # ── Startup contract ──────────────────────────────────────────────────

    async def ensure_bindings(
        self,
        force_regenerate: bool = False,
        timeout_ms: Optional[int] = None,
        allow_regeneration: bool = True,
    ) -> EnsureResult:
        """
        Make sure every configured host has usable bindings.

        Args:
            force_regenerate: Regenerate fresh hosts too.
            timeout_ms: Bound for the whole regeneration batch. Defaults to
                the ``batch_timeout_ms`` setting.
            allow_regeneration: When false only checks; missing hosts are
                errors and stale hosts warnings.

        Returns:
            EnsureResult whose ``success`` is true only if every host is ready.
        """
        result = EnsureResult()

        logger.info("Checking MCP wrapper status...")
        try:
            names = self.config.host_names()
            self.generator.check_layout(names)
            if timeout_ms is None:
                timeout_ms = self.config.settings.batch_timeout_ms
        except ConfigurationError as e:
            result.errors.append(f"Failed to read MCP configuration: {e}")
            result.success = False
            return result

        statuses = {name: self.check_status(name) for name in names}

        missing = [n for n, s in statuses.items() if s.state is FreshnessState.MISSING]
        if missing:
            logger.info("Missing wrappers for: %s", ", ".join(missing))
        for name, status in statuses.items():
            if status.state is FreshnessState.STALE:
                days = int((status.age_seconds or 0) // 86400)
                result.warnings.append(f"Wrappers for {name} are {days} days old")
                logger.warning("%s wrappers are %d days old", name, days)

        to_generate: List[str] = []
        if allow_regeneration:
            to_generate = [
                n for n, s in statuses.items() if force_regenerate or s.state is not FreshnessState.FRESH
            ]

        outcomes: Dict[str, Outcome] = {}
        if to_generate:
            logger.info("Attempting to regenerate wrappers (timeout: %dms)...", timeout_ms)
            outcomes = await self._regenerate(to_generate, timeout_ms)
            result.regenerated = True

        for name in names:
            result.hosts.append(self._resolve(statuses[name], outcomes.get(name), result))

        result.success = all(report.ready for report in result.hosts)
        for report in result.hosts:
            if not report.ready:
                logger.info("  %s: MISSING", report.host_name)
            else:
                suffix = " (degraded)" if report.degraded else ""
                logger.info("  %s: %d tools%s", report.host_name, report.tool_count, suffix)
        return result

    def _resolve(self, status: HostStatus, outcome: Optional[Outcome], result: EnsureResult) -> HostReport:
        name = status.server_name
        report = HostReport(host_name=name, state=status.state, tool_count=status.tool_count)

        if isinstance(outcome, GenerationResult):
            report.ready = True
            report.regenerated = True
            report.state = FreshnessState.READY
            report.tool_count = outcome.metadata.tool_count
            return report

        if outcome is not None:
            report.error = str(outcome) or type(outcome).__name__
            if status.has_bindings:
                report.ready = True
                report.degraded = True
                report.state = FreshnessState.READY
                age = status.metadata.generated_at if status.metadata else "unknown age"
                result.warnings.append(
                    f"Regeneration failed for {name} ({report.error}); "
                    f"using cached wrappers (generated {age}, {status.tool_count} tools)"
                )
                logger.warning("Fallback: using existing wrappers for %s", name)
            else:
                result.errors.append(
                    f"Failed to regenerate wrappers and no fallback available for: {name} ({report.error})"
                )
                logger.error("No existing wrappers found for %s. Cannot fallback.", name)
            return report

        # not regenerated: fresh, or checks only
        if status.state is FreshnessState.MISSING and not status.has_bindings:
            result.errors.append(f"Missing wrappers for: {name}")
            return report
        if status.state is FreshnessState.MISSING:
            result.warnings.append(f"Wrappers for {name} have no generation metadata")
        report.ready = True
        report.state = FreshnessState.READY
        return report

    async def _regenerate(self, names: List[str], timeout_ms: int) -> Dict[str, Outcome]:
        """
        Run one generation task per host and wait for all of them together.

        Tasks still running when ``timeout_ms`` expires are cancelled (and
        awaited, so their staging directories are cleaned up) and reported
        as timeouts. Hosts that finished in time keep their outcome.
        """
        outcomes: Dict[str, Outcome] = {}
        tasks: Dict[str, asyncio.Task] = {}
        for name in names:
            try:
                descriptor = self.config.get_host(name)
            except ConfigurationError as e:
                outcomes[name] = e
                continue
            tasks[name] = asyncio.create_task(
                self.generator.generate_host(descriptor), name=f"generate-{name}"
            )

        try:
            if tasks:
                _, pending = await asyncio.wait(tasks.values(), timeout=timeout_ms / 1000)
            else:
                pending = set()
        finally:
            unfinished = [t for t in tasks.values() if not t.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        for name, task in tasks.items():
            if task in pending or task.cancelled():
                outcomes[name] = OperationTimeoutError(f"regenerating {name}", timeout_ms)
            elif task.exception() is not None:
                outcomes[name] = task.exception()
            else:
                outcomes[name] = task.result()

            if isinstance(outcomes[name], GenerationResult):
                logger.info("Regenerated %s (%d tools)", name, outcomes[name].metadata.tool_count)
            else:
                logger.error("Error generating wrappers for %s: %s", name, outcomes[name])
        return outcomes

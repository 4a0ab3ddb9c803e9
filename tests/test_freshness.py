"""Tests for the startup freshness orchestrator."""

from datetime import timedelta

import pytest
import yaml

from conftest import FakeConnector, make_tool, write_config
from mcpbind.errors import OperationTimeoutError, TransportConnectionError
from mcpbind.validation.config import Config
from mcpbind.wrappers.client import ClientBridge
from mcpbind.wrappers.freshness import FreshnessOrchestrator
from mcpbind.wrappers.generator import BindingGenerator
from mcpbind.wrappers.registry import ConnectionRegistry
from mcpbind.wrappers.schema import FreshnessState, utc_now

TOOLS = [
    make_tool("github__create_issue", "Create an issue", {
        "type": "object",
        "properties": {"title": {"type": "string"}},
        "required": ["title"],
    }),
    make_tool("github__get_me", "Who am I", {"type": "object"}),
]


def snapshot(directory):
    return {p.name: p.read_bytes() for p in directory.iterdir()}


@pytest.fixture
def connector():
    return FakeConnector({"github": {"tools": TOOLS}, "slack": {"tools": TOOLS[:1]}})


@pytest.fixture
def build(tmp_path, make_config, connector):
    """Build an orchestrator; ``days_ahead`` shifts its clock into the future."""

    def _build(*hosts, days_ahead: float = 0, **settings):
        config = make_config(*hosts, **settings)
        generator = BindingGenerator(tmp_path / "servers", connector=connector)
        return FreshnessOrchestrator(
            config,
            generator=generator,
            clock=lambda: utc_now() + timedelta(days=days_ahead),
        )

    return _build


class TestCheckStatus:
    """Tests for classifying what is on disk."""

    def test_missing_without_directory(self, build):
        orchestrator = build("github")

        status = orchestrator.check_status("github")

        assert status.state is FreshnessState.MISSING
        assert status.has_bindings is False

    def test_fresh_after_generation(self, build):
        orchestrator = build("github")
        orchestrator.generator.generate("github", [], None)

        status = orchestrator.check_status("github")

        assert status.state is FreshnessState.FRESH
        assert status.age_seconds is not None

    def test_stale_after_threshold(self, build):
        orchestrator = build("github", days_ahead=8)
        orchestrator.generator.generate("github", [], None)

        assert orchestrator.check_status("github").state is FreshnessState.STALE

    def test_custom_threshold(self, build):
        orchestrator = build("github", days_ahead=2, stale_after_days=1)
        orchestrator.generator.generate("github", [], None)

        assert orchestrator.check_status("github").state is FreshnessState.STALE

    def test_missing_metadata_counts_as_missing(self, build):
        orchestrator = build("github")
        orchestrator.generator.generate("github", [], None)
        (orchestrator.generator.host_dir("github") / ".metadata.yaml").unlink()

        status = orchestrator.check_status("github")

        assert status.state is FreshnessState.MISSING
        assert status.has_bindings is True

    def test_corrupt_metadata_counts_as_missing(self, build):
        orchestrator = build("github")
        orchestrator.generator.generate("github", [], None)
        (orchestrator.generator.host_dir("github") / ".metadata.yaml").write_text("- not: [a mapping")

        assert orchestrator.check_status("github").state is FreshnessState.MISSING


class TestEnsureBindings:
    """Tests for the startup contract."""

    async def test_missing_host_is_generated(self, build, connector):
        orchestrator = build("github")

        result = await orchestrator.ensure_bindings(timeout_ms=5000)
        report = result.get("github")
        host_dir = orchestrator.generator.host_dir("github")

        assert result.success is True
        assert result.regenerated is True
        assert report.ready is True
        assert report.degraded is False
        assert report.tool_count == 2
        stubs = [p for p in host_dir.glob("*.py") if p.name != "__init__.py"]
        assert len(stubs) == 2
        assert (host_dir / "__init__.py").exists()
        assert (host_dir / ".metadata.yaml").exists()
        assert connector.open_count == 1

    async def test_fresh_host_skips_introspection(self, build, connector):
        orchestrator = build("github")

        await orchestrator.ensure_bindings(timeout_ms=5000)
        second = await orchestrator.ensure_bindings(timeout_ms=5000)

        assert connector.open_count == 1
        assert second.success is True
        assert second.regenerated is False
        assert second.get("github").ready is True
        assert second.get("github").state is FreshnessState.READY

    async def test_force_regenerates_fresh_host(self, build, connector):
        orchestrator = build("github")
        await orchestrator.ensure_bindings(timeout_ms=5000)

        result = await orchestrator.ensure_bindings(force_regenerate=True, timeout_ms=5000)

        assert connector.open_count == 2
        assert result.get("github").regenerated is True

    async def test_stale_host_is_regenerated(self, build, connector):
        orchestrator = build("github", days_ahead=8)
        orchestrator.generator.generate("github", [], None)

        result = await orchestrator.ensure_bindings(timeout_ms=5000)

        assert connector.open_count == 1
        assert result.success is True
        assert result.get("github").tool_count == 2
        assert any("days old" in w for w in result.warnings)

    async def test_stale_host_failure_falls_back(self, build, connector):
        orchestrator = build("github", days_ahead=8)
        orchestrator.generator.generate("github", [], None)
        host_dir = orchestrator.generator.host_dir("github")
        before = snapshot(host_dir)
        connector.errors["github"] = TransportConnectionError("connection refused")

        result = await orchestrator.ensure_bindings(timeout_ms=5000)
        report = result.get("github")

        assert result.success is True
        assert report.ready is True
        assert report.degraded is True
        assert "connection refused" in report.error
        assert result.errors == []
        assert any("using cached wrappers" in w for w in result.warnings)
        assert snapshot(host_dir) == before

    async def test_missing_host_failure_is_fatal(self, build, connector):
        orchestrator = build("github")
        connector.errors["github"] = TransportConnectionError("connection refused")

        result = await orchestrator.ensure_bindings(timeout_ms=5000)

        assert result.success is False
        assert result.get("github").ready is False
        assert any("github" in e for e in result.errors)
        assert not orchestrator.generator.host_dir("github").exists()

    async def test_partial_success_across_hosts(self, build, connector):
        orchestrator = build("github", "slack")
        connector.errors["slack"] = TransportConnectionError("down")

        result = await orchestrator.ensure_bindings(timeout_ms=5000)

        assert result.success is False
        assert result.get("github").ready is True
        assert result.get("slack").ready is False
        assert len(result.errors) == 1
        assert "slack" in result.errors[0]

    async def test_batch_timeout_is_a_failure(self, build, connector, tmp_path):
        orchestrator = build("github", days_ahead=8)
        orchestrator.generator.generate("github", [], None)
        before = snapshot(orchestrator.generator.host_dir("github"))
        connector.hosts["github"]["list_delay"] = 5

        result = await orchestrator.ensure_bindings(timeout_ms=100)
        report = result.get("github")

        assert report.ready is True
        assert report.degraded is True
        assert "timed out" in report.error
        assert snapshot(orchestrator.generator.host_dir("github")) == before
        assert connector.closed == ["github"]
        leftovers = [p.name for p in (tmp_path / "servers").iterdir() if p.name.startswith(".")]
        assert leftovers == []

    async def test_batch_timeout_without_fallback(self, build, connector):
        orchestrator = build("github")
        connector.hosts["github"]["list_delay"] = 5

        result = await orchestrator.ensure_bindings(timeout_ms=100)

        assert result.success is False
        assert "timed out" in result.get("github").error

    async def test_operation_timeout_error_is_caught(self, build, connector):
        orchestrator = build("github")
        connector.errors["github"] = OperationTimeoutError("connecting to github", 50)

        result = await orchestrator.ensure_bindings(timeout_ms=5000)

        assert result.success is False
        assert "timed out after 50ms" in result.errors[0]

    async def test_no_regenerate_only_checks(self, build, connector):
        orchestrator = build("github", "slack", days_ahead=8)
        orchestrator.generator.generate("github", [], None)

        result = await orchestrator.ensure_bindings(allow_regeneration=False)

        assert connector.open_count == 0
        assert result.success is False
        assert result.get("github").ready is True
        assert result.errors == ["Missing wrappers for: slack"]
        assert any("github" in w for w in result.warnings)

    async def test_unreadable_config(self, build):
        orchestrator = build("github")
        orchestrator.config.path.write_text(yaml.dump({"mcpServers": {"x": {"type": "stdio"}}}))
        orchestrator.config = Config.load(orchestrator.config.path)

        result = await orchestrator.ensure_bindings()

        assert result.success is False
        assert "Failed to read MCP configuration" in result.errors[0]

    async def test_invalid_config_is_reported_not_raised(self, tmp_path):
        path = write_config(tmp_path, {"x": {"type": "stdio"}})

        orchestrator = FreshnessOrchestrator(Config.load(path))
        result = await orchestrator.ensure_bindings()

        assert result.success is False
        assert result.hosts == []
        assert "Failed to read MCP configuration" in result.errors[0]
        assert "requires 'command'" in result.errors[0]

    async def test_hosts_sharing_a_directory(self, build, connector):
        orchestrator = build("a-b", "a_b")

        result = await orchestrator.ensure_bindings(timeout_ms=5000)

        assert result.success is False
        assert "would both write" in result.errors[0]
        assert connector.open_count == 0

    async def test_shared_registry_reuses_channel(self, make_config, connector, tmp_path):
        config = make_config("github")
        registry = ConnectionRegistry(config.get_host, connector=connector)
        orchestrator = FreshnessOrchestrator(
            config,
            generator=BindingGenerator(tmp_path / "servers", registry=registry),
        )
        bridge = ClientBridge(config, registry=registry)

        result = await orchestrator.ensure_bindings(timeout_ms=5000)
        await bridge.invoke("github", "github__create_issue", {"title": "Bug"})
        await registry.aclose()

        assert result.success is True
        assert connector.open_count == 1
        assert connector.closed == ["github"]

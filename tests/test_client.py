"""Tests for the client bridge and connection registry."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from conftest import FakeConnector, text_result, write_config
from mcpbind.errors import ConfigurationError, InvocationError, TransportConnectionError
from mcpbind.wrappers.client import (
    ClientBridge,
    call_tool,
    decode_result,
    default_bridge,
    use_bridge,
)
from mcpbind.wrappers.registry import ConnectionRegistry


class RemoteError(Exception):
    """Shaped like an SDK error carrying the host's error payload."""

    def __init__(self, error):
        super().__init__("remote failure")
        self.error = error


@pytest.fixture
def connector():
    return FakeConnector({
        "github": {
            "responses": {
                "github__create_issue": text_result(json.dumps({"number": 42})),
                "github__fail": text_result("rate limited", is_error=True),
                "github__explode": RemoteError({"code": -32000, "message": "boom"}),
            }
        }
    })


@pytest.fixture
def bridge(make_config, connector):
    config = make_config("github", "slack")
    return ClientBridge(config, registry=ConnectionRegistry(config.get_host, connector=connector))


class TestDecodeResult:
    """Tests for the three-tier reply decoding."""

    def test_json_text_is_parsed(self):
        assert decode_result(text_result('{"a": 1}')) == {"a": 1}

    def test_plain_text_is_returned(self):
        assert decode_result(text_result("not json")) == "not json"

    def test_no_content_returns_envelope(self):
        reply = SimpleNamespace(content=[], isError=False)

        assert decode_result(reply) is reply

    def test_non_text_block_returns_envelope(self):
        reply = SimpleNamespace(content=[SimpleNamespace(type="image", data="...")], isError=False)

        assert decode_result(reply) is reply

    def test_dict_shaped_reply(self):
        assert decode_result({"content": [{"type": "text", "text": "[1, 2]"}]}) == [1, 2]


class TestClientBridge:
    """Tests for ClientBridge.invoke."""

    async def test_invoke_decodes_json(self, bridge, connector):
        result = await bridge.invoke("github", "github__create_issue", {"title": "Bug"})
        await bridge.aclose()

        assert result == {"number": 42}
        assert connector.channels["github"].calls == [("github__create_issue", {"title": "Bug"})]
        assert connector.channels["github"].initialized is True

    async def test_channel_is_reused(self, bridge, connector):
        await bridge.invoke("github", "github__create_issue", {})
        await bridge.invoke("github", "github__other", {})
        await bridge.aclose()

        assert connector.open_count == 1
        assert len(connector.channels["github"].calls) == 2

    async def test_concurrent_first_calls_open_once(self, make_config):
        config = make_config("github")
        connector = FakeConnector(open_delay=0.05)
        bridge = ClientBridge(config, registry=ConnectionRegistry(config.get_host, connector=connector))

        results = await asyncio.gather(
            bridge.invoke("github", "a", {}),
            bridge.invoke("github", "b", {}),
            bridge.invoke("github", "c", {}),
        )
        await bridge.aclose()

        assert connector.open_count == 1
        assert [r["tool"] for r in results] == ["a", "b", "c"]

    async def test_error_flag_raises_invocation_error(self, bridge):
        with pytest.raises(InvocationError) as excinfo:
            await bridge.invoke("github", "github__fail", {})
        await bridge.aclose()

        assert excinfo.value.host == "github"
        assert excinfo.value.tool == "github__fail"
        assert excinfo.value.payload == "rate limited"

    async def test_remote_exception_carries_payload(self, bridge):
        with pytest.raises(InvocationError) as excinfo:
            await bridge.invoke("github", "github__explode", {})
        await bridge.aclose()

        assert excinfo.value.payload == {"code": -32000, "message": "boom"}
        assert isinstance(excinfo.value.__cause__, RemoteError)

    async def test_unknown_host(self, bridge, connector):
        with pytest.raises(ConfigurationError, match="not found"):
            await bridge.invoke("gitlab", "x", {})

        assert connector.open_count == 0

    async def test_failed_open_is_not_cached(self, make_config):
        config = make_config("github")
        connector = FakeConnector(errors={"github": TransportConnectionError("refused")})
        bridge = ClientBridge(config, registry=ConnectionRegistry(config.get_host, connector=connector))

        with pytest.raises(TransportConnectionError):
            await bridge.invoke("github", "x", {})

        assert connector.open_count == 1
        assert "github" not in bridge.registry

        del connector.errors["github"]
        assert await bridge.invoke("github", "x", {}) == {"tool": "x"}
        await bridge.aclose()
        assert connector.open_count == 2

    async def test_on_call_receives_records(self, make_config, connector):
        config = make_config("github")
        records = []
        bridge = ClientBridge(
            config,
            registry=ConnectionRegistry(config.get_host, connector=connector),
            on_call=records.append,
        )

        await bridge.invoke("github", "github__create_issue", {"title": "Bug"})
        with pytest.raises(InvocationError):
            await bridge.invoke("github", "github__fail", {})
        await bridge.aclose()

        ok, failed = records
        assert ok.success is True
        assert ok.output == {"number": 42}
        assert ok.arguments == {"title": "Bug"}
        assert len(ok.call_id) == 12
        assert failed.success is False
        assert "rate limited" in failed.error

    async def test_bridge_needs_config_or_registry(self):
        with pytest.raises(ValueError):
            ClientBridge()


class TestConnectionRegistry:
    """Tests for ConnectionRegistry lifecycle."""

    async def test_discard_then_reopen(self, make_config, connector):
        config = make_config("github")
        registry = ConnectionRegistry(config.get_host, connector=connector)

        first = await registry.get("github")
        await registry.discard("github")
        second = await registry.get("github")
        await registry.aclose()

        assert first is not second
        assert connector.open_count == 2
        assert connector.closed == ["github", "github"]

    async def test_discard_unknown_host_is_noop(self, make_config, connector):
        registry = ConnectionRegistry(make_config("github").get_host, connector=connector)

        await registry.discard("github")

        assert connector.closed == []

    async def test_aclose_closes_all(self, make_config):
        config = make_config("github", "slack")
        connector = FakeConnector()
        registry = ConnectionRegistry(config.get_host, connector=connector)

        await registry.get("github")
        await registry.get("slack")
        assert sorted(registry.connected_hosts) == ["github", "slack"]

        await registry.aclose()

        assert registry.connected_hosts == []
        assert sorted(connector.closed) == ["github", "slack"]

    async def test_close_from_another_task(self, make_config, connector):
        registry = ConnectionRegistry(make_config("github").get_host, connector=connector)

        await asyncio.create_task(registry.get("github"))
        await asyncio.create_task(registry.aclose())

        assert connector.closed == ["github"]


class TestDefaultBridge:
    """Tests for the bridge generated stubs dispatch through."""

    async def test_call_tool_uses_installed_bridge(self, bridge, connector):
        use_bridge(bridge)

        result = await call_tool("github", "github__create_issue", {"title": "x"})
        await bridge.aclose()

        assert result == {"number": 42}

    def test_default_bridge_loads_config(self, tmp_path, monkeypatch):
        write_config(tmp_path, {"github": {"command": "npx"}}, {"operation_timeout_ms": 1234})
        monkeypatch.chdir(tmp_path)

        bridge = default_bridge()

        assert bridge is default_bridge()
        assert bridge.call_timeout_ms == 1234

    async def test_context_manager_closes(self, make_config, connector):
        config = make_config("github")

        async with ClientBridge(config, registry=ConnectionRegistry(config.get_host, connector=connector)) as bridge:
            await bridge.invoke("github", "x", {})

        assert connector.closed == ["github"]

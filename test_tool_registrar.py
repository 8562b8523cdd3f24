import pytest

from shim_errors import ToolNotFoundError
from shim_types import ChatMessage, ToolResult
from tool_catalog import ToolCatalog, ToolSignature
from tool_discovery import DiscoveryEngine
from tool_host import ToolHost
from tool_registrar import (
    BUILTIN_PLACEHOLDER_RESULT,
    CapabilityRegistrar,
    ensure_tools_registered,
    extract_tool_names,
    provider_result_to_tool_result,
)


class CountingHost(ToolHost):
    def __init__(self):
        super().__init__()
        self.register_calls = []

    def register_tool(self, name, handler):
        self.register_calls.append(name)
        super().register_tool(name, handler)


class FakeToolProvider:
    def __init__(self, tools, result=None, error=None):
        self.tools = tools
        self.result = result
        self.error = error
        self.calls = []

    def list_tools(self):
        return [dict(t) for t in self.tools]

    async def call_tool(self, name, params):
        self.calls.append((name, params))
        if self.error is not None:
            raise self.error
        return self.result


def _registrar(host=None):
    return CapabilityRegistrar(ToolCatalog(), host if host is not None else CountingHost())


def test_idempotent_registration():
    host = CountingHost()
    registrar = _registrar(host)
    assert registrar.ensure_builtin_registered("Read") is True
    assert registrar.ensure_builtin_registered("Read") is True
    assert host.register_calls == ["Read"]
    assert registrar.is_registered("Read")


def test_builtin_not_in_catalog_raises():
    registrar = _registrar()
    with pytest.raises(ToolNotFoundError):
        registrar.ensure_builtin_registered("NoSuchTool")


def test_register_all_builtins():
    registrar = _registrar()
    stats = registrar.register_all_builtins()
    assert stats["builtin"] == 16
    assert stats["total"] == 16
    registrar.register_all_builtins()
    assert registrar.stats()["builtin"] == 16


def test_registration_rejected_by_host_returns_false():
    registrar = _registrar()
    registrar.catalog.upsert(ToolSignature("bad name with spaces"))
    assert registrar.ensure_builtin_registered("bad name with spaces") is False
    assert registrar.stats()["failed"] == 1
    assert not registrar.is_registered("bad name with spaces")


def test_no_execution_environment():
    registrar = CapabilityRegistrar(ToolCatalog(), None)
    assert not registrar.can_register
    assert registrar.ensure_builtin_registered("Read") is False


@pytest.mark.asyncio
async def test_builtin_handler_returns_placeholder():
    host = ToolHost()
    registrar = _registrar(host)
    registrar.ensure_builtin_registered("Bash")
    result = await host.invoke_tool("Bash", {"command": "ls"})
    assert result.text == BUILTIN_PLACEHOLDER_RESULT


@pytest.mark.asyncio
async def test_provider_tool_success_and_failure():
    host = ToolHost()
    registrar = _registrar(host)

    async def ok(name, params):
        return {"content": [{"type": "text", "text": "hello "}, {"type": "image"}, {"type": "text", "text": "world"}]}

    async def boom(name, params):
        raise RuntimeError("server gone")

    assert registrar.ensure_provider_tool_registered("srv:greet", {"name": "srv:greet", "inputSchema": {"type": "object"}}, ok)
    assert registrar.ensure_provider_tool_registered("srv:fail", None, boom)
    assert registrar.catalog.source_of("srv:greet") == "provider"
    assert (await host.invoke_tool("srv:greet", {})).text == "hello world"
    failed = await host.invoke_tool("srv:fail", {})
    assert failed.is_error
    assert failed.text == "Error executing MCP tool srv:fail: server gone"


def test_provider_result_mapping():
    result = provider_result_to_tool_result({"content": [{"type": "text", "text": "x"}], "isError": True})
    assert result == ToolResult.from_text("x", is_error=True)
    assert provider_result_to_tool_result("plain").text == "plain"
    assert provider_result_to_tool_result({"a": 1}).text == '{"a": 1}'


def test_extract_tool_names_from_tools_and_text():
    tools = [
        {"type": "function", "function": {"name": "unknown_tool"}},
        {"name": "anthropic_style"},
        {"function": {"name": "unknown_tool"}},
        "garbage",
    ]
    messages = [ChatMessage("user", "please run bash and then read the file"), ChatMessage("user", [{"type": "text"}])]
    names = extract_tool_names(tools, messages)
    assert names[:2] == ["unknown_tool", "anthropic_style"]
    assert "Bash" in names
    assert "Read" in names
    assert len(names) == len(set(names))


@pytest.mark.asyncio
async def test_unknown_tool_discovery_scenario():
    registrar = _registrar()
    outcome = await ensure_tools_registered(["unknown_tool"], registrar, DiscoveryEngine(), settle_delay=0)
    assert outcome == {"unknown_tool": True}
    assert registrar.catalog.find("unknown_tool") is not None
    assert registrar.is_registered("unknown_tool")
    assert registrar.catalog.source_of("unknown_tool") == "discovered"


@pytest.mark.asyncio
async def test_ensure_prefers_provider_tools():
    host = ToolHost()
    registrar = _registrar(host)
    provider = FakeToolProvider(
        [{"name": "search", "description": "Search docs", "inputSchema": {"type": "object"}, "qualifiedName": "docs:search"}],
        result={"content": [{"type": "text", "text": "found"}], "isError": False},
    )
    outcome = await ensure_tools_registered(["search"], registrar, DiscoveryEngine(), provider=provider, settle_delay=0)
    assert outcome == {"search": True}
    assert registrar.catalog.find("search").description == "Search docs"
    result = await host.invoke_tool("search", {"q": "x"})
    assert result.text == "found"
    assert provider.calls == [("docs:search", {"q": "x"})]


@pytest.mark.asyncio
async def test_ensure_without_environment_reports_false():
    registrar = CapabilityRegistrar(ToolCatalog(), None)
    outcome = await ensure_tools_registered(["x"], registrar, DiscoveryEngine(), settle_delay=0)
    assert outcome == {"x": False}
    assert registrar.catalog.find("x") is None


def test_extract_tool_names_skips_blank_names():
    tools = [{"function": {"name": "   "}}, {"name": ""}, {"function": {"name": "real_tool"}}]
    assert extract_tool_names(tools, []) == ["real_tool"]


@pytest.mark.asyncio
async def test_unregistrable_name_does_not_stop_the_rest():
    registrar = _registrar()
    outcome = await ensure_tools_registered(["   ", "later_tool"], registrar, DiscoveryEngine(), settle_delay=0)
    assert outcome == {"   ": False, "later_tool": True}
    assert registrar.is_registered("later_tool")

import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from shim_config import Settings
from shim_errors import UpstreamError
from shim_server import create_app, stream_body
from shim_types import TextEvent, TextPart, ToolCallPart, ToolResult
from wire_adapters import OpenAIStreamEncoder
from tool_host import ToolHost


class ScriptedModel:
    def __init__(self, model_id, provider):
        self.id = model_id
        self.provider = provider

    async def send_request(self, messages, options):
        self.provider.requests.append((self.id, list(messages), options))
        if self.provider.dispatch_error is not None:
            raise self.provider.dispatch_error
        parts = self.provider.script

        async def gen():
            for p in parts:
                if isinstance(p, Exception):
                    raise p
                yield p

        return gen()


class ScriptedProvider:
    def __init__(self, ids=("gpt-4.1",), script=None, list_error=None, dispatch_error=None):
        self.ids = list(ids)
        self.script = script if script is not None else [TextPart("Hello"), TextPart(" there")]
        self.list_error = list_error
        self.dispatch_error = dispatch_error
        self.requests = []

    async def list_models(self):
        if self.list_error is not None:
            raise self.list_error
        return [{"id": i, "owned_by": "lmstudio"} for i in self.ids]

    async def select_models(self, model_id=None):
        return [ScriptedModel(i, self) for i in self.ids if model_id is None or i == model_id]


def _settings(**kw):
    base = dict(retry_delay=0.0, registration_settle_delay=0.0, mcp_clients={})
    base.update(kw)
    return Settings(**base)


def _client(provider=None, host=None, **kw):
    app = create_app(settings=_settings(**kw), provider=provider or ScriptedProvider(), host=host)
    return TestClient(app), app


def _sse_data(text):
    out = []
    for block in text.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                out.append(line[6:])
    return out


def test_root_and_health():
    client, _ = _client()
    r = client.get("/")
    assert r.status_code == 200
    assert r.text == "ok"
    h = client.get("/health").json()
    assert h["status"] == "ok"
    assert h["registered"] == 16


def test_tools_dump_builtins_first():
    client, _ = _client()
    tools = client.get("/tools").json()["tools"]
    assert len(tools) == 16
    assert tools[0]["type"] == "function"
    assert tools[0]["function"]["name"] == "Task"


def test_models_listing():
    client, _ = _client(ScriptedProvider(ids=["a", "b"]))
    for path in ("/models", "/v1/models"):
        data = client.get(path).json()
        assert [m["id"] for m in data] == ["a", "b"]
        assert data[0]["object"] == "model"
        assert isinstance(data[0]["created"], int)
        assert data[0]["owned_by"] == "lmstudio"


def test_models_upstream_failure_is_500():
    client, _ = _client(ScriptedProvider(list_error=UpstreamError("down")))
    r = client.get("/v1/models")
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "internal_error"


def test_malformed_body():
    client, _ = _client()
    r = client.post("/chat/completions", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert "type" in r.json()["error"]


def test_missing_messages():
    client, _ = _client()
    r = client.post("/v1/chat/completions", json={"model": "gpt-4.1"})
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request_error"
    r = client.post("/v1/messages", json={"model": "gpt-4.1", "messages": "nope"})
    assert r.status_code == 400


def test_unknown_route_and_method():
    client, _ = _client()
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json()["error"]["type"] == "not_found_error"
    r = client.get("/v1/messages")
    assert r.status_code == 405
    assert "error" in r.json()


def test_model_fallback_and_merge():
    provider = ScriptedProvider(ids=["gpt-4.1"])
    client, _ = _client(provider, system_prompt="You are helpful.", system_prompt_format="merge")
    r = client.post("/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "Hello"}]})
    assert r.status_code == 200
    body = r.json()
    assert body["model"] == "gpt-4.1"
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hello there"}
    assert body["choices"][0]["finish_reason"] == "stop"
    _, sent, _ = provider.requests[0]
    assert len(sent) == 1
    assert sent[0].content.startswith("<SYSTEM_INSTRUCTIONS>\nYou are helpful.\n</SYSTEM_INSTRUCTIONS>")


def test_unresolved_model_is_400():
    client, _ = _client(ScriptedProvider(ids=["something-else"]))
    r = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "Hi"}]})
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request_error"


def test_dispatch_failure_is_request_error():
    client, _ = _client(ScriptedProvider(dispatch_error=UpstreamError("upstream returned 500")))
    r = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "Hi"}], "stream": True})
    assert r.status_code == 502
    assert r.json()["error"]["type"] == "upstream_error"


def test_openai_streaming_with_tool_events():
    host = ToolHost()
    host.register_tool("lookup", lambda name, params: ToolResult.from_text("42"))
    provider = ScriptedProvider(script=[TextPart("Hi"), ToolCallPart("call_1", "lookup", {"q": "answer"}), TextPart("!")])
    client, _ = _client(provider, host=host)
    r = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "go"}], "stream": True})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.text.endswith("data: [DONE]\n\n")
    chunks = [json.loads(d) for d in _sse_data(r.text) if d != "[DONE]"]
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)
    deltas = [c["choices"][0]["delta"] for c in chunks]
    assert deltas[0] == {"content": "Hi"}
    call = deltas[1]["tool_calls"][0]
    assert call["id"] == "call_1"
    assert call["function"]["name"] == "lookup"
    assert json.loads(call["function"]["arguments"]) == {"q": "answer"}
    assert deltas[2]["tool_results"][0]["function"] == {"name": "lookup", "result": "42"}
    assert deltas[3] == {"content": "!"}


def test_declared_unknown_tool_is_registered():
    client, app = _client()
    r = client.post(
        "/v1/chat/completions",
        json={
            "messages": [{"role": "user", "content": "Hi"}],
            "tools": [{"type": "function", "function": {"name": "unknown_tool", "parameters": {}}}],
        },
    )
    assert r.status_code == 200
    state = app.state.shim
    assert state.catalog.find("unknown_tool") is not None
    assert state.registrar.is_registered("unknown_tool")


def test_anthropic_non_streaming():
    provider = ScriptedProvider(script=[TextPart("one two"), TextPart(" three")])
    client, _ = _client(provider, system_prompt="")
    r = client.post(
        "/v1/messages",
        json={"model": "gpt-4.1", "system": "Be terse.", "max_tokens": 100,
              "messages": [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["type"] == "message"
    assert body["role"] == "assistant"
    assert body["content"] == [{"type": "text", "text": "one two three"}]
    assert body["stop_reason"] == "end_turn"
    assert body["stop_sequence"] is None
    assert body["usage"] == {"input_tokens": 0, "output_tokens": 3}
    _, sent, _ = provider.requests[0]
    assert [m.role for m in sent] == ["user"]
    assert "<SYSTEM_INSTRUCTIONS>\nBe terse.\n</SYSTEM_INSTRUCTIONS>" in sent[0].content
    assert "<USER_MESSAGE>\nHi\n</USER_MESSAGE>" in sent[0].content


def test_anthropic_streaming_event_order():
    host = ToolHost()
    host.register_tool("lookup", lambda name, params: ToolResult.from_text("42"))
    provider = ScriptedProvider(script=[TextPart("Hi"), ToolCallPart("toolu_1", "lookup", {})])
    client, _ = _client(provider, host=host)
    r = client.post("/v1/messages", json={"messages": [{"role": "user", "content": "go"}], "stream": True})
    assert r.status_code == 200
    events = [line[7:] for line in r.text.splitlines() if line.startswith("event: ")]
    assert events == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    payloads = [json.loads(d) for d in _sse_data(r.text)]
    assert payloads[0]["message"]["model"] == "gpt-4.1"
    assert payloads[2]["delta"] == {"type": "text_delta", "text": "Hi"}
    assert payloads[3]["delta"]["type"] == "tool_use"
    assert payloads[4]["delta"] == {"type": "tool_response", "id": "toolu_1", "name": "lookup", "output": "42"}
    assert payloads[6]["delta"]["stop_reason"] == "end_turn"


def test_anthropic_errors_use_anthropic_names():
    client, _ = _client(ScriptedProvider(dispatch_error=RuntimeError("boom")))
    r = client.post("/v1/messages", json={"messages": [{"role": "user", "content": "Hi"}]})
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "api_error"


def test_system_prompt_processing_off():
    provider = ScriptedProvider()
    client, _ = _client(provider, system_prompt="ignored", enable_system_prompt_processing=False)
    client.post("/v1/chat/completions", json={"messages": [{"role": "system", "content": "S"}, {"role": "user", "content": "U"}]})
    _, sent, _ = provider.requests[0]
    assert [(m.role, m.content) for m in sent] == [("user", "S"), ("user", "U")]


def test_mcp_tools_registered_at_startup():
    class Provider:
        def list_tools(self):
            return [{"name": "search", "description": "Search", "inputSchema": {"type": "object"}, "qualifiedName": "docs:search"}]

        async def call_tool(self, name, params):
            return {"content": [{"type": "text", "text": "hit"}], "isError": False}

    app = create_app(settings=_settings(), provider=ScriptedProvider(), tool_provider=Provider())
    with TestClient(app) as client:
        assert client.get("/health").json()["registered"] == 17
        names = [t["function"]["name"] for t in client.get("/tools").json()["tools"]]
        assert names[-1] == "docs:search"


def test_openai_mid_stream_failure_is_reported_in_band():
    provider = ScriptedProvider(script=[TextPart("Hi"), RuntimeError("upstream dropped")])
    client, _ = _client(provider)
    r = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "go"}], "stream": True})
    assert r.status_code == 200
    assert r.text.endswith("data: [DONE]\n\n")
    chunks = [json.loads(d) for d in _sse_data(r.text) if d != "[DONE]"]
    deltas = [c["choices"][0]["delta"] for c in chunks]
    assert deltas[0] == {"content": "Hi"}
    result = deltas[1]["tool_results"][0]["function"]["result"]
    assert result == "Error: upstream dropped"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"


def test_anthropic_mid_stream_failure_keeps_terminator():
    provider = ScriptedProvider(script=[TextPart("Hi"), RuntimeError("upstream dropped")])
    client, _ = _client(provider)
    r = client.post("/v1/messages", json={"messages": [{"role": "user", "content": "go"}], "stream": True})
    assert r.status_code == 200
    events = [line[7:] for line in r.text.splitlines() if line.startswith("event: ")]
    assert events[-3:] == ["content_block_stop", "message_delta", "message_stop"]
    payloads = [json.loads(d) for d in _sse_data(r.text)]
    errors = [p["delta"] for p in payloads if p.get("delta", {}).get("type") == "tool_response"]
    assert errors[0]["output"] == "Error: upstream dropped"


class DroppingRequest:
    """Reports the client as gone after ``connected`` checks."""

    def __init__(self, connected):
        self.connected = connected
        self.url = SimpleNamespace(path="/v1/chat/completions")

    async def is_disconnected(self):
        self.connected -= 1
        return self.connected < 0


@pytest.mark.asyncio
async def test_disconnect_abandons_turn():
    closed = []

    async def events():
        try:
            yield TextEvent("b")
            yield TextEvent("c")
        finally:
            closed.append(True)

    gen = events()
    encoder = OpenAIStreamEncoder("gpt-4.1")
    out = [chunk async for chunk in stream_body(DroppingRequest(1), encoder, TextEvent("a"), gen)]
    assert len(out) == 1
    assert json.loads(out[0][6:])["choices"][0]["delta"] == {"content": "a"}
    assert "[DONE]" not in "".join(out)
    assert closed == [True]


def test_blank_declared_tool_does_not_fail_request():
    client, app = _client()
    r = client.post(
        "/v1/chat/completions",
        json={
            "messages": [{"role": "user", "content": "Hi"}],
            "tools": [{"function": {"name": "   "}}, {"function": {"name": "after_blank"}}],
        },
    )
    assert r.status_code == 200
    assert app.state.shim.registrar.is_registered("after_blank")

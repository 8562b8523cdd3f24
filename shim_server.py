import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mcp_bridge import MCPManager, connect_configured_clients
from model_backend import UpstreamModelProvider
from prompt_normalizer import normalize
from request_schemas import AnthropicMessagesRequest, OpenAIChatRequest, parse_request
from retry_orchestrator import RequestOptions, StreamingRetryOrchestrator, build_context, drain_text, find_model_with_fallback
from shim_config import Settings, get_settings
from shim_errors import InvalidRequestError, ShimError, StreamingTransportError, UpstreamError, error_body
from shim_types import ToolResult, ToolResultEvent
from tool_catalog import ToolCatalog
from tool_discovery import build_discovery_engine
from tool_host import ToolHost
from tool_registrar import CapabilityRegistrar, ensure_tools_registered, extract_tool_names
from wire_adapters import (
    AnthropicStreamEncoder,
    OpenAIStreamEncoder,
    anthropic_error_type,
    anthropic_message_body,
    anthropic_request_to_messages,
    models_listing,
    openai_completion_body,
    openai_request_to_messages,
)

logging.basicConfig(level=logging.INFO, format="[shim] %(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("lm_shim")

ANTHROPIC_PATHS = ("/v1/messages",)


@dataclass
class ShimState:
    settings: Callable[[], Settings]
    catalog: ToolCatalog
    host: ToolHost
    registrar: CapabilityRegistrar
    provider: Any
    tool_provider: Any = None

    def discovery(self):
        s = self.settings()
        return build_discovery_engine(s.discovery_probes, s.discovery_cli)


def _error_response(status_code: int, error_type: str, message: str, anthropic: bool = False) -> JSONResponse:
    if anthropic:
        error_type = anthropic_error_type(error_type)
    return JSONResponse(status_code=status_code, content=error_body(error_type, message))


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw.decode("utf-8") if raw else "")
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidRequestError(f"invalid JSON body: {e}") from e


async def _with_first(first, events) -> AsyncIterator[Any]:
    if first is not None:
        yield first
    async for ev in events:
        yield ev


def stream_error_event(error: Exception) -> ToolResultEvent:
    """In-band report of a failure after the response has started."""
    return ToolResultEvent(
        call_id=f"error_{int(time.time() * 1000)}",
        name="shim",
        result=ToolResult.from_text(f"Error: {error}", is_error=True),
    )


async def stream_body(request, encoder, first, events, opener: str = "") -> AsyncIterator[str]:
    try:
        if opener:
            yield opener
        async for ev in _with_first(first, events):
            if await request.is_disconnected():
                raise StreamingTransportError("client disconnected", path=request.url.path)
            yield encoder.encode(ev)
    except StreamingTransportError as e:
        logger.info(f"[SSE] turn abandoned: {e.to_log()}")
        return
    except Exception as e:
        logger.exception(f"[SSE] error during stream: {e}")
        yield encoder.encode(stream_error_event(e))
    finally:
        await events.aclose()
    yield encoder.finish()


async def register_provider_tools(state: ShimState) -> int:
    """Register every tool the external provider currently lists."""
    provider = state.tool_provider
    if provider is None:
        return 0
    count = 0
    for tool in provider.list_tools():
        qualified = tool.get("qualifiedName") or tool.get("name")
        if not qualified:
            continue
        schema = {
            "name": qualified,
            "description": tool.get("description") or f"MCP tool: {tool.get('name')}",
            "parameters": tool.get("inputSchema") or {"type": "object", "properties": {}, "required": []},
        }

        async def call(tool_name: str, params: Dict[str, Any], _target=qualified) -> Any:
            return await provider.call_tool(_target, params)

        if state.registrar.ensure_provider_tool_registered(qualified, schema, call):
            count += 1
    logger.info(f"[mcp] registered {count} provider tools")
    return count


def create_app(
    settings: Optional[Settings] = None,
    provider=None,
    tool_provider=None,
    catalog: Optional[ToolCatalog] = None,
    host: Optional[ToolHost] = None,
) -> FastAPI:
    get = (lambda: settings) if settings is not None else get_settings
    catalog = catalog if catalog is not None else ToolCatalog()
    host = host if host is not None else ToolHost()
    state = ShimState(
        settings=get,
        catalog=catalog,
        host=host,
        registrar=CapabilityRegistrar(catalog, host),
        provider=provider if provider is not None else UpstreamModelProvider(catalog, get),
        tool_provider=tool_provider,
    )
    state.registrar.register_all_builtins()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        clients = get().mcp_clients
        if state.tool_provider is None and clients:
            owned = MCPManager()
            connected = await connect_configured_clients(owned, clients)
            logger.info(f"[mcp] connected clients: {connected}")
            state.tool_provider = owned
        await register_provider_tools(state)
        try:
            yield
        finally:
            if owned is not None:
                await owned.disconnect()

    app = FastAPI(lifespan=lifespan)
    app.state.shim = state

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        error_type = {404: "not_found_error", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
        return _error_response(exc.status_code, error_type, str(exc.detail), request.url.path in ANTHROPIC_PATHS)

    async def run_turn(messages, tools, requested_model: Optional[str]):
        """Resolve the model, reconcile tools and start the orchestrated turn.

        Returns (model, first_event, events). The first event is pulled here so
        dispatch failures surface before any response bytes are written.
        """
        s = get()
        model = await find_model_with_fallback(state.provider, requested_model, s.default_model)
        discovery = state.discovery()
        tool_names = extract_tool_names(tools, messages, state.catalog) if s.enable_tool_calling else []
        if tool_names:
            await ensure_tools_registered(
                tool_names,
                state.registrar,
                discovery,
                provider=state.tool_provider,
                settle_delay=s.registration_settle_delay,
            )
        normalized = normalize(messages, s.system_prompt_config)
        logger.info(
            f"[turn] model={model.id} messages={len(normalized.messages)} system_prompt={normalized.has_system_prompt} tools={len(tool_names)}"
        )
        options = RequestOptions(tool_mode="auto" if s.enable_tool_calling else "none", tool_names=tuple(tool_names))
        orchestrator = StreamingRetryOrchestrator(model, state.host, state.registrar, discovery, retry_delay=s.retry_delay)
        events = orchestrator.run(build_context(normalized.messages, options, s.max_retries))
        try:
            first = await events.__anext__()
        except StopAsyncIteration:
            first = None
        return model, first, events

    async def handle_chat(request: Request, anthropic: bool):
        try:
            body = await _read_json(request)
            if anthropic:
                req = parse_request(AnthropicMessagesRequest, body)
                messages = anthropic_request_to_messages(req)
            else:
                req = parse_request(OpenAIChatRequest, body)
                messages = openai_request_to_messages(req)
            model, first, events = await run_turn(messages, req.tools, req.model)
            if req.stream:
                if anthropic:
                    encoder = AnthropicStreamEncoder(model.id)
                    opener = encoder.start()
                else:
                    encoder = OpenAIStreamEncoder(model.id)
                    opener = ""
                return StreamingResponse(
                    stream_body(request, encoder, first, events, opener),
                    media_type="text/event-stream",
                    headers={"Cache-Control": "no-cache"},
                )
            text = await drain_text(_with_first(first, events))
            if anthropic:
                return JSONResponse(status_code=200, content=anthropic_message_body(model.id, text))
            return JSONResponse(status_code=200, content=openai_completion_body(model.id, text))
        except ShimError as e:
            level = logging.WARNING if e.status_code < 500 else logging.ERROR
            logger.log(level, f"{request.url.path}: {e.to_log()}")
            return _error_response(e.status_code, e.error_type, e.message, anthropic)
        except Exception as e:
            logger.exception(f"Error in {request.url.path}: {e}")
            return _error_response(500, "internal_error", str(e) or type(e).__name__, anthropic)

    @app.get("/")
    def root():
        return PlainTextResponse("ok")

    @app.get("/health")
    def health():
        return {"status": "ok", "registered": len(state.registrar.registered_names())}

    @app.get("/tools")
    def tools():
        return {"tools": [sig.to_openai_tool() for sig in state.catalog.all()]}

    async def list_models():
        try:
            models = await state.provider.list_models()
        except UpstreamError as e:
            logger.error(f"[models] {e.to_log()}")
            return _error_response(500, "internal_error", e.message)
        except Exception as e:
            logger.exception(f"[models] unexpected error listing models: {e}")
            return _error_response(500, "internal_error", str(e))
        return JSONResponse(status_code=200, content=models_listing(models))

    app.add_api_route("/models", list_models, methods=["GET"])
    app.add_api_route("/v1/models", list_models, methods=["GET"])

    @app.post("/chat/completions")
    async def chat_completions_short(request: Request):
        return await handle_chat(request, anthropic=False)

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        return await handle_chat(request, anthropic=False)

    @app.post("/v1/messages")
    async def messages(request: Request):
        return await handle_chat(request, anthropic=True)

    return app


app = create_app()

"""Streaming Retry Orchestrator.

Runs one logical turn against a model handle: forwards text as it arrives,
executes tool calls through the tool host, and re-dispatches the turn when a
tool result carries the discovery sentinel, up to ``max_retries`` times.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from shim_errors import ModelNotFoundError, ToolInvocationError, ToolNotFoundError
from shim_types import (
    ChatMessage,
    TextEvent,
    TextPart,
    ToolCallEvent,
    ToolCallPart,
    ToolResult,
    ToolResultEvent,
    TurnEvent,
)
from tool_host import ToolHost
from tool_registrar import CapabilityRegistrar

logger = logging.getLogger("lm_shim.retry")


@dataclass(frozen=True)
class RequestOptions:
    tool_mode: str = "auto"
    tool_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RetryContext:
    messages: Tuple[ChatMessage, ...]
    options: RequestOptions = field(default_factory=RequestOptions)
    retry_count: int = 0
    max_retries: int = 2

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def next_attempt(self) -> "RetryContext":
        return replace(self, retry_count=self.retry_count + 1)


def discovered_message(name: str) -> str:
    return f"Tool {name} was dynamically discovered and registered. Please retry your request."


class _RetryTurn(Exception):
    """Internal signal: abandon the current stream and dispatch again."""


async def _close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug(f"[retry] closing stream raised: {e}")


class StreamingRetryOrchestrator:
    def __init__(
        self,
        model,
        host: Optional[ToolHost],
        registrar: CapabilityRegistrar,
        discovery,
        retry_delay: float = 0.2,
    ):
        self.model = model
        self.host = host
        self.registrar = registrar
        self.discovery = discovery
        self.retry_delay = retry_delay
        self.dispatch_count = 0

    async def run(self, ctx: RetryContext) -> AsyncIterator[TurnEvent]:
        while True:
            # an exception from dispatch propagates to the HTTP layer
            stream = await self._dispatch(ctx)
            try:
                async for event in self._consume(stream, ctx):
                    yield event
            except _RetryTurn:
                ctx = ctx.next_attempt()
                logger.info(f"[retry] tool registered mid-turn; re-dispatching (attempt {ctx.retry_count}/{ctx.max_retries})")
                await _close_stream(stream)
                if self.retry_delay > 0:
                    await asyncio.sleep(self.retry_delay)
                continue
            finally:
                await _close_stream(stream)
            return

    async def _dispatch(self, ctx: RetryContext):
        self.dispatch_count += 1
        logger.debug(f"[retry] dispatching {len(ctx.messages)} messages to {getattr(self.model, 'id', '?')}")
        result = self.model.send_request(list(ctx.messages), ctx.options)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def _consume(self, stream, ctx: RetryContext) -> AsyncIterator[TurnEvent]:
        async for part in stream:
            if isinstance(part, TextPart):
                if part.value:
                    yield TextEvent(part.value)
            elif isinstance(part, ToolCallPart):
                yield ToolCallEvent(part.call_id, part.name, dict(part.input or {}))
                result = await self._invoke(part)
                if result.is_discovery_sentinel() and ctx.can_retry:
                    raise _RetryTurn()
                yield ToolResultEvent(part.call_id, part.name, result)
            else:
                logger.debug(f"[retry] ignoring unknown stream part {type(part).__name__}")

    async def _invoke(self, call: ToolCallPart) -> ToolResult:
        if self.host is None:
            return ToolResult.from_text(f"Error: no tool execution environment for {call.name}", is_error=True)
        try:
            return await self.host.invoke_tool(call.name, call.input)
        except ToolNotFoundError as e:
            return await self._discover_and_register(call.name, e)
        except ToolInvocationError as e:
            logger.warning(f"[tools] {e.to_log()}")
            return ToolResult.from_text(f"Error: {e.message}", is_error=True)

    async def _discover_and_register(self, name: str, error: ToolNotFoundError) -> ToolResult:
        if not self.registrar.can_register:
            return ToolResult.from_text(f"Error: {error.message}", is_error=True)
        logger.info(f"[discovery] tool {name} not found during invocation; discovering")
        # a known signature is never replaced by a discovered one
        if self.registrar.catalog.find(name) is None and not self.registrar.is_registered(name):
            signature = await self.discovery.discover(name)
            self.registrar.catalog.upsert(signature)
        try:
            ok = self.registrar.ensure_builtin_registered(name)
        except ToolNotFoundError as e:
            ok = False
            logger.warning(f"[tools] {e.to_log()}")
        logger.info(f"[discovery] registration of {name} after discovery: {ok}")
        return ToolResult.from_text(discovered_message(name))


async def find_model_with_fallback(provider, requested: Optional[str], default: str):
    """Exact id first, then the configured default id; no further fallback."""
    if requested:
        try:
            models = await provider.select_models(requested)
        except Exception as e:
            logger.warning(f"[models] lookup of {requested} failed: {e}")
            models = []
        if models:
            return models[0]
        logger.info(f"[models] model {requested} not available; falling back to {default}")
    try:
        models = await provider.select_models(default)
    except Exception as e:
        raise ModelNotFoundError(f"model {requested or default} not found and fallback {default} unavailable: {e}",
                                 requested=requested, fallback=default) from e
    if not models:
        raise ModelNotFoundError(f"model {requested or default} not found and fallback {default} unavailable",
                                 requested=requested, fallback=default)
    return models[0]


async def drain_text(events: AsyncIterator[TurnEvent]) -> str:
    parts: List[str] = []
    async for ev in events:
        if isinstance(ev, TextEvent):
            parts.append(ev.text)
    return "".join(parts)


def build_context(messages: Sequence[ChatMessage], options: RequestOptions, max_retries: int) -> RetryContext:
    return RetryContext(messages=tuple(messages), options=options, max_retries=max_retries)

"""Model-invocation capability backed by an OpenAI-compatible upstream (LM Studio by default).

``UpstreamModelProvider.select_models`` returns handles whose ``send_request``
posts a streaming chat completion and yields TextPart / ToolCallPart values as
SSE chunks arrive. Blocking ``requests`` calls run in Starlette's thread pool.
"""
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union
from urllib.parse import urljoin

import requests
from requests.exceptions import Timeout as RequestsTimeout
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from shim_config import Settings, get_settings
from shim_errors import UpstreamError
from shim_types import ROLE_ASSISTANT, ROLE_USER, ChatMessage, TextPart, ToolCallPart, content_to_plain_text
from tool_catalog import ToolCatalog

logger = logging.getLogger("lm_shim.upstream")

ModelPart = Union[TextPart, ToolCallPart]


class ModelHandle:
    """What the orchestrator needs from a model."""

    id: str = ""

    async def send_request(self, messages: Sequence[ChatMessage], options) -> AsyncIterator[ModelPart]:
        raise NotImplementedError


class ModelProvider:
    async def select_models(self, model_id: Optional[str] = None) -> List[ModelHandle]:
        raise NotImplementedError

    async def list_models(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


# ---------------- Payload building ----------------

def to_upstream_messages(messages: Iterable[ChatMessage]) -> List[Dict[str, str]]:
    """Assistant messages keep their role; every other role is sent as user."""
    out = []
    for m in messages:
        role = ROLE_ASSISTANT if m.role == ROLE_ASSISTANT else ROLE_USER
        out.append({"role": role, "content": content_to_plain_text(m.content)})
    return out


def build_chat_payload(model_id: str, messages: Sequence[ChatMessage], options, catalog: Optional[ToolCatalog]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model_id,
        "messages": to_upstream_messages(messages),
        "stream": True,
    }
    tool_mode = getattr(options, "tool_mode", "auto")
    names = list(getattr(options, "tool_names", ()) or ())
    if catalog is None or tool_mode == "none" or not names:
        return payload
    tools = []
    for name in names:
        sig = catalog.find(name)
        if sig is None:
            logger.debug(f"[tools] {name} not in catalog at dispatch; skipping")
            continue
        tools.append(sig.to_openai_tool())
    if tools:
        payload["tools"] = tools
        payload["tool_choice"] = "required" if tool_mode == "required" else "auto"
    return payload


# ---------------- SSE parsing ----------------

def iter_sse_payloads(line_iter: Iterator[bytes]) -> Iterator[bytes]:
    """Group raw SSE lines into event data payloads. Stops at ``[DONE]``."""
    event_data_parts: List[bytes] = []
    for line in line_iter:
        if line is None:
            continue
        if len(line) == 0:
            if event_data_parts:
                data_bytes = b"\n".join(event_data_parts)
                event_data_parts = []
                if data_bytes.strip() == b"[DONE]":
                    logger.debug("[SSE] got [DONE] event")
                    return
                yield data_bytes
            continue
        if line.startswith(b":"):
            # comment / heartbeat
            continue
        if line.startswith(b"data:"):
            event_data_parts.append(line[5:].strip())
    # EOF without a trailing blank line
    if event_data_parts:
        data_bytes = b"\n".join(event_data_parts)
        if data_bytes.strip() != b"[DONE]":
            yield data_bytes


def normalize_chunk(obj: Any) -> Dict[str, Any]:
    """Some servers wrap the payload as {event, data: {...}}; unwrap to the object with choices."""
    if isinstance(obj, dict):
        if isinstance(obj.get("choices"), list):
            return obj
        data = obj.get("data") if isinstance(obj.get("data"), dict) else None
        if data and isinstance(data.get("choices"), list):
            return data
    return obj if isinstance(obj, dict) else {}


def _parse_arguments(raw: str) -> Dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning(f"[SSE] tool call arguments are not valid JSON; passing raw text preview={raw[:120]!r}")
        return {"input": raw}
    return parsed if isinstance(parsed, dict) else {"input": parsed}


class ChunkAccumulator:
    """Turns chat.completion.chunk objects into model parts.

    Text deltas come out immediately. Tool-call fragments are merged by index
    and released once the choice reports a finish_reason or the stream ends.
    """

    def __init__(self):
        self.tool_calls: List[Dict[str, Any]] = []
        self.finish_reason: Optional[str] = None
        self.chunk_count = 0
        self._emitted = 0

    def _ensure_tc_len(self, n: int) -> None:
        while len(self.tool_calls) <= n:
            self.tool_calls.append({"id": None, "type": "function", "function": {"name": None, "arguments": ""}})

    def _merge_tool_call(self, entry: Dict[str, Any]) -> None:
        idx = entry.get("index", 0)
        if not isinstance(idx, int) or idx < 0:
            idx = 0
        self._ensure_tc_len(idx)
        target = self.tool_calls[idx]
        if entry.get("id"):
            target["id"] = entry["id"]
        fn = entry.get("function") or {}
        tf = target["function"]
        if fn.get("name"):
            tf["name"] = fn["name"]
        args_val = fn.get("arguments")
        if isinstance(args_val, str):
            tf["arguments"] += args_val
        elif isinstance(args_val, (dict, list)):
            tf["arguments"] += json.dumps(args_val, ensure_ascii=False)

    def feed(self, chunk: Dict[str, Any]) -> List[ModelPart]:
        chunk = normalize_chunk(chunk)
        self.chunk_count += 1
        out: List[ModelPart] = []
        for choice in chunk.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            if isinstance(delta.get("content"), str) and delta["content"]:
                out.append(TextPart(delta["content"]))
            tc = delta.get("tool_calls")
            if isinstance(tc, list):
                for entry in tc:
                    if isinstance(entry, dict):
                        self._merge_tool_call(entry)
            # some servers send the final message under message.*
            msg = choice.get("message") or {}
            if isinstance(msg, dict):
                if isinstance(msg.get("content"), str) and msg["content"] and not delta.get("content"):
                    out.append(TextPart(msg["content"]))
                mtc = msg.get("tool_calls")
                if isinstance(mtc, list) and not tc:
                    for entry in mtc:
                        if isinstance(entry, dict):
                            self._merge_tool_call(entry)
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
                out.extend(self.flush())
        return out

    def flush(self) -> List[ToolCallPart]:
        """Release tool calls merged since the last flush."""
        out = []
        for i in range(self._emitted, len(self.tool_calls)):
            call = self.tool_calls[i]
            name = call["function"].get("name")
            if not name:
                logger.warning(f"[SSE] dropping tool call #{i} with no name")
                continue
            out.append(ToolCallPart(
                call_id=call.get("id") or f"call_{i}_{int(time.time() * 1000)}",
                name=name,
                input=_parse_arguments(call["function"].get("arguments") or ""),
            ))
        self._emitted = len(self.tool_calls)
        return out


def parse_sse_lines(line_iter: Iterator[bytes]) -> Iterator[ModelPart]:
    """Synchronous SSE line -> model part pipeline."""
    acc = ChunkAccumulator()
    for data_bytes in iter_sse_payloads(line_iter):
        try:
            chunk = json.loads(data_bytes.decode("utf-8", errors="ignore"))
        except ValueError as e:
            logger.warning(f"SSE JSON parse failed: {e}; skipping event preview={data_bytes[:120]!r}")
            continue
        for part in acc.feed(chunk):
            yield part
    for part in acc.flush():
        yield part
    logger.info(f"[SSE] complete chunks={acc.chunk_count} finish_reason={acc.finish_reason or 'stop'}")


# ---------------- Upstream provider ----------------

class UpstreamStream:
    """Async iterator of model parts that owns the upstream response.

    The response is closed on exhaustion or on ``aclose()``, even when
    iteration never started.
    """

    def __init__(self, resp, parts: Iterator[ModelPart]):
        self.resp = resp
        self._parts = iterate_in_threadpool(parts)
        self._closed = False

    def __aiter__(self) -> "UpstreamStream":
        return self

    async def __anext__(self) -> ModelPart:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._parts.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._parts.aclose()
        finally:
            self.resp.close()


class UpstreamModelHandle(ModelHandle):
    def __init__(self, model_id: str, provider: "UpstreamModelProvider"):
        self.id = model_id
        self.provider = provider

    async def send_request(self, messages: Sequence[ChatMessage], options) -> AsyncIterator[ModelPart]:
        """POST the chat request. Errors before the stream opens raise UpstreamError."""
        payload = build_chat_payload(self.id, messages, options, self.provider.catalog)
        resp = await run_in_threadpool(self.provider.post_chat_stream, payload)
        return UpstreamStream(resp, self._parts(resp))

    def _parts(self, resp) -> Iterator[ModelPart]:
        try:
            yield from parse_sse_lines(resp.iter_lines(decode_unicode=False))
        except RequestsTimeout:
            logger.warning("[SSE] upstream read timed out; ending stream")
        except requests.RequestException as e:
            logger.warning(f"[SSE] stream error: {e}; finalizing partial result")


class UpstreamModelProvider(ModelProvider):
    def __init__(
        self,
        catalog: Optional[ToolCatalog] = None,
        settings: Optional[Callable[[], Settings]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.catalog = catalog
        self._settings = settings or get_settings
        self.session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._settings().upstream_base

    def _url(self, suffix: str) -> str:
        return urljoin(self.base_url.rstrip("/") + "/", suffix.lstrip("/"))

    def _timeouts(self):
        s = self._settings()
        return (s.connect_timeout, s.read_timeout)

    def fetch_models(self) -> List[Dict[str, Any]]:
        url = self._url("models")
        try:
            resp = self.session.get(url, timeout=self._timeouts())
        except requests.RequestException as e:
            raise UpstreamError(f"upstream model list failed: {e}", url=url) from e
        if resp.status_code >= 400:
            raise UpstreamError(f"upstream returned {resp.status_code} for model list", url=url)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"upstream model list is not JSON: {e}", url=url) from e
        items = data.get("data") if isinstance(data, dict) else data
        return [m for m in items or [] if isinstance(m, dict) and m.get("id")]

    def post_chat_stream(self, payload: Dict[str, Any]):
        url = self._url("chat/completions")
        logger.info(f"-> POST upstream={url} model={payload.get('model')} tools={len(payload.get('tools') or [])}")
        try:
            resp = self.session.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json; charset=utf-8"},
                timeout=self._timeouts(),
                stream=True,
            )
        except RequestsTimeout as e:
            raise UpstreamError("upstream timeout", url=url) from e
        except requests.RequestException as e:
            raise UpstreamError(f"upstream connection failed: {e}", url=url) from e
        logger.info(f"<- upstream headers status={resp.status_code} content-type={resp.headers.get('Content-Type')}")
        if resp.status_code >= 400:
            preview = resp.text[:200]
            resp.close()
            raise UpstreamError(f"upstream returned {resp.status_code}", url=url, preview=preview)
        return resp

    async def list_models(self) -> List[Dict[str, Any]]:
        return await run_in_threadpool(self.fetch_models)

    async def select_models(self, model_id: Optional[str] = None) -> List[ModelHandle]:
        models = await self.list_models()
        ids = [str(m["id"]) for m in models]
        if model_id is not None:
            ids = [i for i in ids if i == model_id]
        return [UpstreamModelHandle(i, self) for i in ids]

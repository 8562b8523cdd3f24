"""OpenAI and Anthropic wire mappers.

Everything here is stateless apart from the small per-response encoder
objects, which only remember ids and accumulated text for usage counts.
"""
import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from shim_types import (
    ROLE_SYSTEM,
    ChatMessage,
    TextEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnEvent,
)


def sse_event(event_type: str, data: dict) -> str:
    """Format an SSE event with event type and JSON data."""
    return f"event: {event_type}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def sse_data(data: dict) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def sse_done() -> str:
    return "data: [DONE]\n\n"


def word_count(text: str) -> int:
    return len(text.split())


# ---------------- Request decoding ----------------

def _flatten_text_blocks(content: Any) -> Any:
    """A list made only of text blocks becomes one string; anything else is kept as-is."""
    if not isinstance(content, list):
        return content
    texts = []
    for block in content:
        if isinstance(block, str):
            texts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        else:
            return tuple(content)
    return "".join(texts)


def _to_chat_message(m) -> ChatMessage:
    return ChatMessage(
        role=m.role,
        content=_flatten_text_blocks(m.content),
        tool_call_id=m.tool_call_id,
        name=m.name,
    )


def openai_request_to_messages(req) -> List[ChatMessage]:
    return [_to_chat_message(m) for m in req.messages]


def anthropic_request_to_messages(req) -> List[ChatMessage]:
    """Top-level ``system`` becomes a leading system message."""
    out: List[ChatMessage] = []
    system = req.system
    if isinstance(system, list):
        system = _flatten_text_blocks(system)
        if not isinstance(system, str):
            system = "\n\n".join(
                b.get("text", "") for b in req.system if isinstance(b, dict) and isinstance(b.get("text"), str)
            )
    if isinstance(system, str) and system.strip():
        out.append(ChatMessage(role=ROLE_SYSTEM, content=system))
    out.extend(_to_chat_message(m) for m in req.messages)
    return out


# ---------------- OpenAI ----------------

class OpenAIStreamEncoder:
    def __init__(self, model_id: str):
        self.model_id = model_id
        self.id = f"chatcmpl-{int(time.time() * 1000)}"
        self.created = int(time.time())

    def _chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> str:
        return sse_data({
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model_id,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        })

    def encode(self, event: TurnEvent) -> str:
        if isinstance(event, TextEvent):
            return self._chunk({"content": event.text})
        if isinstance(event, ToolCallEvent):
            return self._chunk({
                "tool_calls": [{
                    "id": event.call_id,
                    "type": "function",
                    "function": {"name": event.name, "arguments": json.dumps(event.input or {}, ensure_ascii=False)},
                }]
            })
        if isinstance(event, ToolResultEvent):
            # non-standard extension; some clients render tool output from it
            return self._chunk({
                "tool_results": [{
                    "id": event.call_id,
                    "type": "function",
                    "function": {"name": event.name, "result": event.result.text},
                }]
            })
        return ""

    def finish(self) -> str:
        return self._chunk({}, finish_reason="stop") + sse_done()


def openai_completion_body(model_id: str, text: str) -> Dict[str, Any]:
    return {
        "id": f"chatcmpl-{int(time.time() * 1000)}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model_id,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": text},
            "finish_reason": "stop",
        }],
    }


# ---------------- Anthropic ----------------

class AnthropicStreamEncoder:
    def __init__(self, model_id: str):
        self.model_id = model_id
        self.id = f"msg_{uuid.uuid4().hex[:24]}"
        self._text: List[str] = []

    def start(self) -> str:
        return sse_event("message_start", {
            "type": "message_start",
            "message": {
                "id": self.id,
                "type": "message",
                "role": "assistant",
                "model": self.model_id,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": 0, "output_tokens": 0},
            },
        }) + sse_event("content_block_start", {
            "type": "content_block_start",
            "index": 0,
            "content_block": {"type": "text", "text": ""},
        })

    def _delta(self, delta: Dict[str, Any]) -> str:
        return sse_event("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": delta})

    def encode(self, event: TurnEvent) -> str:
        if isinstance(event, TextEvent):
            self._text.append(event.text)
            return self._delta({"type": "text_delta", "text": event.text})
        if isinstance(event, ToolCallEvent):
            return self._delta({"type": "tool_use", "id": event.call_id, "name": event.name, "input": event.input or {}})
        if isinstance(event, ToolResultEvent):
            return self._delta({"type": "tool_response", "id": event.call_id, "name": event.name, "output": event.result.text})
        return ""

    def finish(self) -> str:
        return (
            sse_event("content_block_stop", {"type": "content_block_stop", "index": 0})
            + sse_event("message_delta", {
                "type": "message_delta",
                "delta": {"stop_reason": "end_turn", "stop_sequence": None},
                "usage": {"output_tokens": word_count("".join(self._text))},
            })
            + sse_event("message_stop", {"type": "message_stop"})
        )


def anthropic_message_body(model_id: str, text: str) -> Dict[str, Any]:
    return {
        "id": f"msg_{uuid.uuid4().hex[:24]}",
        "type": "message",
        "role": "assistant",
        "model": model_id,
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 0, "output_tokens": word_count(text)},
    }


# Anthropic clients expect their own error type names.
_ANTHROPIC_ERROR_TYPES = {
    "internal_error": "api_error",
    "upstream_error": "api_error",
}


def anthropic_error_type(error_type: str) -> str:
    return _ANTHROPIC_ERROR_TYPES.get(error_type, error_type)


def models_listing(models: Iterable[Dict[str, Any]], created: Optional[int] = None) -> List[Dict[str, Any]]:
    created = created if created is not None else int(time.time())
    return [
        {
            "id": m["id"],
            "object": "model",
            "created": m.get("created") if isinstance(m.get("created"), int) else created,
            "owned_by": m.get("owned_by") or "organization_owner",
        }
        for m in models
    ]

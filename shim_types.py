"""Value types shared by the normalizer, orchestrator and wire adapters."""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

# Marker phrase placed in a tool result when a tool was registered mid-turn.
DISCOVERY_SENTINEL = "dynamically discovered and registered"


@dataclass(frozen=True)
class TextPart:
    value: str


@dataclass(frozen=True)
class ToolCallPart:
    call_id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


Content = Union[str, Tuple[Any, ...], List[Any], None]


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: Content = ""
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def with_role(self, role: str) -> "ChatMessage":
        return ChatMessage(role=role, content=self.content, tool_call_id=self.tool_call_id, name=self.name)

    def with_content(self, content: Content) -> "ChatMessage":
        return ChatMessage(role=self.role, content=content, tool_call_id=self.tool_call_id, name=self.name)

    def text(self) -> str:
        return content_to_text(self.content)


def content_to_text(content: Content) -> str:
    """Serialize message content to a string; structured content becomes JSON."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    try:
        return json.dumps(list(content) if isinstance(content, tuple) else content, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(content)


def content_to_plain_text(content: Content) -> str:
    """Flatten content parts to their text, for sending upstream."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    out: List[str] = []
    for part in content:
        if isinstance(part, dict):
            if isinstance(part.get("text"), str):
                out.append(part["text"])
            elif part.get("type") == "tool_result":
                out.append(content_to_plain_text(part.get("content")))
            elif part.get("type") == "tool_use":
                out.append(json.dumps({"tool": part.get("name"), "input": part.get("input") or {}}, ensure_ascii=False))
        elif isinstance(part, TextPart):
            out.append(part.value)
        elif part is not None:
            out.append(str(part))
    return "".join(out)


@dataclass(frozen=True)
class ToolResult:
    content: Tuple[TextPart, ...] = ()
    is_error: bool = False

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolResult":
        return cls(content=(TextPart(text),), is_error=is_error)

    @property
    def text(self) -> str:
        return "".join(p.value for p in self.content if isinstance(p, TextPart))

    def is_discovery_sentinel(self) -> bool:
        return DISCOVERY_SENTINEL in self.text


# ---------------- Turn events ----------------

@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    call_id: str
    name: str
    input: Dict[str, Any]


@dataclass(frozen=True)
class ToolResultEvent:
    call_id: str
    name: str
    result: ToolResult


TurnEvent = Union[TextEvent, ToolCallEvent, ToolResultEvent]

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from shim_errors import InvalidRequestError

VALID_ROLES = ("system", "user", "assistant", "tool")


class WireMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Union[str, List[Any], None] = ""
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @field_validator("role")
    @classmethod
    def _known_role(cls, v: str) -> str:
        if v not in VALID_ROLES:
            raise ValueError(f"unsupported role {v!r}")
        return v


class OpenAIChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: List[WireMessage]
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Any] = None
    stream: bool = False


class AnthropicMessagesRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: List[WireMessage]
    system: Union[str, List[Dict[str, Any]], None] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Any] = None
    max_tokens: Optional[int] = None
    stream: bool = False


def _describe(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request body"


def parse_request(model_cls, body: Any):
    """Validate a decoded JSON body, raising InvalidRequestError on any shape problem."""
    if not isinstance(body, dict):
        raise InvalidRequestError("request body must be a JSON object")
    if "messages" not in body:
        raise InvalidRequestError("missing required field: messages", field="messages")
    try:
        return model_cls.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(_describe(e)) from e

"""Fold system-role content into the user-visible message sequence.

The upstream chat endpoint has no reliable system channel, so system text is
merged into ordinary messages using one of three strategies. Input messages
are never mutated and the output never contains a ``system`` role.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from shim_config import SYSTEM_PROMPT_FORMATS, SystemPromptConfig
from shim_errors import ConfigurationError
from shim_types import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, ChatMessage, content_to_text

logger = logging.getLogger("lm_shim.prompt")

ACKNOWLEDGMENT_TEXT = "I understand and will follow these instructions carefully."
ACKNOWLEDGMENT_TRAILER = "Please proceed with following these instructions."


@dataclass(frozen=True)
class NormalizedMessages:
    messages: List[ChatMessage]
    has_system_prompt: bool
    system_content: Optional[str] = None


def coerce_format(value: str) -> str:
    try:
        if value not in SYSTEM_PROMPT_FORMATS:
            raise ConfigurationError(
                f"unknown system prompt format {value!r}",
                setting="system_prompt_format",
                value=value,
                valid_values=list(SYSTEM_PROMPT_FORMATS),
            )
    except ConfigurationError as e:
        logger.warning(f"[cfg] {e.to_log()}; using merge")
        return "merge"
    return value


def _demote_system(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    return [m.with_role(ROLE_USER) if m.role == ROLE_SYSTEM else m for m in messages]


def format_merge(system_content: str, user_content: str) -> str:
    block = f"<SYSTEM_INSTRUCTIONS>\n{system_content}\n</SYSTEM_INSTRUCTIONS>"
    if not user_content.strip():
        return block
    return f"{block}\n\n<USER_MESSAGE>\n{user_content}\n</USER_MESSAGE>"


def format_instructions(system_content: str) -> str:
    return f"<INSTRUCTIONS>\n{system_content}\n</INSTRUCTIONS>"


def apply_format(messages: Sequence[ChatMessage], system_content: str, fmt: str) -> List[ChatMessage]:
    if fmt == "assistant_acknowledgment":
        return [
            ChatMessage(role=ROLE_ASSISTANT, content=ACKNOWLEDGMENT_TEXT),
            ChatMessage(role=ROLE_USER, content=f"{format_instructions(system_content)}\n\n{ACKNOWLEDGMENT_TRAILER}"),
        ] + _demote_system(messages)

    if not messages:
        content = format_merge(system_content, "") if fmt == "merge" else system_content
        return [ChatMessage(role=ROLE_USER, content=content)]

    first, rest = messages[0], list(messages[1:])
    first_text = content_to_text(first.content)
    if fmt == "simple_prepend":
        merged = f"{system_content}\n\n{first_text}"
    else:
        merged = format_merge(system_content, first_text)
    role = ROLE_USER if first.role == ROLE_SYSTEM else first.role
    return [first.with_role(role).with_content(merged)] + rest


def normalize(messages: Sequence[ChatMessage], config: SystemPromptConfig) -> NormalizedMessages:
    if not config.enabled:
        return NormalizedMessages(_demote_system(messages), False)

    system_msgs = [m for m in messages if m.role == ROLE_SYSTEM]
    other_msgs = [m for m in messages if m.role != ROLE_SYSTEM]

    all_system = ""
    default_text = (config.default_text or "").strip()
    if default_text:
        all_system += f"{default_text}\n\n"
    if system_msgs:
        all_system += "\n\n".join(content_to_text(m.content) for m in system_msgs)

    all_system = all_system.strip()
    if not all_system:
        return NormalizedMessages(_demote_system(messages), False)

    fmt = coerce_format(config.format)
    out = apply_format(other_msgs, all_system, fmt)
    return NormalizedMessages(out, True, all_system)

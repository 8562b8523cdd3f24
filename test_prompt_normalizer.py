import pytest

from prompt_normalizer import ACKNOWLEDGMENT_TEXT, ACKNOWLEDGMENT_TRAILER, coerce_format, normalize
from shim_config import SYSTEM_PROMPT_FORMATS, SystemPromptConfig
from shim_types import ChatMessage


def _msgs(*pairs):
    return [ChatMessage(role=r, content=c) for r, c in pairs]


def test_merge_default_scenario():
    cfg = SystemPromptConfig(default_text="You are helpful.", format="merge")
    out = normalize(_msgs(("user", "Hello")), cfg)
    assert out.has_system_prompt
    assert len(out.messages) == 1
    assert out.messages[0].role == "user"
    assert out.messages[0].content.startswith("<SYSTEM_INSTRUCTIONS>\nYou are helpful.\n</SYSTEM_INSTRUCTIONS>")


def test_merge_wraps_both_blocks_without_adding_messages():
    cfg = SystemPromptConfig(default_text="", format="merge")
    out = normalize(_msgs(("system", "Be helpful."), ("user", "Hi")), cfg)
    assert len(out.messages) == 1
    content = out.messages[0].content
    assert "<SYSTEM_INSTRUCTIONS>\nBe helpful.\n</SYSTEM_INSTRUCTIONS>" in content
    assert "<USER_MESSAGE>\nHi\n</USER_MESSAGE>" in content
    assert content.index("<SYSTEM_INSTRUCTIONS>") < content.index("<USER_MESSAGE>")


def test_merge_keeps_later_messages_unchanged():
    cfg = SystemPromptConfig(format="merge")
    msgs = _msgs(("system", "S"), ("user", "one"), ("assistant", "two"), ("user", "three"))
    out = normalize(msgs, cfg)
    assert [m.role for m in out.messages] == ["user", "assistant", "user"]
    assert out.messages[1:] == msgs[2:]


def test_merge_joins_default_and_system_messages():
    cfg = SystemPromptConfig(default_text="  Default.  ", format="merge")
    out = normalize(_msgs(("system", "First."), ("user", "q"), ("system", "Second.")), cfg)
    assert out.system_content == "Default.\n\nFirst.\n\nSecond."


def test_merge_without_user_messages_emits_system_block_only():
    cfg = SystemPromptConfig(format="merge")
    out = normalize(_msgs(("system", "Only rules")), cfg)
    assert len(out.messages) == 1
    assert out.messages[0].role == "user"
    assert out.messages[0].content == "<SYSTEM_INSTRUCTIONS>\nOnly rules\n</SYSTEM_INSTRUCTIONS>"


def test_merge_with_blank_first_message_has_no_user_block():
    cfg = SystemPromptConfig(format="merge")
    out = normalize(_msgs(("system", "rules"), ("user", "   ")), cfg)
    assert "<USER_MESSAGE>" not in out.messages[0].content


@pytest.mark.parametrize("n", [0, 1, 3])
def test_assistant_acknowledgment_adds_two_messages(n):
    cfg = SystemPromptConfig(default_text="Rules", format="assistant_acknowledgment")
    msgs = _msgs(*[("user" if i % 2 == 0 else "assistant", f"m{i}") for i in range(n)])
    out = normalize(msgs, cfg)
    assert len(out.messages) == n + 2
    assert out.messages[0].role == "assistant"
    assert out.messages[0].content == ACKNOWLEDGMENT_TEXT
    assert out.messages[1].role == "user"
    assert out.messages[1].content == f"<INSTRUCTIONS>\nRules\n</INSTRUCTIONS>\n\n{ACKNOWLEDGMENT_TRAILER}"
    assert out.messages[2:] == msgs


def test_simple_prepend():
    cfg = SystemPromptConfig(format="simple_prepend")
    out = normalize(_msgs(("system", "Be brief."), ("user", "Hi"), ("assistant", "Yo")), cfg)
    assert out.messages[0].content == "Be brief.\n\nHi"
    assert out.messages[1].content == "Yo"
    assert len(out.messages) == 2


@pytest.mark.parametrize("fmt", SYSTEM_PROMPT_FORMATS)
@pytest.mark.parametrize("default_text", ["", "Default"])
def test_output_never_contains_system_role(fmt, default_text):
    cfg = SystemPromptConfig(default_text=default_text, format=fmt)
    msgs = _msgs(("system", "a"), ("user", "b"), ("system", "c"), ("assistant", "d"), ("system", ""))
    out = normalize(msgs, cfg)
    assert all(m.role != "system" for m in out.messages)


def test_empty_system_passthrough():
    cfg = SystemPromptConfig(default_text="", format="merge")
    msgs = _msgs(("user", "Hi"), ("assistant", "Hello"))
    out = normalize(msgs, cfg)
    assert out.messages == msgs
    assert not out.has_system_prompt


def test_blank_system_message_is_relabelled():
    cfg = SystemPromptConfig(default_text="", format="merge")
    out = normalize(_msgs(("system", "   "), ("user", "Hi")), cfg)
    assert [m.role for m in out.messages] == ["user", "user"]
    assert not out.has_system_prompt


def test_disabled_processing_turns_system_into_user():
    cfg = SystemPromptConfig(default_text="ignored", format="merge", enabled=False)
    out = normalize(_msgs(("system", "rules"), ("user", "Hi")), cfg)
    assert [(m.role, m.content) for m in out.messages] == [("user", "rules"), ("user", "Hi")]


def test_input_is_not_mutated():
    msgs = _msgs(("system", "rules"), ("user", "Hi"))
    before = list(msgs)
    normalize(msgs, SystemPromptConfig(format="merge"))
    assert msgs == before


def test_structured_content_is_serialized():
    cfg = SystemPromptConfig(format="simple_prepend")
    msgs = [ChatMessage(role="system", content=[{"type": "text", "text": "x"}]), ChatMessage(role="user", content="Hi")]
    out = normalize(msgs, cfg)
    assert out.messages[0].content.startswith('[{"type": "text", "text": "x"}]')


def test_unknown_format_falls_back_to_merge():
    assert coerce_format("bogus") == "merge"
    out = normalize(_msgs(("system", "S"), ("user", "U")), SystemPromptConfig(format="bogus"))
    assert out.messages[0].content.startswith("<SYSTEM_INSTRUCTIONS>")

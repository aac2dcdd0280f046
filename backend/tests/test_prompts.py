"""Tests for agents/prompts.py and agents/catalog.py."""

import pytest

from agents.catalog import AVAILABLE_MODELS, resolve_model
from agents.prompts import (
    conversation_hash,
    derive_conversation_id,
    extract_incremental_prompt,
    extract_system_prompt,
    extract_text,
    format_message,
    messages_to_prompt,
)
from models.schemas import ChatMessage, ContentBlock


def _msg(role: str, content: str | list[ContentBlock] | None) -> ChatMessage:
    return ChatMessage(role=role, content=content)


CONVERSATION = [
    _msg("system", "You are helpful."),
    _msg("user", "Write a haiku"),
    _msg("assistant", "Leaves fall"),
    _msg("user", "Another one"),
]


# =========================================================================
# Text extraction and formatting
# =========================================================================


class TestExtractText:
    def test_plain_string(self) -> None:
        assert extract_text("hello") == "hello"

    def test_none(self) -> None:
        assert extract_text(None) == ""

    def test_text_blocks_concatenated_images_dropped(self) -> None:
        blocks = [
            ContentBlock(type="text", text="Look at "),
            ContentBlock(type="image_url", image_url={"url": "data:image/png;base64,AAAA"}),
            ContentBlock(type="text", text="this"),
        ]
        assert extract_text(blocks) == "Look at this"

    def test_plain_dict_blocks(self) -> None:
        assert extract_text([{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]) == "ab"


class TestFormatMessage:
    def test_assistant_wrapper(self) -> None:
        formatted = format_message(_msg("assistant", "Done"))
        assert formatted == "<assistant_response>\nDone\n</assistant_response>"

    def test_tool_wrapper(self) -> None:
        assert format_message(_msg("tool", "42")) == "<tool_result>\n42\n</tool_result>"

    def test_user_is_plain(self) -> None:
        assert format_message(_msg("user", "Hi")) == "Hi"


class TestSystemPrompt:
    def test_system_and_developer_joined(self) -> None:
        messages = [_msg("system", "One."), _msg("developer", "Two."), _msg("user", "Hi")]
        assert extract_system_prompt(messages) == "One.\n\nTwo."

    def test_none_without_system_messages(self) -> None:
        assert extract_system_prompt([_msg("user", "Hi")]) is None


# =========================================================================
# Full replay
# =========================================================================


class TestMessagesToPrompt:
    def test_single_message_sent_as_is(self) -> None:
        assert messages_to_prompt([_msg("user", "  Hi  ")]) == "Hi"

    def test_history_and_current_message(self) -> None:
        prompt = messages_to_prompt(CONVERSATION)

        assert "You are helpful." not in prompt
        assert prompt.startswith("<conversation_history>")
        assert "<assistant_response>\nLeaves fall\n</assistant_response>" in prompt
        assert prompt.endswith("<current_message>\n\nAnother one\n\n</current_message>")

    def test_system_only_is_empty(self) -> None:
        assert messages_to_prompt([_msg("system", "rules")]) == ""


# =========================================================================
# Incremental replay
# =========================================================================


class TestIncrementalPrompt:
    def test_single_new_user_message(self) -> None:
        messages = [_msg("user", "Hi"), _msg("assistant", "Hello"), _msg("user", "Next")]
        assert extract_incremental_prompt(messages, 2) == "Next"

    def test_several_new_messages_formatted(self) -> None:
        messages = [_msg("user", "Run it"), _msg("tool", "ok"), _msg("user", "Thanks")]
        assert extract_incremental_prompt(messages, 1) == (
            "<tool_result>\nok\n</tool_result>\n\nThanks"
        )

    def test_nothing_new_resends_last_user_message(self) -> None:
        messages = [_msg("user", "Hi"), _msg("assistant", "Hello")]
        assert extract_incremental_prompt(messages, 2) == "Hi"

    def test_system_messages_never_included(self) -> None:
        messages = [_msg("user", "Hi"), _msg("system", "new rule"), _msg("user", "Next")]
        assert extract_incremental_prompt(messages, 1) == "Next"

    @pytest.mark.parametrize("committed", [1, 2, 3])
    def test_new_user_text_always_present(self, committed: int) -> None:
        messages = [*CONVERSATION, _msg("user", "Final question")][: committed + 2]
        prompt = extract_incremental_prompt(messages, committed)
        assert extract_text(messages[-1].content) in prompt


class TestReplayEquivalence:
    """A full replay of the first N messages plus the incremental prompt
    from N carries every non-system message exactly once, in order."""

    MESSAGES = [
        _msg("system", "Be terse."),
        _msg("user", "Write a haiku"),
        _msg("assistant", "Leaves fall softly"),
        _msg("tool", "exit code 0"),
        _msg("user", "Another one"),
        _msg("developer", "Prefer rhyme."),
        _msg("assistant", "Snow melts by noon"),
        _msg("user", "Final question"),
    ]

    @pytest.mark.parametrize("committed", range(1, len(MESSAGES)))
    def test_split_reconstructs_the_conversation(self, committed: int) -> None:
        combined = "\n\n".join(
            [
                messages_to_prompt(self.MESSAGES[:committed]),
                extract_incremental_prompt(self.MESSAGES, committed),
            ]
        )

        position = 0
        for message in self.MESSAGES:
            text = extract_text(message.content)
            if message.role in ("system", "developer"):
                assert text not in combined
                continue
            found = combined.find(text, position)
            assert found >= 0, f"{text!r} missing or out of order"
            assert combined.count(text) == 1
            position = found + len(text)

    @pytest.mark.parametrize("committed", range(2, len(MESSAGES)))
    def test_new_messages_keep_their_role_wrappers(self, committed: int) -> None:
        incremental = extract_incremental_prompt(self.MESSAGES, committed)
        new = [m for m in self.MESSAGES[committed:] if m.role not in ("system", "developer")]
        if len(new) > 1:
            for message in new:
                assert format_message(message) in incremental


# =========================================================================
# Conversation identity
# =========================================================================


class TestDeriveConversationId:
    def test_header_wins(self) -> None:
        assert derive_conversation_id("abc", "alice", CONVERSATION) == "hdr_abc"

    def test_user_field_next(self) -> None:
        assert derive_conversation_id(None, "alice", CONVERSATION) == "usr_alice"

    def test_hash_of_first_user_message(self) -> None:
        derived = derive_conversation_id(None, None, CONVERSATION)
        assert derived == f"auto_{conversation_hash('Write a haiku')}"
        assert len(derived) == len("auto_") + 16

    def test_hash_is_stable_as_conversation_grows(self) -> None:
        first = derive_conversation_id(None, None, CONVERSATION[:2])
        later = derive_conversation_id(None, None, [*CONVERSATION, _msg("user", "More")])
        assert first == later

    def test_only_leading_characters_seed_the_hash(self) -> None:
        base = "x" * 120
        a = derive_conversation_id(None, None, [_msg("user", base + "tail one")])
        b = derive_conversation_id(None, None, [_msg("user", base + "tail two")])
        assert a == b

    def test_different_first_messages_differ(self) -> None:
        a = derive_conversation_id(None, None, [_msg("user", "alpha")])
        b = derive_conversation_id(None, None, [_msg("user", "beta")])
        assert a != b


# =========================================================================
# Model catalog
# =========================================================================


class TestResolveModel:
    @pytest.mark.parametrize(
        ("requested", "family"),
        [
            ("claude-opus-4", "opus"),
            ("claude-sonnet-4-5-20250929", "sonnet"),
            ("haiku", "haiku"),
            ("agent-cli/claude-haiku-4", "haiku"),
            ("gpt-4o", "sonnet"),
            ("gpt-4", "opus"),
        ],
    )
    def test_known_names(self, requested: str, family: str) -> None:
        assert resolve_model(requested) == family

    def test_unknown_falls_back_to_default(self) -> None:
        assert resolve_model("llama-3") == "sonnet"
        assert resolve_model("llama-3", default="haiku") == "haiku"
        assert resolve_model(None) == "sonnet"

    def test_catalog_ids_are_unique(self) -> None:
        ids = [entry.id for entry in AVAILABLE_MODELS]
        assert len(ids) == len(set(ids))

"""Prompt construction from OpenAI-style message arrays.

The agent keeps its own conversation state, so a request only has to carry
what the agent has not seen yet:

- Full replay (``messages_to_prompt``): every non-system message, older turns
  wrapped in ``<conversation_history>`` and the last one marked as
  ``<current_message>``. Used for new or reset conversations.
- Incremental replay (``extract_incremental_prompt``): only the messages past
  the committed count.

System messages never enter the prompt body; ``extract_system_prompt``
collects them so they can be passed to the agent as a separate argument.
"""

import hashlib
from collections.abc import Sequence
from typing import Any

from models.schemas import ChatMessage, ContentBlock

SYSTEM_ROLES = frozenset({"system", "developer"})

# Characters of the first user message that seed a derived conversation id
CONVERSATION_SEED_CHARS = 120


def extract_text(content: str | list[ContentBlock] | list[dict[str, Any]] | None) -> str:
    """Return the plain text of a message body.

    Text blocks are concatenated in order; image and other blocks carry no
    text for the agent and are skipped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, ContentBlock):
            if block.type == "text":
                parts.append(block.text or "")
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text") or "")
    return "".join(parts)


def format_message(message: ChatMessage) -> str:
    """Render one message with a role-specific wrapper."""
    text = extract_text(message.content)
    if message.role == "assistant":
        return f"<assistant_response>\n{text}\n</assistant_response>"
    if message.role in ("tool", "function"):
        return f"<tool_result>\n{text}\n</tool_result>"
    return text


def _conversation_messages(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
    return [m for m in messages if m.role not in SYSTEM_ROLES]


def extract_system_prompt(messages: Sequence[ChatMessage]) -> str | None:
    """Concatenate the text of every system message, or None if there are none."""
    texts = [
        extract_text(m.content).strip()
        for m in messages
        if m.role in SYSTEM_ROLES
    ]
    joined = "\n\n".join(text for text in texts if text)
    return joined or None


def messages_to_prompt(messages: Sequence[ChatMessage]) -> str:
    """Format the whole conversation for a fresh agent conversation.

    A single message is sent as-is. With several, the earlier turns become
    history and the last turn is marked as the current message.
    """
    conversation = _conversation_messages(messages)
    if not conversation:
        return ""
    if len(conversation) == 1:
        return extract_text(conversation[0].content).strip()

    history = "\n\n".join(format_message(m) for m in conversation[:-1])
    current = extract_text(conversation[-1].content)
    parts = [
        "<conversation_history>",
        history,
        "</conversation_history>",
        "<current_message>",
        current,
        "</current_message>",
    ]
    return "\n\n".join(parts).strip()


def extract_incremental_prompt(messages: Sequence[ChatMessage], last_count: int) -> str:
    """Format only the messages the agent has not seen yet.

    If nothing new arrived (e.g. a client retry), the most recent user message
    is re-sent so the agent still has something to answer.

    Args:
        messages: The caller's full message array.
        last_count: Number of messages already delivered.
    """
    new_messages = _conversation_messages(messages[last_count:])
    if not new_messages:
        for message in reversed(messages):
            if message.role == "user":
                return extract_text(message.content)
        return ""

    if len(new_messages) == 1 and new_messages[0].role == "user":
        return extract_text(new_messages[0].content)

    # Several new messages, e.g. tool results followed by a user turn
    return "\n\n".join(format_message(m) for m in new_messages).strip()


def conversation_hash(seed: str) -> str:
    """Stable short hash of a conversation seed."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


def derive_conversation_id(
    header_id: str | None,
    user: str | None,
    messages: Sequence[ChatMessage],
) -> str:
    """Derive the caller-visible conversation identity.

    Priority: explicit header > ``user`` field > hash of the leading text of
    the first user message. Each source gets its own prefix so identities from
    different sources never collide.
    """
    if header_id:
        return f"hdr_{header_id}"
    if user:
        return f"usr_{user}"
    first_user = next((m for m in messages if m.role == "user"), None)
    seed = extract_text(first_user.content if first_user else None)[:CONVERSATION_SEED_CHARS]
    return f"auto_{conversation_hash(seed)}"

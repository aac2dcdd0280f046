"""Event type definitions for the agent output stream.

The external agent writes newline-delimited JSON records to stdout. Every
line is decoded into exactly one variant of a closed set of records, tagged
by ``kind``. The supervisor adds two lifecycle variants of its own
(``process_error`` and ``process_closed``) so consumers can read a single
stream of events for the whole life of a process.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

LOST_CONVERSATION_MARKER = "No conversation found"


class RecordKind(StrEnum):
    """Discriminant for every event a supervised process can produce."""

    # Decoded stdout records
    CONTENT_DELTA = "content_delta"
    ASSISTANT_MESSAGE = "assistant_message"
    RESULT = "result"
    OTHER = "other"
    RAW = "raw"

    # Process lifecycle
    PROCESS_ERROR = "process_error"
    PROCESS_CLOSED = "process_closed"


class TokenUsage(BaseModel):
    """Token counters reported on the agent's terminal result."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total prompt plus completion tokens."""
        return self.input_tokens + self.output_tokens


class ContentDelta(BaseModel):
    """Incremental assistant text."""

    kind: Literal[RecordKind.CONTENT_DELTA] = RecordKind.CONTENT_DELTA
    text: str


class AssistantMessage(BaseModel):
    """A complete assistant turn, carrying the concrete model used."""

    kind: Literal[RecordKind.ASSISTANT_MESSAGE] = RecordKind.ASSISTANT_MESSAGE
    model: str | None = None
    text: str = ""


class ResultRecord(BaseModel):
    """Terminal result of an agent run.

    Attributes:
        is_error: True when the agent reports a failed run.
        subtype: Agent-provided result subtype (e.g. "success").
        result: Final response text.
        errors: Machine-readable error strings, if any.
        usage: Token counters for the run.
        session_id: The agent-side conversation the run belonged to.
        duration_ms: Agent-reported run duration.
    """

    kind: Literal[RecordKind.RESULT] = RecordKind.RESULT
    is_error: bool = False
    subtype: str | None = None
    result: str = ""
    errors: list[str] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    session_id: str | None = None
    duration_ms: int | None = None

    @property
    def is_lost_conversation(self) -> bool:
        """True when the agent could not resume the referenced conversation."""
        return self.is_error and any(
            LOST_CONVERSATION_MARKER in error for error in self.errors
        )


class OtherRecord(BaseModel):
    """A well-formed record the proxy does not act on (system, tool use...)."""

    kind: Literal[RecordKind.OTHER] = RecordKind.OTHER
    record_type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class RawLine(BaseModel):
    """A stdout line that could not be decoded as a structured record."""

    kind: Literal[RecordKind.RAW] = RecordKind.RAW
    line: str


class ProcessError(BaseModel):
    """Raised by the supervisor, e.g. when the hard timeout kills the process."""

    kind: Literal[RecordKind.PROCESS_ERROR] = RecordKind.PROCESS_ERROR
    reason: str
    message: str


class ProcessClosed(BaseModel):
    """Always the last event of a supervised process."""

    kind: Literal[RecordKind.PROCESS_CLOSED] = RecordKind.PROCESS_CLOSED
    exit_code: int | None = None


AgentRecord = ContentDelta | AssistantMessage | ResultRecord | OtherRecord | RawLine

SupervisorEvent = AgentRecord | ProcessError | ProcessClosed

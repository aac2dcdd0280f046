"""Pydantic schemas for API request/response models.

This module defines the OpenAI-compatible chat completion wire format plus
the introspection payloads served by the proxy. All models use Pydantic v2.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# -----------------------------------------------------------------------------
# Chat completion request
# -----------------------------------------------------------------------------


class ContentBlock(BaseModel):
    """One typed block of a structured message body (text or image)."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(description="Block type", examples=["text", "image_url"])
    text: str | None = Field(default=None, description="Text for text blocks")
    image_url: dict[str, Any] | str | None = Field(
        default=None,
        description="Image reference for image blocks",
    )


class ChatMessage(BaseModel):
    """A single message of the caller's conversation."""

    model_config = ConfigDict(extra="allow")

    role: str = Field(
        description="Author role",
        examples=["system", "user", "assistant", "tool"],
    )
    content: str | list[ContentBlock] | None = Field(
        default=None,
        description="Plain text or an ordered sequence of typed blocks",
    )
    name: str | None = None


class ChatCompletionRequest(BaseModel):
    """Request body for ``POST /v1/chat/completions``.

    ``messages`` defaults to an empty list so that a missing or empty history
    is reported as an invalid request (400) by the orchestrator rather than a
    schema error.
    """

    model_config = ConfigDict(extra="allow")

    model: str = Field(
        default="claude-sonnet-4",
        description="Requested model identifier or alias",
        examples=["claude-sonnet-4", "opus", "gpt-4o"],
    )
    messages: list[ChatMessage] = Field(
        default_factory=list,
        description="Full conversation history as seen by the caller",
    )
    stream: bool = Field(default=False, description="Stream chunks as server-sent events")
    user: str | None = Field(
        default=None,
        description="Caller-supplied user label, used to correlate conversations",
    )


# -----------------------------------------------------------------------------
# Chat completion response
# -----------------------------------------------------------------------------


class CompletionUsage(BaseModel):
    """Token usage in OpenAI naming."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AssistantReply(BaseModel):
    """The assistant message of a completed response."""

    role: Literal["assistant"] = "assistant"
    content: str


class Choice(BaseModel):
    """One choice of a non-streaming completion."""

    index: int = 0
    message: AssistantReply
    finish_reason: str | None = "stop"


class ChatCompletionResponse(BaseModel):
    """Complete response for a non-streaming call."""

    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: CompletionUsage = Field(default_factory=CompletionUsage)


class ChunkDelta(BaseModel):
    """Incremental piece of the assistant message."""

    role: str | None = None
    content: str | None = None


class ChunkChoice(BaseModel):
    """One choice of a streamed chunk."""

    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    """A single server-sent event of a streaming call."""

    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChunkChoice]
    usage: CompletionUsage | None = None


class ErrorDetail(BaseModel):
    """OpenAI-style error payload."""

    message: str
    type: str
    code: str | None = None


class ErrorResponse(BaseModel):
    """Envelope for every error body and streamed error event."""

    error: ErrorDetail


# -----------------------------------------------------------------------------
# Model catalog
# -----------------------------------------------------------------------------


class ModelCard(BaseModel):
    """A single entry of ``GET /v1/models``."""

    id: str
    object: Literal["model"] = "model"
    owned_by: str = "anthropic"
    created: int
    description: str | None = None


class ModelList(BaseModel):
    """Response for ``GET /v1/models``."""

    object: Literal["list"] = "list"
    data: list[ModelCard]


# -----------------------------------------------------------------------------
# Introspection
# -----------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response with agent and queue status."""

    status: Literal["ok", "degraded"] = Field(description="Overall health status")
    provider: str = Field(default="agent-cli", description="Backend provider name")
    agent_available: bool = Field(
        default=False,
        description="Whether the agent executable responded to a version check",
    )
    agent_version: str | None = None
    sessions: int = Field(default=0, description="Tracked conversations")
    active_subprocesses: int = Field(default=0, description="Running agent processes")
    concurrency_limit: int = 0
    queued_requests: int = 0
    timestamp: str = Field(description="ISO-8601 server time")


class UptimeStats(BaseModel):
    ms: int
    human: str


class RequestStats(BaseModel):
    total: int = 0
    completed: int = 0
    errors: int = 0
    errors_by_kind: dict[str, int] = Field(default_factory=dict)
    active: int = 0
    queued: int = 0


class ConcurrencyStats(BaseModel):
    limit: int
    active: int
    queue_limit: int


class SessionCountStats(BaseModel):
    total: int = 0


class TokenStats(BaseModel):
    total_input: int = 0
    total_output: int = 0
    total: int = 0


class PerformanceStats(BaseModel):
    avg_response_ms: int = 0
    sampled_requests: int = 0


class StatsResponse(BaseModel):
    """Response for ``GET /stats``."""

    uptime: UptimeStats
    requests: RequestStats
    concurrency: ConcurrencyStats
    sessions: SessionCountStats
    tokens: TokenStats
    performance: PerformanceStats


class ConversationSummary(BaseModel):
    """One continuity-store record as exposed by ``GET /v1/sessions``."""

    external_id: str = Field(description="Caller-visible conversation identity")
    agent_conversation_id: str = Field(description="Identifier handed to the agent")
    model: str
    message_count: int = Field(ge=0)
    created_at: str = Field(description="ISO-8601 creation time")
    last_used_at: str = Field(description="ISO-8601 time of last use")


class SessionListResponse(BaseModel):
    """Response for ``GET /v1/sessions``."""

    sessions: list[ConversationSummary]
    total: int


class SessionActionResponse(BaseModel):
    """Acknowledgement for reset/delete operations."""

    ok: bool = True
    message: str

"""Models module for Pydantic schemas and the conversation store.

This module exposes the request/response models used by the API.
"""

from models.schemas import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ContentBlock,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    ModelList,
    SessionListResponse,
    StatsResponse,
)

__all__ = [
    "ChatCompletionChunk",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "ChatMessage",
    "ContentBlock",
    "ConversationSummary",
    "ErrorResponse",
    "HealthResponse",
    "ModelList",
    "SessionListResponse",
    "StatsResponse",
]

"""HTTP API routes for the agent proxy.

This module defines the OpenAI-compatible chat completion endpoint, the model
catalog, and the health / stats / session introspection endpoints.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Header, HTTPException, Path, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from admission import ConversationBusyError
from agents.catalog import AVAILABLE_MODELS
from agents.supervisor import AgentVersion, get_active_process_count, verify_agent
from config import settings
from metrics import format_uptime
from models.database import ConversationRecord
from models.schemas import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ConcurrencyStats,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    ModelCard,
    ModelList,
    PerformanceStats,
    RequestStats,
    SessionActionResponse,
    SessionCountStats,
    SessionListResponse,
    StatsResponse,
    TokenStats,
    UptimeStats,
)
from orchestrator import ChatContext, CompletionError, Orchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat()


def _sse(payload: ChatCompletionChunk | ErrorResponse) -> str:
    return f"data: {payload.model_dump_json(exclude_none=True)}\n\n"


def _error_response(error: CompletionError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_response().model_dump(),
    )


def _to_summary(record: ConversationRecord) -> ConversationSummary:
    return ConversationSummary(
        external_id=record.external_id,
        agent_conversation_id=record.agent_conversation_id,
        model=record.model,
        message_count=record.message_count,
        created_at=_iso(record.created_at),
        last_used_at=_iso(record.last_used_at),
    )


# Orchestrator dependency (set during application startup)
_orchestrator: Orchestrator | None = None


def set_orchestrator(orchestrator: Orchestrator) -> None:
    """Set the orchestrator instance for the routes.

    This should be called during application startup to inject the
    orchestrator dependency.

    Args:
        orchestrator: The Orchestrator instance to use for all routes.
    """
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("orchestrator_configured")


def get_orchestrator() -> Orchestrator:
    """Get the orchestrator instance.

    Returns:
        The configured Orchestrator instance.

    Raises:
        RuntimeError: If the orchestrator has not been configured.
    """
    if _orchestrator is None:
        logger.error("orchestrator_not_configured")
        raise RuntimeError(
            "Orchestrator not configured. Call set_orchestrator() during startup."
        )
    return _orchestrator


# -----------------------------------------------------------------------------
# Chat completions
# -----------------------------------------------------------------------------


async def _stream_body(orchestrator: Orchestrator, ctx: ChatContext) -> AsyncIterator[str]:
    yield ":ok\n\n"
    async for payload in orchestrator.stream(ctx):
        yield _sse(payload)
    yield "data: [DONE]\n\n"


async def _release(orchestrator: Orchestrator, ctx: ChatContext) -> None:
    # Async so the release runs on the event loop, not in a worker thread
    orchestrator.release(ctx)


async def _busy_stream_body(chunks: list[ChatCompletionChunk]) -> AsyncIterator[str]:
    yield ":ok\n\n"
    for chunk in chunks:
        yield _sse(chunk)
    yield "data: [DONE]\n\n"


@router.post(
    "/v1/chat/completions",
    response_model=ChatCompletionResponse,
    summary="Create a chat completion",
    description=(
        "OpenAI-compatible chat completion served by the external agent. "
        "Set stream=true for server-sent events terminated by [DONE]."
    ),
)
async def chat_completions(
    body: ChatCompletionRequest,
    request: Request,
    x_session_id: Annotated[
        str | None,
        Header(description="Explicit conversation identifier"),
    ] = None,
) -> Response:
    """Serve one chat completion.

    The conversation identity is taken from the ``X-Session-Id`` header, the
    ``user`` field, or a hash of the first user message, in that order.

    Returns:
        A ``chat.completion`` object, an SSE stream, or an OpenAI-style error.
    """
    orchestrator = get_orchestrator()
    structlog.contextvars.clear_contextvars()

    try:
        ctx = await orchestrator.begin(body, header_conversation_id=x_session_id)
    except ConversationBusyError as e:
        logger.info("conversation_busy_advisory", conversation_id=e.conversation_id[:40])
        if body.stream:
            return StreamingResponse(
                _busy_stream_body(orchestrator.busy_chunks(body)),
                media_type="text/event-stream",
                headers=_SSE_HEADERS,
            )
        return JSONResponse(content=orchestrator.busy_response(body).model_dump())
    except CompletionError as e:
        logger.warning("chat_completion_rejected", kind=e.kind.value, error=e.message)
        return _error_response(e)

    structlog.contextvars.bind_contextvars(request_id=ctx.request_id)

    if ctx.stream:
        return StreamingResponse(
            _stream_body(orchestrator, ctx),
            media_type="text/event-stream",
            headers={**_SSE_HEADERS, "X-Request-Id": ctx.request_id},
            # Releases the slot even if the body iterator never started
            background=BackgroundTask(_release, orchestrator, ctx),
        )

    try:
        response = await orchestrator.complete(ctx, is_disconnected=request.is_disconnected)
    except CompletionError as e:
        return _error_response(e)
    return JSONResponse(
        content=response.model_dump(),
        headers={"X-Request-Id": ctx.request_id},
    )


# -----------------------------------------------------------------------------
# Model catalog
# -----------------------------------------------------------------------------


@router.get(
    "/v1/models",
    response_model=ModelList,
    summary="List models",
    description="Static catalog of model identifiers accepted by the proxy.",
)
async def list_models() -> ModelList:
    """List every accepted model identifier."""
    created = int(time.time())
    return ModelList(
        data=[
            ModelCard(id=entry.id, created=created, description=entry.description)
            for entry in AVAILABLE_MODELS
        ]
    )


# -----------------------------------------------------------------------------
# Introspection
# -----------------------------------------------------------------------------


# Last agent version check as (monotonic time, result), reused by /health
_agent_check: tuple[float, AgentVersion] | None = None


async def _check_agent() -> AgentVersion:
    """Run the agent version check, reusing a recent result."""
    global _agent_check
    now = time.monotonic()
    if _agent_check is not None and now - _agent_check[0] < settings.agent_check_cache_seconds:
        return _agent_check[1]
    version = await verify_agent()
    _agent_check = (now, version)
    return version


def reset_agent_check() -> None:
    """Forget the cached agent version check."""
    global _agent_check
    _agent_check = None


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check with agent availability and queue status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with agent and admission status.

    Checks the agent executable with ``--version`` (cached for
    ``agent_check_cache_seconds``) and reports the number of tracked
    conversations, running agent processes and queued requests.
    """
    sessions = 0
    concurrency_limit = 0
    queued = 0
    try:
        orchestrator = get_orchestrator()
        sessions = len(orchestrator.store)
        concurrency_limit = orchestrator.admission.max_concurrent
        queued = orchestrator.admission.queued
    except RuntimeError:
        # Orchestrator not configured yet (e.g., during startup)
        pass

    agent = await _check_agent()
    if not agent.ok:
        logger.warning("health_check_agent_unavailable", error=agent.error)

    return HealthResponse(
        status="ok" if agent.ok else "degraded",
        agent_available=agent.ok,
        agent_version=agent.version,
        sessions=sessions,
        active_subprocesses=get_active_process_count(),
        concurrency_limit=concurrency_limit,
        queued_requests=queued,
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Usage statistics",
    description="Process-wide request, token and latency counters.",
)
async def get_stats() -> StatsResponse:
    """Return the usage counters collected since startup."""
    orchestrator = get_orchestrator()
    snapshot = orchestrator.stats.snapshot()
    admission = orchestrator.admission
    uptime_ms = snapshot.uptime_ms

    return StatsResponse(
        uptime=UptimeStats(ms=uptime_ms, human=format_uptime(uptime_ms)),
        requests=RequestStats(
            total=snapshot.total_requests,
            completed=snapshot.completed_requests,
            errors=snapshot.error_requests,
            errors_by_kind=snapshot.errors_by_kind,
            active=admission.active,
            queued=admission.queued,
        ),
        concurrency=ConcurrencyStats(
            limit=admission.max_concurrent,
            active=admission.active,
            queue_limit=admission.max_queue_depth,
        ),
        sessions=SessionCountStats(total=len(orchestrator.store)),
        tokens=TokenStats(
            total_input=snapshot.total_input_tokens,
            total_output=snapshot.total_output_tokens,
            total=snapshot.total_tokens,
        ),
        performance=PerformanceStats(
            avg_response_ms=snapshot.avg_response_ms,
            sampled_requests=snapshot.sampled_requests,
        ),
    )


# -----------------------------------------------------------------------------
# Conversations
# -----------------------------------------------------------------------------


@router.get(
    "/v1/sessions",
    response_model=SessionListResponse,
    summary="List conversations",
    description="List every conversation tracked by the continuity store.",
)
async def list_sessions() -> SessionListResponse:
    """List tracked conversations, most recently used first."""
    orchestrator = get_orchestrator()
    await orchestrator.store.load()
    records = sorted(
        orchestrator.store.list_all(),
        key=lambda r: r.last_used_at,
        reverse=True,
    )
    return SessionListResponse(
        sessions=[_to_summary(record) for record in records],
        total=len(records),
    )


@router.delete(
    "/v1/sessions",
    response_model=SessionActionResponse,
    summary="Reset all conversations",
    description=(
        "Give every tracked conversation a fresh agent conversation. "
        "The next request for each one replays its full history."
    ),
)
async def reset_sessions() -> SessionActionResponse:
    """Reset every conversation record."""
    orchestrator = get_orchestrator()
    await orchestrator.store.load()
    count = await orchestrator.store.reset_all()
    logger.info("sessions_reset", count=count)
    return SessionActionResponse(message=f"Reset {count} conversation(s)")


@router.delete(
    "/v1/sessions/{conversation_id}",
    response_model=SessionActionResponse,
    summary="Reset one conversation",
    description="Reset a conversation, or delete it entirely with purge=true.",
)
async def reset_session(
    conversation_id: Annotated[str, Path(description="The caller-visible conversation id")],
    purge: Annotated[bool, Query(description="Delete the record instead of resetting it")] = False,
) -> SessionActionResponse:
    """Reset or delete one conversation record.

    Raises:
        HTTPException: If the conversation is not tracked.
    """
    orchestrator = get_orchestrator()
    await orchestrator.store.load()
    if purge:
        found = await orchestrator.store.delete(conversation_id)
    else:
        found = await orchestrator.store.reset(conversation_id)

    if not found:
        logger.warning("session_not_found", conversation_id=conversation_id[:40])
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conversation {conversation_id} not found",
        )

    action = "Deleted" if purge else "Reset"
    logger.info("session_reset", conversation_id=conversation_id[:40], purged=purge)
    return SessionActionResponse(message=f"{action} conversation {conversation_id}")

"""Request orchestration for chat completions backed by the agent process.

This module provides the Orchestrator class, the central coordinator for a
chat completion. Per request it:

- derives the conversation identity and claims an admission slot,
- decides between full and incremental replay from the continuity store,
- drives one agent process, arming the first-token / inactivity / overall
  timers on a periodic tick,
- retries exactly once, transparently, when the agent reports that the
  conversation it was asked to resume no longer exists,
- renders the agent's output as OpenAI chunks or a single completion,
- commits the conversation's message count and usage counters once the
  request reaches a terminal outcome.

Every terminal path goes through a single resolve-once guard, so a request
is committed, counted and answered at most once no matter which of the
timers, process events or client disconnects gets there first.

Usage:
    >>> orchestrator = Orchestrator(store, admission, stats)
    >>> ctx = await orchestrator.begin(request, header_conversation_id=None)
    >>> response = await orchestrator.complete(ctx)
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from admission import Admission, AdmissionController, QueueFullError
from agents.catalog import resolve_model
from agents.prompts import (
    derive_conversation_id,
    extract_incremental_prompt,
    extract_system_prompt,
    messages_to_prompt,
)
from agents.supervisor import (
    AgentNotFoundError,
    AgentProcess,
    AgentRunOptions,
    AgentSpawnError,
)
from config import settings
from events.types import RecordKind, ResultRecord, TokenUsage
from metrics import UsageStats
from models.database import ConversationHandle, ConversationStore
from models.schemas import (
    AssistantReply,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    Choice,
    ChunkChoice,
    ChunkDelta,
    CompletionUsage,
    ErrorDetail,
    ErrorResponse,
)

logger = structlog.get_logger(__name__)

BUSY_ADVISORY_TEXT = (
    "I'm still working on your previous message in this conversation. "
    "Please wait for that reply before sending another message."
)


class RequestState(StrEnum):
    """Lifecycle of one in-flight request."""

    ADMITTED = "admitted"
    REPLAYING = "replaying"
    STREAMING = "streaming"
    BATCHING = "batching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReplayMode(StrEnum):
    """How much of the caller's history is sent to the agent."""

    FULL = "full"
    INCREMENTAL = "incremental"


class ErrorKind(StrEnum):
    """Machine-readable failure kinds surfaced to callers."""

    INVALID_REQUEST = "invalid_request"
    OVERLOAD = "overload"
    SPAWN_FAILURE = "spawn_failure"
    FIRST_TOKEN_TIMEOUT = "first_token_timeout"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    OVERALL_TIMEOUT = "overall_timeout"
    PROCESS_TIMEOUT = "process_timeout"
    LOST_CONVERSATION = "lost_conversation"
    ABNORMAL_EXIT = "abnormal_exit"
    AGENT_ERROR = "agent_error"
    CANCELLED = "cancelled"


TIMEOUT_KINDS = frozenset({
    ErrorKind.FIRST_TOKEN_TIMEOUT,
    ErrorKind.INACTIVITY_TIMEOUT,
    ErrorKind.OVERALL_TIMEOUT,
    ErrorKind.PROCESS_TIMEOUT,
})

# Outcomes where the agent consumed the turn, so the caller's count is committed
COMMITTED_FAILURE_KINDS = TIMEOUT_KINDS | {ErrorKind.AGENT_ERROR}

_ERROR_TYPES = {
    ErrorKind.INVALID_REQUEST: "invalid_request_error",
    ErrorKind.OVERLOAD: "rate_limit_error",
}


class CompletionError(Exception):
    """A request failure with an error kind and HTTP status.

    Attributes:
        kind: Machine-readable failure kind (also counted in usage stats).
        message: User-facing description.
        status_code: HTTP status for non-streaming responses.
        code: OpenAI ``error.code``; defaults to the kind.
        usage: Tokens the agent reported before failing, if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: int = 500,
        code: str | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.code = code or kind.value
        self.usage = usage

    @property
    def error_type(self) -> str:
        if self.kind in TIMEOUT_KINDS:
            return "timeout_error"
        return _ERROR_TYPES.get(self.kind, "server_error")

    def to_response(self) -> ErrorResponse:
        """Render as an OpenAI-style error body."""
        return ErrorResponse(
            error=ErrorDetail(message=self.message, type=self.error_type, code=self.code)
        )


class InvalidRequestError(CompletionError):
    """Raised before admission for requests that cannot be served."""

    def __init__(self, message: str) -> None:
        super().__init__(
            ErrorKind.INVALID_REQUEST, message, status_code=400, code="invalid_messages"
        )


# -----------------------------------------------------------------------------
# In-flight request state
# -----------------------------------------------------------------------------


class ResolveOnce:
    """Single terminal-resolution guard for a request."""

    def __init__(self) -> None:
        self.outcome: RequestState | None = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not None

    def resolve(self, outcome: RequestState) -> bool:
        """Record the outcome. Returns False if one was already recorded."""
        if self.outcome is not None:
            return False
        self.outcome = outcome
        return True


class RequestTimers:
    """First-token, inactivity and overall deadlines for one attempt.

    Timers are evaluated via ``expired()`` on every pass of the event loop
    (each record received or each idle tick) rather than armed as separate
    callbacks. Streaming calls use the first-token and inactivity
    tiers; non-streaming calls use only the overall tier.
    """

    def __init__(
        self,
        *,
        first_token_seconds: float,
        inactivity_seconds: float,
        overall_seconds: float | None,
        now: float,
    ) -> None:
        self.first_token_seconds = first_token_seconds
        self.inactivity_seconds = inactivity_seconds
        self.overall_seconds = overall_seconds
        self.started_at = now
        self.first_content_at: float | None = None
        self.last_activity_at = now

    def content(self, now: float) -> None:
        """A content chunk arrived; this disarms the first-token tier."""
        if self.first_content_at is None:
            self.first_content_at = now
        self.last_activity_at = now

    def activity(self, now: float) -> None:
        """Any other agent output; keeps the inactivity tier from firing."""
        self.last_activity_at = now

    def expired(self, now: float) -> ErrorKind | None:
        """Return the tier that has fired, if any."""
        if self.overall_seconds is not None:
            if now - self.started_at >= self.overall_seconds:
                return ErrorKind.OVERALL_TIMEOUT
            return None
        if self.first_content_at is None:
            if now - self.started_at >= self.first_token_seconds:
                return ErrorKind.FIRST_TOKEN_TIMEOUT
            return None
        if now - self.last_activity_at >= self.inactivity_seconds:
            return ErrorKind.INACTIVITY_TIMEOUT
        return None


@dataclass
class ReplayPlan:
    """What one attempt sends to the agent."""

    mode: ReplayMode
    prompt: str
    agent_conversation_id: str
    is_new_conversation: bool


@dataclass
class ChatContext:
    """Everything the orchestrator tracks for one in-flight request.

    Attributes:
        request_id: Caller-visible id (also the chunk/completion id suffix).
        conversation_id: Derived conversation identity.
        messages: The caller's full message array.
        requested_model: Model string as sent by the caller.
        model: Agent model family resolved from ``requested_model``.
        stream: Whether the caller asked for server-sent events.
        system_prompt: Concatenated system instructions, if any.
        admission: Slot plus conversation claim; released exactly once.
        state: Current lifecycle state.
        attempts: Agent runs started so far (at most two).
        content_delivered: True once any content reached the caller.
    """

    request_id: str
    conversation_id: str
    messages: list[ChatMessage]
    requested_model: str
    model: str
    stream: bool
    system_prompt: str | None
    admission: Admission
    started_at: float = field(default_factory=time.monotonic)
    created: int = field(default_factory=lambda: int(time.time()))
    state: RequestState = RequestState.ADMITTED
    attempts: int = 0
    content_delivered: bool = False
    replay_mode: ReplayMode | None = None
    process: AgentProcess | None = None
    resolution: ResolveOnce = field(default_factory=ResolveOnce)

    @property
    def completion_id(self) -> str:
        return f"chatcmpl-{self.request_id}"

    @property
    def message_count(self) -> int:
        return len(self.messages)


@dataclass
class _Text:
    text: str
    model: str


@dataclass
class _Done:
    result: ResultRecord
    model: str
    text: str


class _LostConversation:
    pass


_Step = _Text | _Done | _LostConversation


def plan_replay(messages: list[ChatMessage], handle: ConversationHandle) -> ReplayPlan:
    """Choose full or incremental replay for a conversation snapshot.

    Full replay is used for new conversations, conversations with nothing
    committed, and rewound conversations (the caller's array is no longer
    longer than the committed count).
    """
    total = len(messages)
    is_new = handle.is_new or handle.message_count == 0
    if is_new or total <= handle.message_count:
        return ReplayPlan(
            mode=ReplayMode.FULL,
            prompt=messages_to_prompt(messages),
            agent_conversation_id=handle.agent_conversation_id,
            is_new_conversation=is_new,
        )
    return ReplayPlan(
        mode=ReplayMode.INCREMENTAL,
        prompt=extract_incremental_prompt(messages, handle.message_count),
        agent_conversation_id=handle.agent_conversation_id,
        is_new_conversation=False,
    )


class Orchestrator:
    """Drives chat completions through the agent process.

    Attributes:
        store: Conversation continuity store.
        admission: Concurrency gate and per-conversation guard.
        stats: Process-wide usage counters.
    """

    def __init__(
        self,
        store: ConversationStore,
        admission: AdmissionController,
        stats: UsageStats,
        process_factory: Callable[[], AgentProcess] = AgentProcess,
        *,
        first_token_timeout_seconds: float | None = None,
        inactivity_timeout_seconds: float | None = None,
        overall_timeout_seconds: float | None = None,
        tick_seconds: float | None = None,
        default_model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Conversation continuity store.
            admission: Admission controller shared by all requests.
            stats: Usage counters.
            process_factory: Creates one agent process per attempt.
            first_token_timeout_seconds: Streaming first-token bound.
            inactivity_timeout_seconds: Streaming stall bound.
            overall_timeout_seconds: Non-streaming bound (defaults to the sum
                of the two above).
            tick_seconds: How often timers are evaluated.
            default_model: Family for unknown model names.
            clock: Monotonic time source.
        """
        self.store = store
        self.admission = admission
        self.stats = stats
        self._process_factory = process_factory
        self.first_token_timeout = (
            first_token_timeout_seconds
            if first_token_timeout_seconds is not None
            else settings.first_token_timeout_seconds
        )
        self.inactivity_timeout = (
            inactivity_timeout_seconds
            if inactivity_timeout_seconds is not None
            else settings.inactivity_timeout_seconds
        )
        self.overall_timeout = (
            overall_timeout_seconds
            if overall_timeout_seconds is not None
            else self.first_token_timeout + self.inactivity_timeout
        )
        self.tick = tick_seconds if tick_seconds is not None else settings.timeout_check_interval_seconds
        self.default_model = default_model or settings.default_model
        self._clock = clock
        self._in_flight: dict[str, ChatContext] = {}
        logger.info(
            "orchestrator_initialized",
            first_token_timeout=self.first_token_timeout,
            inactivity_timeout=self.inactivity_timeout,
            overall_timeout=self.overall_timeout,
        )

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    # -----------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------

    async def begin(
        self,
        request: ChatCompletionRequest,
        header_conversation_id: str | None = None,
    ) -> ChatContext:
        """Validate a request, derive its identity and claim a slot.

        Raises:
            InvalidRequestError: If the message list is missing or empty.
            ConversationBusyError: If the conversation already has a request
                in flight (callers answer with an advisory, not an error).
            CompletionError: With kind ``overload`` when the queue is full.
        """
        if not request.messages:
            self.stats.record_error(ErrorKind.INVALID_REQUEST)
            raise InvalidRequestError("messages is required and must be a non-empty array")

        await self.store.load()
        conversation_id = derive_conversation_id(
            header_conversation_id, request.user, request.messages
        )

        try:
            admission = await self.admission.admit(conversation_id)
        except QueueFullError as e:
            self.stats.record_error(ErrorKind.OVERLOAD)
            raise CompletionError(
                ErrorKind.OVERLOAD, str(e), status_code=429, code="concurrency_limit"
            ) from e

        ctx = ChatContext(
            request_id=uuid.uuid4().hex[:24],
            conversation_id=conversation_id,
            messages=list(request.messages),
            requested_model=request.model,
            model=resolve_model(request.model, self.default_model),
            stream=request.stream,
            system_prompt=extract_system_prompt(request.messages),
            admission=admission,
            started_at=self._clock(),
        )
        self._in_flight[ctx.request_id] = ctx
        logger.info(
            "request_admitted",
            request_id=ctx.request_id,
            conversation_id=conversation_id[:40],
            messages=ctx.message_count,
            model=ctx.model,
            stream=ctx.stream,
        )
        return ctx

    def release(self, ctx: ChatContext) -> None:
        """Give back the request's slot and conversation claim (idempotent)."""
        ctx.admission.release()
        self._in_flight.pop(ctx.request_id, None)

    # -----------------------------------------------------------------
    # Rendering
    # -----------------------------------------------------------------

    async def stream(self, ctx: ChatContext) -> AsyncIterator[ChatCompletionChunk | ErrorResponse]:
        """Yield one chunk per content delta, then a closing chunk.

        Failures are yielded as a single ``ErrorResponse`` after whatever was
        already streamed. The caller appends the ``[DONE]`` sentinel.
        """
        first = True
        try:
            async with contextlib.aclosing(self._execute(ctx)) as steps:
                async for step in steps:
                    if isinstance(step, _Text):
                        yield self._chunk(
                            ctx,
                            step.model,
                            ChunkDelta(role="assistant" if first else None, content=step.text),
                        )
                        first = False
                    elif isinstance(step, _Done):
                        yield self._chunk(
                            ctx,
                            step.model,
                            ChunkDelta(),
                            finish_reason="stop",
                            usage=_usage(step.result),
                        )
        except CompletionError as e:
            yield e.to_response()
        finally:
            self.release(ctx)

    async def complete(
        self,
        ctx: ChatContext,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> ChatCompletionResponse:
        """Run the request to completion and render one response object.

        Args:
            ctx: The admitted request.
            is_disconnected: Optional callback polled at most once per tick; a True result
                abandons the request.

        Raises:
            CompletionError: On any failure.
        """
        done: _Done | None = None
        try:
            async with contextlib.aclosing(self._execute(ctx, is_disconnected)) as steps:
                async for step in steps:
                    if isinstance(step, _Done):
                        done = step
        finally:
            self.release(ctx)

        if done is None:
            # _execute always ends in _Done or an exception
            raise CompletionError(ErrorKind.ABNORMAL_EXIT, "Agent produced no result")
        return ChatCompletionResponse(
            id=ctx.completion_id,
            created=ctx.created,
            model=done.model,
            choices=[Choice(message=AssistantReply(content=done.result.result or done.text))],
            usage=_usage(done.result),
        )

    def busy_response(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Advisory answer for a conversation that already has a request in flight."""
        return ChatCompletionResponse(
            id=f"chatcmpl-{uuid.uuid4().hex[:24]}",
            created=int(time.time()),
            model=request.model,
            choices=[Choice(message=AssistantReply(content=BUSY_ADVISORY_TEXT))],
        )

    def busy_chunks(self, request: ChatCompletionRequest) -> list[ChatCompletionChunk]:
        """Streaming form of ``busy_response``."""
        completion_id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
        created = int(time.time())
        return [
            ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=request.model,
                choices=[
                    ChunkChoice(delta=ChunkDelta(role="assistant", content=BUSY_ADVISORY_TEXT))
                ],
            ),
            ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=request.model,
                choices=[ChunkChoice(finish_reason="stop")],
            ),
        ]

    def _chunk(
        self,
        ctx: ChatContext,
        model: str,
        delta: ChunkDelta,
        finish_reason: str | None = None,
        usage: CompletionUsage | None = None,
    ) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=ctx.completion_id,
            created=int(time.time()),
            model=model,
            choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
            usage=usage,
        )

    # -----------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------

    async def _execute(
        self,
        ctx: ChatContext,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[_Step]:
        """Run up to two attempts and resolve the request exactly once."""
        log = logger.bind(request_id=ctx.request_id, conversation_id=ctx.conversation_id[:40])
        try:
            ctx.state = RequestState.REPLAYING
            handle = await self.store.get_or_create(ctx.conversation_id, ctx.model)
            plan = plan_replay(ctx.messages, handle)

            while True:
                ctx.attempts += 1
                ctx.replay_mode = plan.mode
                log.info(
                    "attempt_started",
                    attempt=ctx.attempts,
                    replay_mode=plan.mode.value,
                    committed=handle.message_count,
                    total=ctx.message_count,
                    new_conversation=plan.is_new_conversation,
                )
                lost = False
                async with contextlib.aclosing(
                    self._attempt(ctx, plan, is_disconnected)
                ) as steps:
                    async for step in steps:
                        if isinstance(step, _LostConversation):
                            lost = True
                        else:
                            yield step
                if not lost:
                    return

                if ctx.attempts >= 2:
                    raise CompletionError(
                        ErrorKind.LOST_CONVERSATION,
                        "The agent could not resume this conversation, even after starting a new one",
                    )

                ctx.state = RequestState.RETRYING
                log.warning("lost_conversation_retry", agent_conversation_id=plan.agent_conversation_id)
                await self.store.reset(ctx.conversation_id)
                handle = await self.store.get_or_create(ctx.conversation_id, ctx.model)
                plan = ReplayPlan(
                    mode=ReplayMode.FULL,
                    prompt=messages_to_prompt(ctx.messages),
                    agent_conversation_id=handle.agent_conversation_id,
                    is_new_conversation=True,
                )
        except CompletionError as e:
            await self._fail(ctx, e)
            raise
        finally:
            if not ctx.resolution.resolved:
                # Caller went away before a terminal outcome: no commit
                ctx.resolution.resolve(RequestState.FAILED)
                ctx.state = RequestState.FAILED
                if ctx.process is not None:
                    ctx.process.kill()
                self.stats.record_error(ErrorKind.CANCELLED)
                log.info("request_abandoned", attempts=ctx.attempts)

    async def _attempt(
        self,
        ctx: ChatContext,
        plan: ReplayPlan,
        is_disconnected: Callable[[], Awaitable[bool]] | None,
    ) -> AsyncIterator[_Step]:
        """One agent run: spawn, relay events, enforce timers."""
        process = self._process_factory()
        ctx.process = process
        ctx.state = RequestState.STREAMING if ctx.stream else RequestState.BATCHING
        timers = RequestTimers(
            first_token_seconds=self.first_token_timeout,
            inactivity_seconds=self.inactivity_timeout,
            overall_seconds=None if ctx.stream else self.overall_timeout,
            now=self._clock(),
        )

        try:
            await process.start(
                plan.prompt,
                AgentRunOptions(
                    model=ctx.model,
                    conversation_id=plan.agent_conversation_id,
                    is_new_conversation=plan.is_new_conversation,
                    system_prompt=ctx.system_prompt,
                ),
            )
        except (AgentNotFoundError, AgentSpawnError) as e:
            raise CompletionError(ErrorKind.SPAWN_FAILURE, str(e)) from e

        model = ctx.requested_model
        text_parts: list[str] = []
        finished = False
        next_disconnect_check = self._clock()
        try:
            while True:
                event = await process.next_event(timeout=self.tick)
                now = self._clock()

                if event is not None:
                    if event.kind == RecordKind.CONTENT_DELTA:
                        timers.content(now)
                        if event.text:
                            text_parts.append(event.text)
                            if ctx.stream:
                                ctx.content_delivered = True
                                yield _Text(text=event.text, model=model)

                    elif event.kind == RecordKind.ASSISTANT_MESSAGE:
                        timers.activity(now)
                        if event.model:
                            model = event.model

                    elif event.kind == RecordKind.RESULT:
                        if event.is_lost_conversation:
                            if ctx.content_delivered:
                                raise CompletionError(
                                    ErrorKind.LOST_CONVERSATION,
                                    "The agent lost this conversation mid-response",
                                )
                            process.kill()
                            finished = True
                            yield _LostConversation()
                            return
                        if event.is_error:
                            detail = "; ".join(event.errors) or event.result or "unknown error"
                            raise CompletionError(
                                ErrorKind.AGENT_ERROR,
                                f"Agent reported an error: {detail}",
                                usage=event.usage,
                            )
                        finished = True
                        await self._succeed(ctx, event)
                        yield _Done(result=event, model=model, text="".join(text_parts))
                        return

                    elif event.kind == RecordKind.PROCESS_ERROR:
                        raise CompletionError(ErrorKind.PROCESS_TIMEOUT, event.message, status_code=504)

                    elif event.kind == RecordKind.PROCESS_CLOSED:
                        finished = True
                        raise CompletionError(
                            ErrorKind.ABNORMAL_EXIT,
                            f"Agent exited with code {event.exit_code} without a result",
                        )

                    else:
                        timers.activity(now)

                # Evaluated on every pass: a steady stream of records must not starve them
                expired = timers.expired(now)
                if expired is not None:
                    process.kill()
                    raise CompletionError(expired, self._timeout_message(expired), status_code=504)

                if is_disconnected is not None and now >= next_disconnect_check:
                    next_disconnect_check = now + self.tick
                    if await is_disconnected():
                        raise CompletionError(
                            ErrorKind.CANCELLED, "Client disconnected", status_code=499
                        )
        finally:
            # A process that delivered its result is left to exit on its own
            if not finished:
                process.kill()

    # -----------------------------------------------------------------
    # Terminal outcomes
    # -----------------------------------------------------------------

    async def _succeed(self, ctx: ChatContext, result: ResultRecord) -> None:
        if not ctx.resolution.resolve(RequestState.SUCCEEDED):
            return
        ctx.state = RequestState.SUCCEEDED
        await self.store.update_message_count(ctx.conversation_id, ctx.message_count)
        latency_ms = int((self._clock() - ctx.started_at) * 1000)
        self.stats.record_success(
            latency_ms=latency_ms,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )
        logger.info(
            "request_succeeded",
            request_id=ctx.request_id,
            conversation_id=ctx.conversation_id[:40],
            attempts=ctx.attempts,
            latency_ms=latency_ms,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )

    async def _fail(self, ctx: ChatContext, error: CompletionError) -> None:
        if not ctx.resolution.resolve(RequestState.FAILED):
            return
        ctx.state = RequestState.FAILED
        if error.kind in COMMITTED_FAILURE_KINDS:
            # Keep the conversation: a reset would force a full replay next time
            await self.store.update_message_count(ctx.conversation_id, ctx.message_count)
        usage = error.usage or TokenUsage()
        self.stats.record_error(
            error.kind,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        logger.warning(
            "request_failed",
            request_id=ctx.request_id,
            conversation_id=ctx.conversation_id[:40],
            kind=error.kind.value,
            error=error.message,
            attempts=ctx.attempts,
        )

    def _timeout_message(self, kind: ErrorKind) -> str:
        if kind == ErrorKind.FIRST_TOKEN_TIMEOUT:
            lead = f"The agent did not start responding within {self.first_token_timeout:g}s."
        elif kind == ErrorKind.INACTIVITY_TIMEOUT:
            lead = f"The agent stopped responding for {self.inactivity_timeout:g}s."
        else:
            lead = f"The agent did not finish within {self.overall_timeout:g}s."
        return f"{lead} Your conversation was kept; please try again."

    # -----------------------------------------------------------------
    # Background maintenance
    # -----------------------------------------------------------------

    async def evict_expired(self, ttl_seconds: float) -> int:
        """Evict idle conversations, never touching ones with a request in flight."""
        return await self.store.evict_expired(ttl_seconds, exclude=self.admission.in_flight)

    async def start_eviction_loop(
        self,
        ttl_seconds: float,
        interval_seconds: float,
    ) -> asyncio.Task[None]:
        """Start a background task that periodically evicts idle conversations.

        The task runs until cancelled (typically at application shutdown).

        Args:
            ttl_seconds: Inactivity age after which a conversation is removed.
            interval_seconds: Seconds between eviction rounds.

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """

        async def _loop() -> None:
            logger.info(
                "eviction_loop_started",
                ttl_seconds=ttl_seconds,
                interval_seconds=interval_seconds,
            )
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.evict_expired(ttl_seconds)
                except asyncio.CancelledError:
                    logger.info("eviction_loop_stopped")
                    return
                except Exception as e:
                    logger.error("eviction_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="conversation_eviction")

    async def cleanup_all(self) -> None:
        """Kill every running agent process. Called at shutdown."""
        contexts = list(self._in_flight.values())
        logger.info("cleanup_all_start", in_flight=len(contexts))
        for ctx in contexts:
            if ctx.process is not None:
                ctx.process.kill()
        logger.info("cleanup_all_complete")


def _usage(result: ResultRecord) -> CompletionUsage:
    return CompletionUsage(
        prompt_tokens=result.usage.input_tokens,
        completion_tokens=result.usage.output_tokens,
        total_tokens=result.usage.total_tokens,
    )

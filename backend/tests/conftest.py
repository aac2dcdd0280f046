"""Shared test fixtures for backend tests.

Provides a scripted fake agent process, record factories, and fresh
continuity store / admission / stats instances so tests never spawn the real
agent executable.
"""

import asyncio
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from events.parser import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from admission import AdmissionController, reset_admission_controller  # noqa: E402
from agents.supervisor import AgentRunOptions  # noqa: E402
from events.types import (  # noqa: E402
    LOST_CONVERSATION_MARKER,
    AssistantMessage,
    ContentDelta,
    OtherRecord,
    ProcessClosed,
    ProcessError,
    ResultRecord,
    SupervisorEvent,
    TokenUsage,
)
from metrics import UsageStats  # noqa: E402
from models.database import ConversationStore  # noqa: E402
from orchestrator import Orchestrator  # noqa: E402

FAKE_AGENT = Path(__file__).resolve().parent / "fixtures" / "fake_agent.py"

# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------


def delta(text: str) -> ContentDelta:
    return ContentDelta(text=text)


def assistant(model: str = "claude-sonnet-4-5-20250929", text: str = "") -> AssistantMessage:
    return AssistantMessage(model=model, text=text)


def result(
    text: str = "Hello!",
    *,
    input_tokens: int = 10,
    output_tokens: int = 5,
    is_error: bool = False,
    errors: list[str] | None = None,
) -> ResultRecord:
    return ResultRecord(
        is_error=is_error,
        subtype="error_during_execution" if is_error else "success",
        result=text,
        errors=errors or [],
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def lost_conversation() -> ResultRecord:
    return result(
        "",
        is_error=True,
        errors=[f"{LOST_CONVERSATION_MARKER} with session ID: 1234"],
        input_tokens=0,
        output_tokens=0,
    )


def other(record_type: str = "system") -> OtherRecord:
    return OtherRecord(record_type=record_type, payload={"type": record_type})


def closed(exit_code: int = 0) -> ProcessClosed:
    return ProcessClosed(exit_code=exit_code)


def hard_timeout() -> ProcessError:
    return ProcessError(reason="timeout", message="Agent timed out after 900s")


# Script entries: an event, a float (sleep that many seconds), or HANG
HANG = object()


# ---------------------------------------------------------------------------
# Fake agent process
# ---------------------------------------------------------------------------


class FakeAgentProcess:
    """Stand-in for ``AgentProcess`` that replays a script of events."""

    def __init__(self, script: list[Any], start_error: Exception | None = None) -> None:
        self.script = list(script)
        self.start_error = start_error
        self.prompt: str | None = None
        self.options: AgentRunOptions | None = None
        self.killed = False
        self._events: asyncio.Queue[SupervisorEvent] = asyncio.Queue()
        self._feeder: asyncio.Task[None] | None = None

    async def start(self, prompt: str, options: AgentRunOptions) -> None:
        self.prompt = prompt
        self.options = options
        if self.start_error is not None:
            raise self.start_error
        self._feeder = asyncio.create_task(self._feed())

    async def _feed(self) -> None:
        for item in self.script:
            if item is HANG:
                await asyncio.Event().wait()
            elif isinstance(item, (int, float)):
                await asyncio.sleep(item)
            else:
                self._events.put_nowait(item)

    async def next_event(self, timeout: float | None = None) -> SupervisorEvent | None:
        try:
            return await asyncio.wait_for(self._events.get(), timeout)
        except TimeoutError:
            return None

    def kill(self, *_: Any) -> None:
        self.killed = True
        if self._feeder is not None:
            self._feeder.cancel()


class FakeAgentFactory:
    """Hands out one scripted ``FakeAgentProcess`` per attempt, in order."""

    def __init__(self, *scripts: list[Any], start_error: Exception | None = None) -> None:
        self._scripts = list(scripts)
        self.start_error = start_error
        self.processes: list[FakeAgentProcess] = []

    def add(self, *scripts: list[Any]) -> None:
        self._scripts.extend(scripts)

    def __call__(self) -> FakeAgentProcess:
        script = self._scripts.pop(0) if self._scripts else [closed(1)]
        process = FakeAgentProcess(script, start_error=self.start_error)
        self.processes.append(process)
        return process


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singletons() -> None:
    reset_admission_controller()


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "conversations.db")


@pytest.fixture()
def store(db_path: str) -> ConversationStore:
    return ConversationStore(db_path)


@pytest.fixture()
def admission() -> AdmissionController:
    return AdmissionController(max_concurrent=2)


@pytest.fixture()
def stats() -> UsageStats:
    return UsageStats()


@pytest.fixture()
def make_orchestrator(
    store: ConversationStore,
    admission: AdmissionController,
    stats: UsageStats,
) -> Callable[..., Orchestrator]:
    """Build an Orchestrator around a fake agent with short timers."""

    def _make(factory: FakeAgentFactory, **overrides: Any) -> Orchestrator:
        options: dict[str, Any] = {
            "first_token_timeout_seconds": 0.2,
            "inactivity_timeout_seconds": 0.2,
            "tick_seconds": 0.01,
        }
        options.update(overrides)
        return Orchestrator(store, admission, stats, process_factory=factory, **options)

    return _make

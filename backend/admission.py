"""Admission control for agent processes.

This module bounds how many agent processes run at once and keeps two
requests for the same conversation from ever running concurrently.

- Slots: at most ``max_concurrent`` holders; further callers wait in FIFO
  order, and once ``max_queue_depth`` callers are already waiting, new
  callers are rejected immediately with ``QueueFullError``.
- Conversation guard: a second request for a conversation that already has
  one in flight is rejected with ``ConversationBusyError`` instead of being
  queued, because both would race to commit the conversation's message count.

Usage:
    >>> from admission import get_admission_controller
    >>> controller = get_admission_controller()
    >>> admission = await controller.admit("usr_alice")
    >>> try:
    ...     ...  # run the agent
    ... finally:
    ...     admission.release()
"""

import asyncio
from collections import deque

import structlog

from config import settings

logger = structlog.get_logger(__name__)


class QueueFullError(Exception):
    """Raised when the wait queue is at its ceiling."""


class ConversationBusyError(Exception):
    """Raised when a conversation already has a request in flight."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} already has a request in flight")
        self.conversation_id = conversation_id


class Admission:
    """Permission to run one request: a slot plus the conversation claim.

    ``release()`` is idempotent so it can be called from every exit path.
    """

    def __init__(self, controller: "AdmissionController", conversation_id: str) -> None:
        self._controller = controller
        self.conversation_id = conversation_id
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Return the slot and drop the conversation claim."""
        if self._released:
            return
        self._released = True
        self._controller.release()
        self._controller.unclaim(self.conversation_id)


class AdmissionController:
    """Bounded-concurrency gate with a per-conversation in-flight guard.

    All state is touched only from the event loop thread and never across a
    suspension point, so no lock is needed.

    Attributes:
        max_concurrent: Maximum slots held at once.
        max_queue_depth: Maximum callers waiting for a slot.
    """

    def __init__(
        self,
        max_concurrent: int = 4,
        max_queue_depth: int | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            max_concurrent: Maximum concurrent slot holders.
            max_queue_depth: Waiting callers allowed before rejecting
                (defaults to twice ``max_concurrent``).
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.max_queue_depth = (
            max_queue_depth if max_queue_depth is not None else max_concurrent * 2
        )
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._in_flight: set[str] = set()

        logger.info(
            "admission_controller_initialized",
            max_concurrent=self.max_concurrent,
            max_queue_depth=self.max_queue_depth,
        )

    @property
    def active(self) -> int:
        """Slots currently held."""
        return self._active

    @property
    def queued(self) -> int:
        """Callers currently waiting for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def in_flight(self) -> frozenset[str]:
        """Conversation identities with a request in flight."""
        return frozenset(self._in_flight)

    # -----------------------------------------------------------------
    # Slots
    # -----------------------------------------------------------------

    async def acquire(self) -> None:
        """Take a slot, waiting in FIFO order if none is free.

        Raises:
            QueueFullError: If ``max_queue_depth`` callers are already waiting.
        """
        if self._active < self.max_concurrent and not self.queued:
            self._active += 1
            return

        if self.queued >= self.max_queue_depth:
            logger.warning(
                "admission_queue_full",
                active=self._active,
                queued=self.queued,
            )
            raise QueueFullError(
                "Too many concurrent requests. Try again shortly."
            )

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("admission_queued", position=self.queued)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.cancelled():
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
            else:
                # The slot was handed over just before cancellation; pass it on.
                self.release()
            raise

    def release(self) -> None:
        """Free a slot, handing it straight to the next waiter if any.

        A handoff keeps the active count unchanged.
        """
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._active > 0:
            self._active -= 1

    # -----------------------------------------------------------------
    # Conversation guard
    # -----------------------------------------------------------------

    def claim(self, conversation_id: str) -> None:
        """Mark a conversation as in flight.

        Raises:
            ConversationBusyError: If it already is.
        """
        if conversation_id in self._in_flight:
            logger.info("admission_conversation_busy", conversation_id=conversation_id[:40])
            raise ConversationBusyError(conversation_id)
        self._in_flight.add(conversation_id)

    def unclaim(self, conversation_id: str) -> None:
        """Drop the in-flight mark for a conversation."""
        self._in_flight.discard(conversation_id)

    async def admit(self, conversation_id: str) -> Admission:
        """Claim the conversation, then wait for a slot.

        Raises:
            ConversationBusyError: If the conversation is already in flight.
            QueueFullError: If the wait queue is full.
        """
        self.claim(conversation_id)
        try:
            await self.acquire()
        except BaseException:
            self.unclaim(conversation_id)
            raise
        return Admission(self, conversation_id)

    def get_status(self) -> dict[str, int]:
        """Return current admission status for diagnostics."""
        return {
            "active": self._active,
            "queued": self.queued,
            "max_concurrent": self.max_concurrent,
            "max_queue_depth": self.max_queue_depth,
            "in_flight_conversations": len(self._in_flight),
        }


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_admission_controller: AdmissionController | None = None


def get_admission_controller() -> AdmissionController:
    """Get the global AdmissionController singleton.

    The singleton is created on first call using values from ``config.settings``.

    Returns:
        The global AdmissionController instance.
    """
    global _admission_controller
    if _admission_controller is None:
        _admission_controller = AdmissionController(
            max_concurrent=settings.max_concurrent,
            max_queue_depth=settings.effective_queue_depth,
        )
    return _admission_controller


def reset_admission_controller() -> None:
    """Reset the global AdmissionController singleton.

    Primarily useful for testing.
    """
    global _admission_controller
    _admission_controller = None

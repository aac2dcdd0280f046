"""Tests for admission.py -- concurrency slots and the conversation guard."""

import asyncio

import pytest

from admission import (
    AdmissionController,
    ConversationBusyError,
    QueueFullError,
    get_admission_controller,
    reset_admission_controller,
)


async def _settle() -> None:
    """Let every runnable task advance to its next suspension point."""
    for _ in range(5):
        await asyncio.sleep(0)


# =========================================================================
# Slots
# =========================================================================


class TestSlots:
    async def test_fast_path_until_limit(self) -> None:
        controller = AdmissionController(max_concurrent=2)
        await controller.acquire()
        await controller.acquire()
        assert controller.active == 2
        assert controller.queued == 0

    async def test_waiters_resume_in_fifo_order(self) -> None:
        controller = AdmissionController(max_concurrent=2)
        await controller.acquire()
        await controller.acquire()

        order: list[int] = []

        async def waiter(n: int) -> None:
            await controller.acquire()
            order.append(n)

        tasks = [asyncio.create_task(waiter(n)) for n in range(3)]
        await _settle()
        assert controller.queued == 3

        for _ in range(3):
            controller.release()
            await _settle()

        assert order == [0, 1, 2]
        assert controller.active == 2
        await asyncio.gather(*tasks)

    async def test_handoff_keeps_active_count(self) -> None:
        controller = AdmissionController(max_concurrent=1)
        await controller.acquire()
        task = asyncio.create_task(controller.acquire())
        await _settle()

        controller.release()
        await task

        assert controller.active == 1
        controller.release()
        assert controller.active == 0

    async def test_queue_ceiling_rejects_immediately(self) -> None:
        controller = AdmissionController(max_concurrent=2)
        await controller.acquire()
        await controller.acquire()
        tasks = [asyncio.create_task(controller.acquire()) for _ in range(4)]
        await _settle()
        assert controller.queued == 4

        with pytest.raises(QueueFullError):
            await controller.acquire()

        for _ in range(6):
            controller.release()
            await _settle()
        await asyncio.gather(*tasks)

    async def test_cancelled_waiter_leaves_queue(self) -> None:
        controller = AdmissionController(max_concurrent=1)
        await controller.acquire()
        task = asyncio.create_task(controller.acquire())
        await _settle()

        task.cancel()
        await _settle()

        assert task.cancelled()
        assert controller.queued == 0
        controller.release()
        assert controller.active == 0

    async def test_release_never_goes_negative(self) -> None:
        controller = AdmissionController(max_concurrent=1)
        controller.release()
        assert controller.active == 0

    def test_rejects_zero_concurrency(self) -> None:
        with pytest.raises(ValueError):
            AdmissionController(max_concurrent=0)


# =========================================================================
# Conversation guard
# =========================================================================


class TestConversationGuard:
    async def test_second_admit_for_same_conversation_is_busy(self) -> None:
        controller = AdmissionController(max_concurrent=4)
        admission = await controller.admit("usr_alice")

        with pytest.raises(ConversationBusyError) as exc_info:
            await controller.admit("usr_alice")

        assert exc_info.value.conversation_id == "usr_alice"
        assert controller.active == 1
        admission.release()

    async def test_release_is_idempotent(self) -> None:
        controller = AdmissionController(max_concurrent=2)
        first = await controller.admit("usr_alice")
        second = await controller.admit("usr_bob")

        first.release()
        first.release()

        assert controller.active == 1
        assert controller.in_flight == frozenset({"usr_bob"})
        second.release()
        assert controller.active == 0

    async def test_conversation_free_after_release(self) -> None:
        controller = AdmissionController(max_concurrent=1)
        admission = await controller.admit("usr_alice")
        admission.release()

        again = await controller.admit("usr_alice")
        assert again.released is False
        again.release()

    async def test_rejected_admit_drops_claim(self) -> None:
        controller = AdmissionController(max_concurrent=1, max_queue_depth=0)
        held = await controller.admit("usr_alice")

        with pytest.raises(QueueFullError):
            await controller.admit("usr_bob")

        assert controller.in_flight == frozenset({"usr_alice"})
        held.release()

    async def test_status(self) -> None:
        controller = AdmissionController(max_concurrent=3)
        admission = await controller.admit("usr_alice")
        assert controller.get_status() == {
            "active": 1,
            "queued": 0,
            "max_concurrent": 3,
            "max_queue_depth": 6,
            "in_flight_conversations": 1,
        }
        admission.release()


class TestSingleton:
    def test_singleton_and_reset(self) -> None:
        first = get_admission_controller()
        assert get_admission_controller() is first
        reset_admission_controller()
        assert get_admission_controller() is not first

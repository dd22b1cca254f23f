"""Tests for the event bus and the background task helpers."""

import asyncio
import threading

import pytest

from meshlink.bus.events import CoreEvent, EventKind
from meshlink.bus.queue import MessageBus
from meshlink.errors import BusyError, LowpanError, MeshLinkError, NoInterfaceError
from meshlink.tasks import cancel_and_wait, supervised_task


def _state(source, state):
    return CoreEvent(kind=EventKind.LINK_STATE, source=source, state=state)


# ---------------------------------------------------------------------------
# MessageBus
# ---------------------------------------------------------------------------


class TestMessageBus:

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        bus = MessageBus()
        sub = bus.subscribe()
        for s in ("idle", "connecting", "connected", "lost"):
            bus.publish(_state("link", s))
        assert [e.state for e in sub.drain()] == ["idle", "connecting", "connected", "lost"]

    @pytest.mark.asyncio
    async def test_no_coalescing(self):
        bus = MessageBus()
        sub = bus.subscribe(EventKind.VALUE_RECEIVED)
        for _ in range(5):
            bus.publish(CoreEvent(kind=EventKind.VALUE_RECEIVED, source="link", value=3))
        assert sub.pending == 5

    @pytest.mark.asyncio
    async def test_kind_filter(self):
        bus = MessageBus()
        sub = bus.subscribe(EventKind.ERROR)
        bus.publish(_state("link", "idle"))
        bus.publish(CoreEvent(kind=EventKind.ERROR, source="link", detail="boom"))
        events = sub.drain()
        assert len(events) == 1
        assert events[0].detail == "boom"

    @pytest.mark.asyncio
    async def test_fan_out(self):
        bus = MessageBus()
        a = bus.subscribe()
        b = bus.subscribe()
        bus.publish(_state("link", "idle"))
        assert a.pending == 1
        assert b.pending == 1

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        bus = MessageBus()
        sub = bus.subscribe()
        assert bus.subscriber_count == 1
        sub.close()
        assert bus.subscriber_count == 0
        bus.publish(_state("link", "idle"))
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_publish_from_other_thread(self):
        bus = MessageBus()
        sub = bus.subscribe()
        t = threading.Thread(target=bus.publish, args=(_state("attachment", "attached"),))
        t.start()
        t.join()
        event = await asyncio.wait_for(sub.get(), timeout=1.0)
        assert event.state == "attached"

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        bus = MessageBus()
        sub = bus.subscribe()
        bus.publish(_state("link", "idle"))
        bus.publish(_state("link", "connecting"))
        seen = []
        async for event in sub:
            seen.append(event.state)
            if len(seen) == 2:
                break
        assert seen == ["idle", "connecting"]

    def test_get_nowait_empty(self):
        async def _run():
            sub = MessageBus().subscribe()
            with pytest.raises(asyncio.QueueEmpty):
                sub.get_nowait()

        asyncio.run(_run())


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:

    def test_hierarchy(self):
        assert issubclass(NoInterfaceError, LowpanError)
        assert issubclass(BusyError, LowpanError)
        assert issubclass(LowpanError, MeshLinkError)

    def test_default_messages(self):
        assert str(NoInterfaceError()) == "no LoWPAN interface"
        assert str(BusyError("already scanning")) == "already scanning"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TestTasks:

    @pytest.mark.asyncio
    async def test_supervised_task_failure_is_retrieved(self):
        async def boom():
            raise RuntimeError("boom")

        task = supervised_task(boom(), name="boom")
        await asyncio.wait({task})
        assert isinstance(task.exception(), RuntimeError)

    @pytest.mark.asyncio
    async def test_cancel_and_wait(self):
        task = supervised_task(asyncio.sleep(10), name="sleeper")
        await cancel_and_wait(task)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_and_wait_none(self):
        await cancel_and_wait(None)

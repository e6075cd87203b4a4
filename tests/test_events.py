"""Tests for event fan-out and transport ownership."""

import asyncio

import pytest

from device_flasher.core.events import EventHub, LogEvent, Severity
from device_flasher.core.ownership import TransportOwnership


class TestEventHub:
    """Publish/subscribe with bounded per-subscriber buffers."""

    async def test_delivery_order(self):
        """Every subscriber sees items in publication order."""
        hub = EventHub()
        a = hub.subscribe()
        b = hub.subscribe()
        for i in range(5):
            hub.publish(i)
        assert a.pending() == [0, 1, 2, 3, 4]
        assert b.pending() == [0, 1, 2, 3, 4]

    async def test_unsubscribe_stops_delivery(self):
        """Nothing reaches a subscription after unsubscribe."""
        hub = EventHub()
        sub = hub.subscribe()
        hub.publish("first")
        hub.unsubscribe(sub)
        hub.publish("second")
        assert sub.pending() == ["first"]
        assert sub.closed

    async def test_slow_subscriber_drops_oldest(self):
        """A full buffer drops its oldest items without affecting others."""
        hub = EventHub()
        slow = hub.subscribe(maxsize=3)
        fast = hub.subscribe(maxsize=100)
        for i in range(10):
            hub.publish(i)
        assert slow.pending() == [7, 8, 9]
        assert slow.dropped == 7
        assert fast.pending() == list(range(10))
        assert fast.dropped == 0

    async def test_handler_delivery(self):
        """Handlers run in their own task, in order."""
        hub = EventHub()
        received = []
        sub = hub.subscribe(received.append)
        for i in range(3):
            hub.publish(i)
        await asyncio.sleep(0.01)
        assert received == [0, 1, 2]
        hub.unsubscribe(sub)
        hub.publish(3)
        await asyncio.sleep(0.01)
        assert received == [0, 1, 2]

    async def test_async_handler(self):
        """Coroutine handlers are awaited."""
        hub = EventHub()
        received = []

        async def handler(item):
            await asyncio.sleep(0)
            received.append(item)

        hub.subscribe(handler)
        hub.publish("x")
        await asyncio.sleep(0.01)
        assert received == ["x"]

    async def test_failing_handler_keeps_running(self):
        """A raising handler does not stop later deliveries."""
        hub = EventHub()
        received = []

        def handler(item):
            if item == 1:
                raise RuntimeError("bad item")
            received.append(item)

        hub.subscribe(handler)
        for i in range(3):
            hub.publish(i)
        await asyncio.sleep(0.01)
        assert received == [0, 2]

    async def test_iteration_ends_after_close(self):
        """Closed subscriptions drain, then stop iterating."""
        hub = EventHub()
        sub = hub.subscribe()
        hub.publish("a")
        hub.publish("b")
        hub.close()
        assert [item async for item in sub] == ["a", "b"]

    async def test_get_waits_for_publish(self):
        """get() suspends until an item arrives."""
        hub = EventHub()
        sub = hub.subscribe()
        waiter = asyncio.ensure_future(sub.get())
        await asyncio.sleep(0)
        assert not waiter.done()
        hub.publish(LogEvent(text="hi", severity=Severity.SUCCESS))
        event = await asyncio.wait_for(waiter, timeout=1)
        assert event.text == "hi"

    def test_invalid_maxsize(self):
        """Buffers must hold at least one item."""
        with pytest.raises(ValueError):
            EventHub().subscribe(maxsize=0)


class TestTransportOwnership:
    """Only one holder at a time."""

    async def test_exclusive(self):
        """A second holder waits until the first releases."""
        ownership = TransportOwnership()
        order = []

        async def hold(name, delay):
            async with ownership.hold(name):
                order.append(f"{name}+")
                await asyncio.sleep(delay)
                order.append(f"{name}-")

        await asyncio.gather(hold("monitor", 0.02), hold("orchestrator", 0))
        assert order == ["monitor+", "monitor-", "orchestrator+", "orchestrator-"]
        assert list(ownership.history) == ["monitor", "orchestrator"]
        assert ownership.owner is None
        assert not ownership.held

    async def test_released_on_error(self):
        """The token is released when the holder raises."""
        ownership = TransportOwnership()
        with pytest.raises(RuntimeError):
            async with ownership.hold("orchestrator"):
                raise RuntimeError("boom")
        assert not ownership.held

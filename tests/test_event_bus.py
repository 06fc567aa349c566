from __future__ import annotations

import asyncio

import pytest

from ccrouter.adapters.event_bus import Broadcaster, LogStream


def test_publish_reaches_every_listener():
    bus = Broadcaster()
    seen: list[tuple[str, object]] = []
    bus.subscribe("request:start", lambda p: seen.append(("a", p)))
    bus.subscribe("request:start", lambda p: seen.append(("b", p)))
    bus.subscribe("request:end", lambda p: seen.append(("c", p)))

    bus.publish("request:start", {"id": 1})
    assert seen == [("a", {"id": 1}), ("b", {"id": 1})]


def test_failing_listener_is_isolated():
    bus = Broadcaster()
    seen = []

    def _boom(payload):
        raise ValueError("nope")

    bus.subscribe("metrics:update", _boom)
    bus.subscribe("metrics:update", seen.append)
    bus.publish("metrics:update", 5)
    assert seen == [5]


def test_unsubscribe_and_counts():
    bus = Broadcaster()

    def listener(payload):
        return None

    bus.subscribe("x", listener)
    bus.subscribe("y", listener)
    assert bus.listener_count() == 2
    assert bus.listener_count("x") == 1

    bus.unsubscribe("x", listener)
    bus.unsubscribe("x", listener)
    bus.unsubscribe("missing", listener)
    assert bus.listener_count("x") == 0
    assert bus.listener_count() == 1


def test_stream_filters_by_session():
    bus = Broadcaster()
    stream = LogStream(bus, session_id="s1")
    stream.listen("request:start", "log")
    stream.listen("logs:cleared", "cleared")

    bus.publish("request:start", {"sessionId": "s2"})
    bus.publish("request:start", {"sessionId": "s1", "id": "r1"})
    bus.publish("logs:cleared", "s2")
    bus.publish("logs:cleared", None)

    assert stream.get_nowait() == {"type": "log", "data": {"sessionId": "s1", "id": "r1"}}
    assert stream.get_nowait() == {"type": "cleared", "data": None}
    assert stream.get_nowait() is None


def test_full_queue_drops_frames():
    bus = Broadcaster()
    stream = LogStream(bus, maxsize=1)
    stream.put("log", 1)
    stream.put("log", 2)
    assert stream.get_nowait() == {"type": "log", "data": 1}
    assert stream.get_nowait() is None


def test_close_is_idempotent_and_drains():
    bus = Broadcaster()
    stream = LogStream(bus)
    stream.listen("request:start", "log")
    bus.publish("request:start", {"sessionId": "s1"})

    stream.close()
    stream.close()
    assert stream.closed
    assert bus.listener_count() == 0
    assert stream.get_nowait() is None


@pytest.mark.asyncio
async def test_frames_iterator_stops_after_close():
    bus = Broadcaster()
    stream = LogStream(bus)
    stream.listen("request:start", "log")

    received = []

    async def _consume():
        async for frame in stream.frames(poll_timeout=0.01):
            received.append(frame)

    task = asyncio.create_task(_consume())
    bus.publish("request:start", {"id": "a"})
    await asyncio.sleep(0.05)
    stream.close()
    await asyncio.wait_for(task, timeout=1.0)

    assert received == [{"type": "log", "data": {"id": "a"}}]

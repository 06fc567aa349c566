"""Publish/subscribe channel between the monitoring service and live viewers.

The monitoring service publishes synchronously from request handlers.
Each viewer owns a LogStream: a bounded queue fed by listeners that the
stream registers on the Broadcaster and removes again on close().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class Broadcaster:
    """Synchronous fan-out of named events to registered listeners."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event_type]

    def publish(self, event_type: str, payload: Any = None) -> None:
        """Deliver *payload* to every listener of *event_type*.

        A failing listener is logged and skipped.
        """
        for listener in list(self._listeners.get(event_type, ())):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for %s failed", event_type)

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, ()))
        return sum(len(v) for v in self._listeners.values())


class LogStream:
    """One subscriber's view of the broadcast channel.

    Frames are dicts ``{"type": ..., "data": ...}``. Frames queued before
    ``attach`` is called are delivered first.
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        session_id: str | None = None,
        maxsize: int = 5000,
    ) -> None:
        self._broadcaster = broadcaster
        self._session_id = session_id
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._registered: list[tuple[str, Listener]] = []
        self._closed = False

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, frame_type: str, data: Any) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait({"type": frame_type, "data": data})
        except asyncio.QueueFull:
            logger.warning(
                "Log stream queue full, dropping %s frame (session=%s)",
                frame_type, self._session_id or "*",
            )

    def _matches(self, payload: Any) -> bool:
        if self._session_id is None:
            return True
        if isinstance(payload, dict):
            return payload.get("sessionId") == self._session_id
        return payload is None or payload == self._session_id

    def listen(self, event_type: str, frame_type: str) -> None:
        """Forward matching *event_type* payloads as *frame_type* frames."""
        def _forward(payload: Any) -> None:
            if self._matches(payload):
                self.put(frame_type, payload)

        self._broadcaster.subscribe(event_type, _forward)
        self._registered.append((event_type, _forward))

    def close(self) -> None:
        """Remove every listener this stream registered. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for event_type, listener in self._registered:
            self._broadcaster.unsubscribe(event_type, listener)
        self._registered.clear()
        while not self._queue.empty():
            self._queue.get_nowait()

    def get_nowait(self) -> dict[str, Any] | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next frame, or None on timeout."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def frames(self, poll_timeout: float = 0.5) -> AsyncIterator[dict[str, Any]]:
        """Yield frames as they arrive. Stops on close()."""
        while not self._closed:
            frame = await self.get(timeout=poll_timeout)
            if frame is not None and not self._closed:
                yield frame

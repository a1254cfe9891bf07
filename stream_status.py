"""Fan-out of session state changes to connected subscribers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import asyncio
import logging
import threading

from stream_registry import Purpose, SessionState


log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StatusEvent:
    camera_id: str
    purpose: Purpose
    state: SessionState
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict[str, Any]:
        """Wire record sent to UI clients."""
        return {
            "type": "stream_status",
            "cameraId": self.camera_id,
            "purpose": self.purpose.value,
            "status": self.state.value,
            "error": self.error,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


class Subscription:
    """Async iterator over events published after subscribing."""

    def __init__(self, publisher: StatusPublisher) -> None:
        self._publisher = publisher
        self._queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: StatusEvent) -> None:
        self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> StatusEvent:
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._publisher._unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StatusEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class StatusPublisher:
    """Best-effort broadcaster. publish() never blocks; no replay for late subscribers.

    Subscriber queues are unbounded. Call publish() and consume subscriptions
    from the event loop thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        with self._lock:
            self._subscribers.append(sub)
        log.debug("Status subscriber added (%d total)", self.subscriber_count)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        log.debug(
            "Status %s/%s -> %s%s",
            event.camera_id,
            event.purpose.value,
            event.state.value,
            f" ({event.error})" if event.error else "",
        )
        for sub in subscribers:
            try:
                sub._deliver(event)
            except Exception as e:
                log.warning("Dropping status subscriber after delivery failure: %s", e)
                sub.close()

"""Publish/subscribe channel with a bounded buffer per subscriber.

Watcher and queue publish lifecycle events here for monitoring. A slow
subscriber never blocks the publisher: once its buffer is full, further
events are dropped for that subscriber and counted in `dropped`.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)


class Subscription:
    def __init__(self, channel: "EventChannel", maxsize: int) -> None:
        self._channel = channel
        self._q: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: Event) -> bool:
        try:
            self._q.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def get(self, timeout: float | None = None) -> Event:
        """Block for the next event. Raises queue.Empty on timeout."""
        return self._q.get(timeout=timeout)

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                events.append(self._q.get_nowait())
            except queue.Empty:
                return events

    def pending(self) -> int:
        return self._q.qsize()

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    def __init__(self, name: str, buffer_size: int = 256) -> None:
        self.name = name
        self.buffer_size = buffer_size
        self._subs: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        sub = Subscription(self, maxsize or self.buffer_size)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def publish(self, kind: str, **payload: Any) -> Event:
        event = Event(kind=kind, payload=payload)
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            if not sub._offer(event):
                logger.warning(
                    f"[{self.name}] Subscriber buffer full, dropped '{kind}' event "
                    f"({sub.dropped} dropped so far)"
                )
        return event

"""Event sinks that receive serialized telemetry from a ThinkingTracker."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Protocol


class EventSink(Protocol):
    """Destination for serialized telemetry messages."""

    @property
    def is_open(self) -> bool:  # pragma: no cover - interface
        """Return False once the sink can no longer accept messages."""

    def send(self, message: str) -> None:  # pragma: no cover - interface
        """Push one serialized message."""


class CollectingSink:
    """Keeps every message in memory (CLI rendering and tests)."""

    def __init__(self) -> None:
        self.messages: List[str] = []
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    def send(self, message: str) -> None:
        self.messages.append(message)

    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(message) for message in self.messages]

    def close(self) -> None:
        self.closed = True


class BroadcastSink:
    """Fans messages out to asyncio queues, replaying history to late subscribers."""

    def __init__(self, history_limit: int = 500) -> None:
        self.history: List[Dict[str, Any]] = []
        self.subscribers: List[asyncio.Queue] = []
        self.history_limit = history_limit
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    def send(self, message: str) -> None:
        event = json.loads(message)
        self.history.append(event)
        if len(self.history) > self.history_limit:
            self.history = self.history[-self.history_limit :]
        for queue in list(self.subscribers):
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        for event in self.history:
            queue.put_nowait(event)
        if self.closed:
            queue.put_nowait({"type": "complete"})
            return queue
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)

    def close(self) -> None:
        self.closed = True
        for queue in list(self.subscribers):
            queue.put_nowait({"type": "complete"})

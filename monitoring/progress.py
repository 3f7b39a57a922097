#!/usr/bin/env python3
"""
Progress Bus - in-process fan-out of batch/session/captcha events.

Consumers (WebSocket clients, the CLI) subscribe and receive every event
published after they joined. Terminal batch events are retained so a client
that reconnects after a batch finished still learns it can download.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Progress event names pushed to consumers."""
    ITEM_STARTED = "item-started"
    ITEM_RETRY = "item-retry"
    ITEM_FINISHED = "item-finished"
    CHALLENGE_ISSUED = "challenge-issued"
    CHALLENGE_RESOLVED = "challenge-resolved"
    CHALLENGE_ERROR = "challenge-error"
    CHALLENGE_OBSOLETE = "challenge-obsolete"
    BATCH_COMPLETED = "batch-completed"
    BATCH_DEGRADED = "batch-degraded"
    BATCH_ERROR = "batch-error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.BATCH_COMPLETED, EventType.BATCH_DEGRADED, EventType.BATCH_ERROR)


@dataclass
class ProgressEvent:
    """A single progress notification."""
    type: EventType
    payload: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    @property
    def batch_id(self) -> Optional[str]:
        return self.payload.get("batch_id")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "timestamp": self.timestamp, **self.payload}


class Subscription:
    """Bounded event queue for one consumer. Oldest events drop when full."""

    def __init__(self, bus: "ProgressBus", maxsize: int = 1000):
        self._bus = bus
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, event: ProgressEvent):
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self):
        self._bus.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ProgressBus:
    """
    Publish/subscribe channel for progress events.

    Features:
    - Non-blocking publish (slow consumers lose their oldest events)
    - Replay of terminal batch events for reconnecting consumers
    - Short per-batch history for status endpoints
    """

    def __init__(self, history_size: int = 200):
        self.history_size = history_size
        self._subscribers: Set[Subscription] = set()
        self._terminal: Dict[str, ProgressEvent] = {}
        self._history: Dict[str, Deque[ProgressEvent]] = {}
        self.stats = {
            "published": 0,
            "delivered": 0,
        }

    def subscribe(self, maxsize: int = 1000) -> Subscription:
        sub = Subscription(self, maxsize=maxsize)
        self._subscribers.add(sub)
        logger.debug(f"[Progress] Subscriber joined ({len(self._subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription):
        self._subscribers.discard(sub)
        logger.debug(f"[Progress] Subscriber left ({len(self._subscribers)} total)")

    def publish(self, event_type: EventType, **payload) -> ProgressEvent:
        """Fan an event out to every subscriber."""
        event = ProgressEvent(type=event_type, payload=payload)
        self.stats["published"] += 1

        batch_id = event.batch_id
        if batch_id:
            history = self._history.setdefault(batch_id, deque(maxlen=self.history_size))
            history.append(event)
            if event_type.is_terminal:
                self._terminal[batch_id] = event

        for sub in list(self._subscribers):
            sub.put(event)
            self.stats["delivered"] += 1

        return event

    def replay(self) -> List[ProgressEvent]:
        """Terminal events of finished batches, oldest first."""
        return sorted(self._terminal.values(), key=lambda e: e.timestamp)

    def terminal_event(self, batch_id: str) -> Optional[ProgressEvent]:
        return self._terminal.get(batch_id)

    def history(self, batch_id: str) -> List[ProgressEvent]:
        return list(self._history.get(batch_id, ()))

    def forget(self, batch_id: str):
        """Drop retained events of a batch that has been cleaned up."""
        self._terminal.pop(batch_id, None)
        self._history.pop(batch_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

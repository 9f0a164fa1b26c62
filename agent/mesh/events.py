"""
Outbound event channel for mesh observers (logging, indexing, audit).

Publishing never blocks and never waits on an observer: each event is kept
in a bounded history and offered to every subscriber queue. A subscriber
that falls behind loses events rather than stalling the mesh.
"""
import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AGENT_REGISTERED = "agent.registered"
    AGENT_UPDATED = "agent.updated"
    AGENT_REMOVED = "agent.removed"
    AGENT_MIRRORED = "agent.mirrored"
    PATHWAY_ESTABLISHED = "pathway.established"
    PATHWAY_USAGE_RECORDED = "pathway.usage_recorded"
    PATHWAY_STRENGTH_UPDATED = "pathway.strength_updated"
    PATHWAY_TOKENIZED = "pathway.tokenized"
    PATHWAY_MINT_FAILED = "pathway.mint_failed"
    PATHWAY_STRENGTH_SYNCED = "pathway.strength_synced"


@dataclass
class MeshEvent:
    type: EventType
    payload: dict
    timestamp: float = field(default_factory=time.time)
    sequence: int = 0

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }


class Subscription:
    """Async iterator over the events published after subscribing."""

    def __init__(self, channel: "EventChannel", maxsize: int, types: Optional[set] = None):
        self._channel = channel
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.types = types
        self.dropped = 0
        self.closed = False

    def offer(self, event: MeshEvent) -> None:
        if self.types and event.type not in self.types:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Subscriber queue full, dropped {event.type.value} (total dropped={self.dropped})")

    async def get(self) -> MeshEvent:
        return await self.queue.get()

    def close(self) -> None:
        self.closed = True
        self._channel.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> MeshEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()


class EventChannel:
    """Fire-and-forget publisher with bounded history."""

    def __init__(self, history_size: int = 500, queue_size: int = 1000):
        self.history: deque = deque(maxlen=history_size)
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._sequence = 0
        self._lock = threading.Lock()

    def publish(self, event_type: EventType, payload: dict) -> MeshEvent:
        with self._lock:
            self._sequence += 1
            event = MeshEvent(type=EventType(event_type), payload=payload, sequence=self._sequence)
            self.history.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.offer(event)
        return event

    def subscribe(self, types: Optional[set] = None) -> Subscription:
        subscription = Subscription(self, self.queue_size, set(types) if types else None)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> list[MeshEvent]:
        with self._lock:
            events = list(self.history)
        if event_type is not None:
            events = [e for e in events if e.type == EventType(event_type)]
        return events[-limit:]


async def log_events(subscription: Subscription) -> None:
    """Observer task: write every mesh event to the log."""
    async for event in subscription:
        logger.info(f"[event #{event.sequence}] {event.type.value}: {event.payload}")

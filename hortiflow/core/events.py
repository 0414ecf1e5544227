"""HortiFlow Events — fire-and-forget fan-out of engine events."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

logger = logging.getLogger("hortiflow.events")


class EngineEvent(str, Enum):
    RULE_TRIGGERED = "RULE_TRIGGERED"
    RULE_ENGINE_STATUS = "RULE_ENGINE_STATUS"


@dataclass(frozen=True)
class Event:
    type: EngineEvent
    payload: dict
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {"type": self.type.value, "payload": self.payload, "emitted_at": self.emitted_at.isoformat()}


class EventChannel:
    """Bounded per-subscriber queues plus synchronous listeners.

    ``publish`` never blocks and never raises. A full subscriber queue drops its
    oldest event to make room; a failing listener is logged and skipped.
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._queues: list[asyncio.Queue] = []
        self._listeners: list[Callable[[Event], None]] = []
        self.published = 0
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Callable[[Event], None]) -> None:
        self._listeners.append(listener)

    def publish(self, event_type: EngineEvent, payload: dict) -> Event:
        event = Event(type=event_type, payload=payload)
        self.published += 1

        for queue in self._queues:
            if queue.full():
                queue.get_nowait()
                self.dropped += 1
            queue.put_nowait(event)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {event_type.value}: {e}", exc_info=True)

        return event

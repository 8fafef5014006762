"""
Live-update publishing.

Components that mutate tasks receive a publisher explicitly and emit at
the point of mutation. Delivery is best effort.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Set

logger = logging.getLogger(__name__)

TASK_UPDATED_EVENT = "jira_task_updated"


def team_scope(team_id: str) -> str:
    return f"team:{team_id}"


@dataclass(frozen=True)
class LiveEvent:
    scope: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Publisher(Protocol):
    def emit(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class NullPublisher:
    """Publisher that drops every event."""

    def emit(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Dropping {event} for {scope}")


class InMemoryBroadcaster:
    """
    Fan-out to in-process subscribers, one bounded queue each.

    A subscriber that falls behind loses events rather than blocking the
    publisher.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, scope: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers[scope].add(queue)
        return queue

    def unsubscribe(self, scope: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(scope)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            self._subscribers.pop(scope, None)

    def subscriber_count(self, scope: str) -> int:
        return len(self._subscribers.get(scope, ()))

    def emit(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        live_event = LiveEvent(scope=scope, name=event, payload=dict(payload))
        delivered = 0
        for queue in list(self._subscribers.get(scope, ())):
            try:
                queue.put_nowait(live_event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full for {scope}, dropping {event}")
        logger.debug(f"Emitted {event} to {delivered} subscriber(s) of {scope}")


class RecordingPublisher:
    """Publisher that keeps every event in order; used by tooling and tests."""

    def __init__(self):
        self.events: List[LiveEvent] = []

    def emit(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append(LiveEvent(scope=scope, name=event, payload=dict(payload)))

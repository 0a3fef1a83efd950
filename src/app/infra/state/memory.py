"""In-memory TTL state store and asyncio pub/sub."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, AsyncIterator, Callable, Dict, Optional

from src.app.domain.models import TaskState, can_transition
from src.app.infra.state.base import EventBus, TaskStateStore

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL = timedelta(days=8)
SUBSCRIBER_QUEUE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTaskStateStore(TaskStateStore):
    def __init__(
        self,
        default_ttl: timedelta = DEFAULT_STATE_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock or _utcnow
        self._states: Dict[str, tuple[TaskState, datetime]] = {}
        self._lock = Lock()

    def _current(self, task_id: str) -> Optional[TaskState]:
        entry = self._states.get(task_id)
        if entry is None:
            return None
        state, expires_at = entry
        if self._clock() >= expires_at:
            del self._states[task_id]
            return None
        return state

    def _store(self, state: TaskState, ttl: Optional[timedelta]) -> None:
        self._states[state.task_id] = (replace(state), self._clock() + (ttl or self.default_ttl))

    def get(self, task_id: str) -> Optional[TaskState]:
        with self._lock:
            state = self._current(task_id)
            return replace(state) if state else None

    def set(self, state: TaskState, ttl: Optional[timedelta] = None) -> None:
        with self._lock:
            self._store(state, ttl)

    def transition(
        self,
        state: TaskState,
        ttl: Optional[timedelta] = None,
        allow_missing: bool = False,
    ) -> bool:
        with self._lock:
            current = self._current(state.task_id)
            if current is None:
                if not allow_missing:
                    return False
            elif not can_transition(current.status, state.status):
                return False
            self._store(state, ttl)
            return True


class InMemoryEventBus(EventBus):
    """Each subscriber gets its own bounded queue; a full queue drops the event."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, list[asyncio.Queue]] = {}

    async def publish(self, thread_id: str, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(thread_id, ())):
            try:
                queue.put_nowait(dict(event))
            except asyncio.QueueFull:
                logger.warning("events.dropped thread=%s type=%s", thread_id, event.get("type"))

    async def subscribe(self, thread_id: str) -> AsyncIterator[dict[str, Any]]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.setdefault(thread_id, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            subscribers = self._subscribers.get(thread_id, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(thread_id, None)

    def subscriber_count(self, thread_id: str) -> int:
        return len(self._subscribers.get(thread_id, ()))

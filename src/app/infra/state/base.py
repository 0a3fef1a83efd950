# src/app/infra/state/base.py
"""
Abstract interfaces for the ephemeral side of the workflow: the TTL-bound
task state record and the progress pub/sub channel.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, AsyncIterator, Optional

from src.app.domain.models import TaskState


class TaskStateStore(ABC):
    """
    One TaskState per task, dropped after its TTL.

    Implementations:
    - InMemoryTaskStateStore
    - SupabaseTaskStateStore: table with an expires_at column
    """

    @abstractmethod
    def get(self, task_id: str) -> Optional[TaskState]:
        """
        Args:
            task_id: The task ID

        Returns:
            The current state, or None when unknown or lapsed
        """
        pass

    @abstractmethod
    def set(self, state: TaskState, ttl: Optional[timedelta] = None) -> None:
        """
        Unconditionally write a state, used when a task is created.

        Args:
            state: The state to store
            ttl: Lifetime, the store default when omitted
        """
        pass

    @abstractmethod
    def transition(
        self,
        state: TaskState,
        ttl: Optional[timedelta] = None,
        allow_missing: bool = False,
    ) -> bool:
        """
        Write a state only if the stored status may move to ``state.status``.

        Args:
            state: The new state
            ttl: Lifetime, the store default when omitted
            allow_missing: Also write when no state is stored (lapsed TTL)

        Returns:
            True if written, False if the transition is not allowed
        """
        pass


class EventBus(ABC):
    """
    Fire-and-forget progress notifications keyed by thread id.
    Delivery is at most once; subscribers that are not listening miss events.
    """

    @abstractmethod
    async def publish(self, thread_id: str, event: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def subscribe(self, thread_id: str) -> AsyncIterator[dict[str, Any]]:
        pass

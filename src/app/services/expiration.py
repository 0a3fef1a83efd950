from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from src.app.domain.models import (
    META_EXPIRATION_REASON,
    META_EXPIRED_AT,
    META_REVIEW_READY_AT,
    AgentTask,
    Phase,
    TaskState,
    TaskStatus,
)
from src.app.infra.db.base import TaskRepository
from src.app.infra.db.mappers import parse_datetime
from src.app.infra.state.base import TaskStateStore

logger = logging.getLogger(__name__)


def review_ready_since(task: AgentTask, state: Optional[TaskState]) -> Optional[datetime]:
    """When the task entered review; metadata wins over the ephemeral state."""
    recorded = parse_datetime(task.metadata.get(META_REVIEW_READY_AT))
    if recorded is not None:
        return recorded
    if state is not None and state.status == TaskStatus.REVIEW_READY:
        return state.last_updated
    return None


def is_expired(task: AgentTask, state: Optional[TaskState], now: datetime, window: timedelta) -> bool:
    since = review_ready_since(task, state)
    return since is not None and now - since > window


def mark_expired(
    tasks: TaskRepository,
    states: TaskStateStore,
    task: AgentTask,
    now: datetime,
    window: timedelta,
    state_ttl: Optional[timedelta] = None,
) -> AgentTask:
    """
    Record the expiry against the task version the caller loaded, then move
    the state to Expired. Raises ConflictError if someone wrote first.
    """
    days = window.days or round(window.total_seconds() / 86400, 2)
    reason = f"Draft expired after {days} days without review"
    updated = tasks.update_metadata(
        task.task_id,
        {META_EXPIRED_AT: now.isoformat(), META_EXPIRATION_REASON: reason},
        expected_version=task.version,
    )
    states.transition(
        TaskState(
            task_id=task.task_id,
            status=TaskStatus.EXPIRED,
            progress=100,
            current_phase=Phase.REVIEW_READY.value,
            error=reason,
            error_code="DRAFT_EXPIRED",
            last_updated=now,
        ),
        ttl=state_ttl,
        allow_missing=True,
    )
    logger.info("draft.expired task=%s reason=%s", task.task_id, reason)
    return updated

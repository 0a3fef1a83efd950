from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.app.domain.errors import ConflictError, IngestError
from src.app.domain.models import TaskStatus
from src.app.infra.db.base import TaskRepository
from src.app.infra.state.base import TaskStateStore
from src.app.services.expiration import is_expired, mark_expired
from src.app.services.periodic import PeriodicSweeper

log = logging.getLogger("expiration_sweeper")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ExpirationSweeper(PeriodicSweeper):
    """Moves ReviewReady tasks past the review window to Expired."""

    name = "expiration-sweeper"

    def __init__(
        self,
        tasks: TaskRepository,
        states: TaskStateStore,
        window: timedelta = timedelta(days=7),
        interval: timedelta = timedelta(hours=1),
        initial_delay: timedelta = timedelta(minutes=1),
        batch_size: int = 100,
        state_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(interval, initial_delay, log)
        self._tasks = tasks
        self._states = states
        self.window = window
        self.batch_size = batch_size
        self._state_ttl = state_ttl
        self._clock = clock or _now_utc

    def sweep_once(self) -> int:
        now = self._clock()
        candidates = self._tasks.list_review_candidates(now - self.window, limit=self.batch_size)
        expired = 0

        for task in candidates:
            try:
                state = self._states.get(task.task_id)
                if state is not None and state.status != TaskStatus.REVIEW_READY:
                    continue
                if not is_expired(task, state, now, self.window):
                    continue
                mark_expired(self._tasks, self._states, task, now, self.window, self._state_ttl)
                expired += 1
            except ConflictError:
                log.info("sweeper.conflict task=%s", task.task_id)
            except IngestError as exc:
                log.error("sweeper.task_failed task=%s code=%s error=%s", task.task_id, exc.code, exc)
            except Exception:
                log.exception("sweeper.unexpected_error task=%s", task.task_id)

        log.info("sweeper.run_complete candidates=%d expired=%d", len(candidates), expired)
        return expired


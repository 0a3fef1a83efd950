from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from src.app.domain.errors import IngestError, StorageError
from src.app.domain.models import META_COMMITTED_RECIPE_ID, TaskStatus
from src.app.infra.db.base import TaskRepository
from src.app.infra.state.base import TaskStateStore
from src.app.infra.storage.base import ARTIFACT_PREFIX, StorageProvider
from src.app.services.periodic import PeriodicSweeper

log = logging.getLogger("artifact_retention")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def group_by_task(keys: list[str]) -> dict[tuple[str, str], list[str]]:
    """Artifact keys grouped by (thread_id, task_id); keys outside the layout are ignored."""
    groups: dict[tuple[str, str], list[str]] = {}
    for key in keys:
        parts = key.split("/")
        if len(parts) < 4 or parts[0] != ARTIFACT_PREFIX:
            continue
        groups.setdefault((parts[1], parts[2]), []).append(key)
    return groups


class ArtifactRetentionSweeper(PeriodicSweeper):
    """
    Deletes the stored evidence of old tasks.

    Artifacts of committed tasks are kept for ``committed_retention``, all
    others for ``other_retention``, both counted from task creation. Groups
    whose task record is gone are treated as past retention. A run stops once
    ``max_deletes_per_run`` objects are gone; the rest wait for the next run.
    """

    name = "artifact-retention"

    def __init__(
        self,
        storage: StorageProvider,
        tasks: TaskRepository,
        states: TaskStateStore,
        committed_retention: timedelta = timedelta(days=180),
        other_retention: timedelta = timedelta(days=30),
        interval: timedelta = timedelta(hours=24),
        initial_delay: timedelta = timedelta(minutes=5),
        max_deletes_per_run: int = 1000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(interval, initial_delay, log)
        self._storage = storage
        self._tasks = tasks
        self._states = states
        self.committed_retention = committed_retention
        self.other_retention = other_retention
        self.max_deletes_per_run = max_deletes_per_run
        self._clock = clock or _now_utc

    def _is_committed(self, task_id: str, metadata: dict) -> bool:
        if META_COMMITTED_RECIPE_ID in metadata:
            return True
        state = self._states.get(task_id)
        return state is not None and state.status == TaskStatus.COMMITTED

    def _past_retention(self, task_id: str, now: datetime) -> bool:
        task = self._tasks.get_task(task_id)
        if task is None:
            return True
        retention = self.committed_retention if self._is_committed(task_id, task.metadata) else self.other_retention
        return now - task.created_at > retention

    def sweep_once(self) -> int:
        now = self._clock()
        try:
            keys = self._storage.list_objects(f"{ARTIFACT_PREFIX}/")
        except StorageError as exc:
            log.error("retention.list_failed error=%s", exc)
            return 0

        groups = group_by_task(keys)
        deleted = 0
        processed = 0
        for (thread_id, task_id), group in groups.items():
            if deleted >= self.max_deletes_per_run:
                log.info("retention.delete_limit_reached limit=%d", self.max_deletes_per_run)
                break
            processed += 1
            try:
                if not self._past_retention(task_id, now):
                    continue
                for key in group[:self.max_deletes_per_run - deleted]:
                    if self._storage.delete_object(key):
                        deleted += 1
                log.debug("retention.task_cleaned thread=%s task=%s objects=%d", thread_id, task_id, len(group))
            except IngestError as exc:
                log.warning("retention.task_failed task=%s code=%s error=%s", task_id, exc.code, exc)
            except Exception:
                log.exception("retention.unexpected_error task=%s", task_id)

        log.info("retention.run_complete groups=%d processed=%d deleted=%d", len(groups), processed, deleted)
        return deleted

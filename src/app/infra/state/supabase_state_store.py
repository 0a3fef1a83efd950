from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from supabase import Client

from src.app.domain.errors import RepositoryError
from src.app.domain.models import TaskState, allowed_sources
from src.app.infra.db.mappers import row_to_state, state_to_row
from src.app.infra.db.supabase_repos import create_supabase_client
from src.app.infra.state.base import TaskStateStore
from src.app.infra.state.memory import DEFAULT_STATE_TTL

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SupabaseTaskStateStore(TaskStateStore):
    """
    Task states in a table with an ``expires_at`` column. Expired rows read
    as missing; deleting them is left to a database cron job.
    """

    TABLE_NAME = "ingest_task_states"

    def __init__(self, client: Client | None = None, default_ttl: timedelta = DEFAULT_STATE_TTL):
        self._client = client or create_supabase_client()
        self.default_ttl = default_ttl

    def _row(self, state: TaskState, ttl: Optional[timedelta]) -> dict:
        row = state_to_row(state)
        row["expires_at"] = (_now_utc() + (ttl or self.default_ttl)).isoformat()
        return row

    def get(self, task_id: str) -> Optional[TaskState]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("task_id", task_id)
                .gt("expires_at", _now_utc().isoformat())
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error loading task state: %s", error)
            raise RepositoryError("get_state", str(error)) from error

        return row_to_state(result.data[0]) if result.data else None

    def set(self, state: TaskState, ttl: Optional[timedelta] = None) -> None:
        try:
            self._client.table(self.TABLE_NAME).upsert(self._row(state, ttl), on_conflict="task_id").execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error writing task state: %s", error)
            raise RepositoryError("set_state", str(error)) from error

    def transition(
        self,
        state: TaskState,
        ttl: Optional[timedelta] = None,
        allow_missing: bool = False,
    ) -> bool:
        sources = [status.value for status in allowed_sources(state.status)]
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update(self._row(state, ttl))
                .eq("task_id", state.task_id)
                .in_("status", sources)
                .gt("expires_at", _now_utc().isoformat())
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error transitioning task state: %s", error)
            raise RepositoryError("transition_state", str(error)) from error

        if result.data:
            return True
        if allow_missing and self.get(state.task_id) is None:
            self.set(state, ttl)
            return True
        return False

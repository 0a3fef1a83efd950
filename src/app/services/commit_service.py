# src/app/services/commit_service.py
"""
Commit and reject for drafts parked in ReviewReady.

Recipe and task metadata live in separate stores, so a commit writes the
recipe first under an id derived from the task id, then records that id in
the task metadata with a versioned write. A repeated commit finds the
recorded id and returns the same result.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import NAMESPACE_URL, uuid5

from src.app.domain.errors import ConflictError, ExpiredError, NotFoundError, WrongStateError
from src.app.domain.models import (
    META_COMMITTED_AT,
    META_COMMITTED_RECIPE_ID,
    META_EXPIRED_AT,
    META_REJECTED_AT,
    META_REJECTION_REASON,
    AgentTask,
    CommitResult,
    Phase,
    Recipe,
    RecipeDraft,
    RejectResult,
    TaskState,
    TaskStatus,
)
from src.app.infra.db.base import DraftRepository, RecipeRepository, TaskRepository
from src.app.infra.state.base import TaskStateStore
from src.app.services.expiration import is_expired, mark_expired
from src.app.services.url_utils import compute_url_hash

logger = logging.getLogger(__name__)

DEFAULT_EXPIRATION_WINDOW = timedelta(days=7)
RECIPE_ID_NAMESPACE = uuid5(NAMESPACE_URL, "recipe-ingest/committed-recipe")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def recipe_id_for_task(task_id: str) -> str:
    """Stable recipe id per task so a retried commit reuses the same row."""
    return str(uuid5(RECIPE_ID_NAMESPACE, task_id))


class CommitService:
    def __init__(
        self,
        tasks: TaskRepository,
        drafts: DraftRepository,
        recipes: RecipeRepository,
        states: TaskStateStore,
        expiration_window: timedelta = DEFAULT_EXPIRATION_WINDOW,
        state_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._tasks = tasks
        self._drafts = drafts
        self._recipes = recipes
        self._states = states
        self.expiration_window = expiration_window
        self._state_ttl = state_ttl
        self._clock = clock or _now_utc

    @property
    def expiration_days(self) -> int:
        return max(1, self.expiration_window.days)

    def _load_task(self, task_id: str) -> AgentTask:
        task = self._tasks.get_task(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    @staticmethod
    def _status_of(task: AgentTask, state: Optional[TaskState]) -> Optional[TaskStatus]:
        if state is not None:
            return state.status
        # The ephemeral state lapsed; metadata still records closed reviews
        if META_COMMITTED_RECIPE_ID in task.metadata:
            return TaskStatus.COMMITTED
        if META_EXPIRED_AT in task.metadata:
            return TaskStatus.EXPIRED
        if META_REJECTED_AT in task.metadata:
            return TaskStatus.REJECTED
        return None

    def _already_committed(self, task: AgentTask) -> CommitResult:
        recipe_id = task.metadata.get(META_COMMITTED_RECIPE_ID) or recipe_id_for_task(task.task_id)
        logger.info("commit.idempotent task=%s recipe=%s", task.task_id, recipe_id)
        return CommitResult(task_id=task.task_id, recipe_id=recipe_id, already_committed=True)

    def _check_expired(self, task: AgentTask, state: TaskState, now: datetime) -> None:
        if not is_expired(task, state, now, self.expiration_window):
            return
        try:
            mark_expired(self._tasks, self._states, task, now, self.expiration_window, self._state_ttl)
        except ConflictError:
            # Someone else closed the review first; the draft is stale either way
            logger.info("commit.expire_conflict task=%s", task.task_id)
        raise ExpiredError(task.task_id, self.expiration_days)

    def commit(self, task_id: str, expected_version: Optional[int] = None) -> CommitResult:
        """
        Turn a reviewed draft into a persisted recipe.

        Args:
            task_id: Task whose draft should be committed
            expected_version: Version token the caller last saw; None skips the check

        Returns:
            CommitResult with the recipe id and any duplicate warning

        Raises:
            NotFoundError, WrongStateError, ExpiredError, ConflictError
        """
        task = self._load_task(task_id)
        if META_COMMITTED_RECIPE_ID in task.metadata:
            return self._already_committed(task)

        state = self._states.get(task_id)
        status = self._status_of(task, state)
        if status == TaskStatus.COMMITTED:
            return self._already_committed(task)
        if status != TaskStatus.REVIEW_READY:
            raise WrongStateError(task_id, status.value if status else None)

        now = self._clock()
        self._check_expired(task, state, now)

        if expected_version is not None and expected_version != task.version:
            raise ConflictError(task_id, expected_version, task.version)

        draft = self._drafts.get_draft(task_id)
        if draft is None:
            raise NotFoundError(task_id, what="Draft")

        warnings: list[str] = []
        url_hash = draft.source.url_hash or compute_url_hash(draft.source.url)
        duplicate = self._recipes.find_by_url_hash(url_hash)
        duplicate_of = None
        if duplicate is not None and duplicate.id != recipe_id_for_task(task_id):
            duplicate_of = duplicate.id
            warnings.append(f"A recipe from this URL was already committed: {duplicate.id}")
            logger.info("commit.duplicate_url task=%s existing=%s", task_id, duplicate.id)

        recipe = self._materialize(task_id, draft, url_hash, now)
        self._recipes.create_recipe(recipe)

        try:
            self._tasks.update_metadata(
                task_id,
                {META_COMMITTED_RECIPE_ID: recipe.id, META_COMMITTED_AT: now.isoformat()},
                expected_version=task.version,
            )
        except ConflictError:
            return self._resolve_commit_conflict(task_id, recipe.id)

        written = self._states.transition(
            TaskState(
                task_id=task_id,
                status=TaskStatus.COMMITTED,
                progress=100,
                current_phase=Phase.REVIEW_READY.value,
                result=recipe.id,
                last_updated=now,
            ),
            ttl=self._state_ttl,
            allow_missing=True,
        )
        if not written:
            logger.warning("commit.state_not_updated task=%s recipe=%s", task_id, recipe.id)
        logger.info("commit.succeeded task=%s recipe=%s duplicate_of=%s", task_id, recipe.id, duplicate_of)
        return CommitResult(
            task_id=task_id,
            recipe_id=recipe.id,
            duplicate_of=duplicate_of,
            warnings=warnings,
        )

    def _materialize(self, task_id: str, draft: RecipeDraft, url_hash: str, now: datetime) -> Recipe:
        recipe = draft.recipe
        source = draft.source
        source.url_hash = url_hash
        recipe.id = recipe_id_for_task(task_id)
        recipe.created_at = now
        recipe.updated_at = now
        recipe.source = source
        return recipe

    def _resolve_commit_conflict(self, task_id: str, recipe_id: str) -> CommitResult:
        current = self._load_task(task_id)
        if current.metadata.get(META_COMMITTED_RECIPE_ID) == recipe_id:
            # A concurrent commit of the same task won; it wrote the same recipe
            return self._already_committed(current)

        removed = self._recipes.delete_recipe(recipe_id)
        logger.warning(
            "commit.conflict task=%s recipe=%s orphan_removed=%s version=%s",
            task_id,
            recipe_id,
            removed,
            current.version,
        )
        raise ConflictError(task_id, None, current.version)

    def reject(self, task_id: str, reason: Optional[str] = None) -> RejectResult:
        task = self._load_task(task_id)
        state = self._states.get(task_id)
        status = self._status_of(task, state)

        if status == TaskStatus.REJECTED:
            return RejectResult(
                task_id=task_id,
                status=TaskStatus.REJECTED,
                already_rejected=True,
                rejected_at=task.metadata.get(META_REJECTED_AT),
            )
        if status != TaskStatus.REVIEW_READY:
            raise WrongStateError(task_id, status.value if status else None)

        now = self._clock()
        updates = {META_REJECTED_AT: now.isoformat()}
        if reason:
            updates[META_REJECTION_REASON] = reason
        self._tasks.update_metadata(task_id, updates, expected_version=task.version)

        written = self._states.transition(
            TaskState(
                task_id=task_id,
                status=TaskStatus.REJECTED,
                progress=100,
                current_phase=Phase.REVIEW_READY.value,
                error=reason,
                last_updated=now,
            ),
            ttl=self._state_ttl,
        )
        if not written:
            current = self._states.get(task_id)
            raise WrongStateError(task_id, current.status.value if current else None)

        logger.info("reject.succeeded task=%s reason=%s", task_id, reason)
        return RejectResult(task_id=task_id, status=TaskStatus.REJECTED, rejected_at=updates[META_REJECTED_AT])

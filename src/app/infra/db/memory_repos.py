"""In-memory ingest stores, thread-safe, for tests and single-process runs."""

from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, Optional

from src.app.domain.errors import ConflictError, NotFoundError
from src.app.domain.models import (
    META_COMMITTED_RECIPE_ID,
    META_EXPIRED_AT,
    META_REJECTED_AT,
    META_REVIEW_READY_AT,
    AgentTask,
    Recipe,
    RecipeDraft,
)
from src.app.infra.db.base import DraftRepository, RecipeRepository, TaskRepository
from src.app.infra.db.mappers import (
    Row,
    parse_datetime,
    dict_to_draft,
    dict_to_recipe,
    draft_to_dict,
    recipe_to_dict,
    row_to_task,
    task_to_row,
)

CLOSED_REVIEW_KEYS = (META_COMMITTED_RECIPE_ID, META_REJECTED_AT, META_EXPIRED_AT)


class InMemoryTaskRepository(TaskRepository):
    """Rows are kept serialized so callers never share mutable state with the store."""

    def __init__(self) -> None:
        self._rows: Dict[str, Row] = {}
        self._lock = Lock()

    def create_task(self, task: AgentTask) -> AgentTask:
        with self._lock:
            row = task_to_row(task)
            row["version"] = 1
            self._rows[task.task_id] = row
            return row_to_task(row)

    def get_task(self, task_id: str) -> Optional[AgentTask]:
        with self._lock:
            row = self._rows.get(task_id)
            return row_to_task(row) if row else None

    def update_metadata(
        self,
        task_id: str,
        updates: dict[str, str],
        expected_version: Optional[int] = None,
    ) -> AgentTask:
        with self._lock:
            row = self._rows.get(task_id)
            if row is None:
                raise NotFoundError(task_id)
            if expected_version is not None and row["version"] != expected_version:
                raise ConflictError(task_id, expected_version, row["version"])

            metadata = dict(row["metadata"])
            metadata.update({key: str(value) for key, value in updates.items()})
            row["metadata"] = metadata
            row["version"] += 1
            return row_to_task(row)

    def list_review_candidates(self, ready_before: datetime, limit: int = 100) -> list[AgentTask]:
        with self._lock:
            candidates = []
            for row in self._rows.values():
                metadata = row["metadata"]
                ready_at = parse_datetime(metadata.get(META_REVIEW_READY_AT))
                if ready_at is None or ready_at >= ready_before:
                    continue
                if any(key in metadata for key in CLOSED_REVIEW_KEYS):
                    continue
                candidates.append((ready_at, row))

            candidates.sort(key=lambda item: item[0])
            return [row_to_task(row) for _, row in candidates[:limit]]


class InMemoryDraftRepository(DraftRepository):
    def __init__(self) -> None:
        self._drafts: Dict[str, Row] = {}
        self._lock = Lock()

    def save_draft(self, task_id: str, draft: RecipeDraft) -> None:
        with self._lock:
            self._drafts[task_id] = draft_to_dict(draft)

    def get_draft(self, task_id: str) -> Optional[RecipeDraft]:
        with self._lock:
            data = self._drafts.get(task_id)
            return dict_to_draft(data) if data else None


class InMemoryRecipeRepository(RecipeRepository):
    def __init__(self) -> None:
        self._recipes: Dict[str, Row] = {}
        self._lock = Lock()

    def create_recipe(self, recipe: Recipe) -> Recipe:
        with self._lock:
            existing = self._recipes.get(recipe.id)
            if existing is None:
                existing = recipe_to_dict(recipe)
                self._recipes[recipe.id] = existing
            return dict_to_recipe(existing)

    def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        with self._lock:
            data = self._recipes.get(recipe_id)
            return dict_to_recipe(data) if data else None

    def find_by_url_hash(self, url_hash: str) -> Optional[Recipe]:
        with self._lock:
            for data in self._recipes.values():
                source = data.get("source") or {}
                if source.get("url_hash") == url_hash:
                    return dict_to_recipe(data)
            return None

    def delete_recipe(self, recipe_id: str) -> bool:
        with self._lock:
            return self._recipes.pop(recipe_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._recipes)

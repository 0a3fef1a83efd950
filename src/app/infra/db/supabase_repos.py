from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from supabase import Client, create_client

from src.app.domain.errors import ConflictError, NotFoundError, RepositoryError
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
    dict_to_draft,
    dict_to_recipe,
    draft_to_dict,
    recipe_to_dict,
    row_to_task,
    task_to_row,
)

logger = logging.getLogger(__name__)

UNVERSIONED_WRITE_ATTEMPTS = 3


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(url, key)


class SupabaseTaskRepository(TaskRepository):
    TABLE_NAME = "ingest_tasks"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()
        logger.info("SupabaseTaskRepository initialized")

    def create_task(self, task: AgentTask) -> AgentTask:
        row = task_to_row(task)
        row["version"] = 1
        try:
            result = self._client.table(self.TABLE_NAME).insert(row).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error creating task: %s", error)
            raise RepositoryError("create_task", str(error)) from error

        if not result.data:
            raise RepositoryError("create_task", "insert returned no rows")

        created = row_to_task(result.data[0])
        logger.info("Created ingest task: id=%s, thread=%s", created.task_id, created.thread_id)
        return created

    def get_task(self, task_id: str) -> Optional[AgentTask]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("task_id", task_id)
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error loading task: %s", error)
            raise RepositoryError("get_task", str(error)) from error

        return row_to_task(result.data[0]) if result.data else None

    def update_metadata(
        self,
        task_id: str,
        updates: dict[str, str],
        expected_version: Optional[int] = None,
    ) -> AgentTask:
        attempts = 1 if expected_version is not None else UNVERSIONED_WRITE_ATTEMPTS

        for _ in range(attempts):
            current = self.get_task(task_id)
            if current is None:
                raise NotFoundError(task_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(task_id, expected_version, current.version)

            updated = self._compare_and_set(current, updates)
            if updated is not None:
                return updated

        latest = self.get_task(task_id)
        raise ConflictError(task_id, expected_version, latest.version if latest else None)

    def _compare_and_set(self, current: AgentTask, updates: dict[str, str]) -> Optional[AgentTask]:
        metadata = dict(current.metadata)
        metadata.update({key: str(value) for key, value in updates.items()})
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update({"metadata": metadata, "version": current.version + 1})
                .eq("task_id", current.task_id)
                .eq("version", current.version)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error updating task metadata: %s", error)
            raise RepositoryError("update_metadata", str(error)) from error

        if not result.data:
            logger.warning("Version race on task metadata: id=%s, version=%d", current.task_id, current.version)
            return None
        return row_to_task(result.data[0])

    def list_review_candidates(self, ready_before: datetime, limit: int = 100) -> list[AgentTask]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .lt(f"metadata->>{META_REVIEW_READY_AT}", ready_before.isoformat())
                .is_(f"metadata->>{META_COMMITTED_RECIPE_ID}", "null")
                .is_(f"metadata->>{META_REJECTED_AT}", "null")
                .is_(f"metadata->>{META_EXPIRED_AT}", "null")
                .order(f"metadata->>{META_REVIEW_READY_AT}")
                .limit(limit)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error listing review candidates: %s", error)
            raise RepositoryError("list_review_candidates", str(error)) from error

        return [row_to_task(row) for row in result.data or []]


class SupabaseDraftRepository(DraftRepository):
    TABLE_NAME = "ingest_drafts"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()

    def save_draft(self, task_id: str, draft: RecipeDraft) -> None:
        row = {
            "task_id": task_id,
            "draft": draft_to_dict(draft),
            "updated_at": _now_utc().isoformat(),
        }
        try:
            self._client.table(self.TABLE_NAME).upsert(row, on_conflict="task_id").execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error saving draft: %s", error)
            raise RepositoryError("save_draft", str(error)) from error

    def get_draft(self, task_id: str) -> Optional[RecipeDraft]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("draft")
                .eq("task_id", task_id)
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error loading draft: %s", error)
            raise RepositoryError("get_draft", str(error)) from error

        if not result.data:
            return None
        return dict_to_draft(result.data[0]["draft"])


class SupabaseRecipeRepository(RecipeRepository):
    TABLE_NAME = "recipes"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()

    def create_recipe(self, recipe: Recipe) -> Recipe:
        existing = self.get_recipe(recipe.id)
        if existing is not None:
            return existing

        row = {
            "recipe_id": recipe.id,
            "title": recipe.name,
            "url_hash": recipe.source.url_hash if recipe.source else None,
            "metadata": recipe_to_dict(recipe),
            "created_at": (recipe.created_at or _now_utc()).isoformat(),
        }
        try:
            result = self._client.table(self.TABLE_NAME).insert(row).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error creating recipe: %s", error)
            raise RepositoryError("create_recipe", str(error)) from error

        if not result.data:
            raise RepositoryError("create_recipe", "insert returned no rows")
        logger.info("Created recipe: id=%s, title=%s", recipe.id, recipe.name)
        return dict_to_recipe(result.data[0]["metadata"])

    def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        result = self._select_one("recipe_id", recipe_id)
        return dict_to_recipe(result["metadata"]) if result else None

    def find_by_url_hash(self, url_hash: str) -> Optional[Recipe]:
        result = self._select_one("url_hash", url_hash)
        return dict_to_recipe(result["metadata"]) if result else None

    def delete_recipe(self, recipe_id: str) -> bool:
        try:
            result = self._client.table(self.TABLE_NAME).delete().eq("recipe_id", recipe_id).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error deleting recipe: %s", error)
            raise RepositoryError("delete_recipe", str(error)) from error
        return bool(result.data)

    def _select_one(self, column: str, value: str) -> Optional[dict]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("recipe_id, metadata")
                .eq(column, value)
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error loading recipe by %s: %s", column, error)
            raise RepositoryError("get_recipe", str(error)) from error
        return result.data[0] if result.data else None

# src/app/infra/db/base.py
"""
Abstract base classes for the durable ingest stores.
These interfaces allow swapping between the in-memory and Supabase backends.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from src.app.domain.models import AgentTask, Recipe, RecipeDraft


class TaskRepository(ABC):
    """
    Durable ingest tasks with an optimistic version token.

    Implementations:
    - InMemoryTaskRepository: process-local, for tests and single-node runs
    - SupabaseTaskRepository: Postgres table via Supabase
    """

    @abstractmethod
    def create_task(self, task: AgentTask) -> AgentTask:
        """
        Persist a new task with version 1.

        Args:
            task: The task to store

        Returns:
            The stored task carrying its version
        """
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[AgentTask]:
        """
        Get a task and its current version.

        Args:
            task_id: The task ID

        Returns:
            The task, or None if not found
        """
        pass

    @abstractmethod
    def update_metadata(
        self,
        task_id: str,
        updates: dict[str, str],
        expected_version: Optional[int] = None,
    ) -> AgentTask:
        """
        Merge keys into the task metadata and bump the version.

        Args:
            task_id: The task to update
            updates: Metadata keys to set
            expected_version: If given, the write only happens when the stored
                version still matches

        Returns:
            The updated task

        Raises:
            NotFoundError: the task does not exist
            ConflictError: the stored version differs from expected_version
        """
        pass

    @abstractmethod
    def list_review_candidates(self, ready_before: datetime, limit: int = 100) -> list[AgentTask]:
        """
        Tasks that entered review before a cutoff and have no commit,
        rejection or expiry recorded.

        Args:
            ready_before: review_ready_at cutoff
            limit: Max tasks to return

        Returns:
            Oldest candidates first
        """
        pass


class DraftRepository(ABC):
    """
    Drafts produced by the phase runner, one per task.
    """

    @abstractmethod
    def save_draft(self, task_id: str, draft: RecipeDraft) -> None:
        """
        Store or replace the draft for a task.

        Args:
            task_id: Owning task
            draft: The draft to store
        """
        pass

    @abstractmethod
    def get_draft(self, task_id: str) -> Optional[RecipeDraft]:
        """
        Args:
            task_id: Owning task

        Returns:
            The draft, or None if the task never reached review
        """
        pass


class RecipeRepository(ABC):
    """
    The permanent recipe collection, as far as committing needs it.
    """

    @abstractmethod
    def create_recipe(self, recipe: Recipe) -> Recipe:
        """
        Insert a recipe. Inserting an id that already exists returns the
        stored recipe unchanged.

        Args:
            recipe: The recipe to insert

        Returns:
            The stored recipe
        """
        pass

    @abstractmethod
    def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        pass

    @abstractmethod
    def find_by_url_hash(self, url_hash: str) -> Optional[Recipe]:
        """
        Args:
            url_hash: Hash of the normalized source URL

        Returns:
            An existing recipe from the same source, or None
        """
        pass

    @abstractmethod
    def delete_recipe(self, recipe_id: str) -> bool:
        pass

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.app.domain.errors import ConflictError, ExpiredError, NotFoundError, WrongStateError
from src.app.domain.models import (
    META_COMMITTED_RECIPE_ID,
    META_EXPIRED_AT,
    META_REJECTED_AT,
    META_REJECTION_REASON,
    META_REVIEW_READY_AT,
    AgentTask,
    Ingredient,
    IngestMode,
    IngestPayload,
    Recipe,
    RecipeDraft,
    RecipeSource,
    TaskState,
    TaskStatus,
    ValidationReport,
)
from src.app.infra.db.memory_repos import (
    InMemoryDraftRepository,
    InMemoryRecipeRepository,
    InMemoryTaskRepository,
)
from src.app.infra.state.memory import InMemoryTaskStateStore
from src.app.services.commit_service import CommitService, recipe_id_for_task
from src.app.services.url_utils import compute_url_hash

READY_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SOURCE_URL = "https://recipes.example/soup"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RacingTaskRepository(InMemoryTaskRepository):
    """Simulates another writer closing the review just before our versioned write."""

    def __init__(self, rival_updates: dict[str, str]) -> None:
        super().__init__()
        self.rival_updates = rival_updates

    def update_metadata(self, task_id, updates, expected_version=None):
        if self.rival_updates and META_COMMITTED_RECIPE_ID in updates:
            rival, self.rival_updates = self.rival_updates, {}
            super().update_metadata(task_id, rival)
        return super().update_metadata(task_id, updates, expected_version)


class Harness:
    def __init__(self, tasks: InMemoryTaskRepository | None = None, now: datetime = READY_AT + timedelta(days=1)):
        self.clock = FakeClock(now)
        self.tasks = tasks or InMemoryTaskRepository()
        self.drafts = InMemoryDraftRepository()
        self.recipes = InMemoryRecipeRepository()
        self.states = InMemoryTaskStateStore(default_ttl=timedelta(days=30), clock=self.clock)
        self.service = CommitService(
            self.tasks, self.drafts, self.recipes, self.states, clock=self.clock,
        )

    def review_ready_task(self, task_id: str = "task-1", url: str = SOURCE_URL) -> AgentTask:
        self.tasks.create_task(AgentTask(
            task_id=task_id,
            thread_id=f"thread-{task_id}",
            payload=IngestPayload(mode=IngestMode.URL, url=url),
            created_at=READY_AT,
        ))
        source = RecipeSource(url=url, url_hash=compute_url_hash(url), site_name="Example Kitchen")
        self.drafts.save_draft(task_id, RecipeDraft(
            recipe=Recipe(
                id="draft-recipe",
                name="Tomato Soup",
                ingredients=[Ingredient(name="tomatoes", quantity=4)],
                instructions=["Simmer."],
                source=source,
            ),
            source=source,
            validation_report=ValidationReport(),
            confidence=0.95,
        ))
        task = self.tasks.update_metadata(task_id, {META_REVIEW_READY_AT: READY_AT.isoformat()})
        self.states.set(TaskState(
            task_id=task_id, status=TaskStatus.REVIEW_READY, progress=100, last_updated=READY_AT,
        ))
        return task


class TestCommit:
    def test_commit_creates_recipe_and_closes_task(self) -> None:
        harness = Harness()
        harness.review_ready_task()

        result = harness.service.commit("task-1")

        assert result.recipe_id == recipe_id_for_task("task-1")
        assert not result.already_committed
        assert result.duplicate_of is None
        recipe = harness.recipes.get_recipe(result.recipe_id)
        assert recipe.name == "Tomato Soup"
        assert recipe.source.url_hash == compute_url_hash(SOURCE_URL)
        assert recipe.created_at == harness.clock.now
        state = harness.states.get("task-1")
        assert state.status == TaskStatus.COMMITTED
        assert state.result == result.recipe_id
        assert harness.tasks.get_task("task-1").metadata[META_COMMITTED_RECIPE_ID] == result.recipe_id

    def test_commit_twice_is_idempotent(self) -> None:
        harness = Harness()
        harness.review_ready_task()

        first = harness.service.commit("task-1")
        second = harness.service.commit("task-1")

        assert second.recipe_id == first.recipe_id
        assert second.already_committed
        assert harness.recipes.count() == 1

    def test_commit_after_state_lapsed_uses_metadata(self) -> None:
        harness = Harness()
        harness.review_ready_task()
        first = harness.service.commit("task-1")
        harness.clock.now += timedelta(days=31)

        assert harness.states.get("task-1") is None
        assert harness.service.commit("task-1").recipe_id == first.recipe_id

    def test_stale_version_conflicts(self) -> None:
        harness = Harness()
        task = harness.review_ready_task()

        with pytest.raises(ConflictError):
            harness.service.commit("task-1", expected_version=task.version - 1)

        assert harness.recipes.count() == 0
        assert harness.states.get("task-1").status == TaskStatus.REVIEW_READY

    def test_matching_version_commits(self) -> None:
        harness = Harness()
        task = harness.review_ready_task()

        assert harness.service.commit("task-1", expected_version=task.version).recipe_id

    def test_concurrent_close_removes_orphan_recipe(self) -> None:
        harness = Harness(tasks=RacingTaskRepository({META_REJECTED_AT: READY_AT.isoformat()}))
        harness.review_ready_task()

        with pytest.raises(ConflictError):
            harness.service.commit("task-1")

        assert harness.recipes.count() == 0
        assert META_COMMITTED_RECIPE_ID not in harness.tasks.get_task("task-1").metadata

    def test_concurrent_commit_of_same_task_is_idempotent(self) -> None:
        rival = {META_COMMITTED_RECIPE_ID: recipe_id_for_task("task-1")}
        harness = Harness(tasks=RacingTaskRepository(rival))
        harness.review_ready_task()

        result = harness.service.commit("task-1")

        assert result.already_committed
        assert harness.recipes.count() == 1

    def test_duplicate_url_warns_but_commits(self) -> None:
        harness = Harness()
        harness.review_ready_task("task-1")
        harness.review_ready_task("task-2")
        first = harness.service.commit("task-1")

        second = harness.service.commit("task-2")

        assert second.recipe_id != first.recipe_id
        assert second.duplicate_of == first.recipe_id
        assert second.warnings == [f"A recipe from this URL was already committed: {first.recipe_id}"]
        assert harness.recipes.count() == 2

    def test_expired_draft_is_marked_on_commit(self) -> None:
        harness = Harness(now=READY_AT + timedelta(days=8))
        harness.review_ready_task()

        with pytest.raises(ExpiredError) as exc_info:
            harness.service.commit("task-1")

        assert exc_info.value.expiration_days == 7
        assert harness.states.get("task-1").status == TaskStatus.EXPIRED
        assert META_EXPIRED_AT in harness.tasks.get_task("task-1").metadata
        assert harness.recipes.count() == 0

    def test_commit_of_expired_task_is_wrong_state(self) -> None:
        harness = Harness(now=READY_AT + timedelta(days=8))
        harness.review_ready_task()
        with pytest.raises(ExpiredError):
            harness.service.commit("task-1")

        with pytest.raises(WrongStateError) as exc_info:
            harness.service.commit("task-1")

        assert exc_info.value.current_status == "Expired"
        assert harness.recipes.count() == 0

    def test_commit_after_expired_state_lapsed_is_wrong_state(self) -> None:
        harness = Harness(now=READY_AT + timedelta(days=8))
        harness.review_ready_task()
        with pytest.raises(ExpiredError):
            harness.service.commit("task-1")
        harness.clock.now += timedelta(days=365)
        assert harness.states.get("task-1") is None

        with pytest.raises(WrongStateError) as exc_info:
            harness.service.commit("task-1")

        assert exc_info.value.current_status == "Expired"

    def test_window_boundary_is_still_committable(self) -> None:
        harness = Harness(now=READY_AT + timedelta(days=7))
        harness.review_ready_task()

        assert harness.service.commit("task-1").recipe_id

    def test_not_ready_task_is_wrong_state(self) -> None:
        harness = Harness()
        harness.review_ready_task()
        harness.states.set(TaskState(task_id="task-1", status=TaskStatus.RUNNING))

        with pytest.raises(WrongStateError) as exc_info:
            harness.service.commit("task-1")

        assert exc_info.value.current_status == "Running"

    def test_lapsed_state_without_outcome_is_unknown(self) -> None:
        harness = Harness()
        harness.review_ready_task()
        harness.clock.now += timedelta(days=31)

        with pytest.raises(WrongStateError) as exc_info:
            harness.service.commit("task-1")

        assert exc_info.value.current_status == "Unknown"

    def test_missing_task(self) -> None:
        with pytest.raises(NotFoundError):
            Harness().service.commit("nope")

    def test_missing_draft(self) -> None:
        harness = Harness()
        harness.tasks.create_task(AgentTask(
            task_id="task-1",
            thread_id="thread-1",
            payload=IngestPayload(mode=IngestMode.URL, url=SOURCE_URL),
            created_at=READY_AT,
        ))
        harness.states.set(TaskState(task_id="task-1", status=TaskStatus.REVIEW_READY, last_updated=READY_AT))

        with pytest.raises(NotFoundError, match="Draft"):
            harness.service.commit("task-1")


class TestReject:
    def test_reject_records_reason(self) -> None:
        harness = Harness()
        harness.review_ready_task()

        result = harness.service.reject("task-1", reason="Not a recipe")

        assert result.status == TaskStatus.REJECTED
        assert not result.already_rejected
        metadata = harness.tasks.get_task("task-1").metadata
        assert metadata[META_REJECTED_AT] == harness.clock.now.isoformat()
        assert metadata[META_REJECTION_REASON] == "Not a recipe"
        assert harness.states.get("task-1").status == TaskStatus.REJECTED

    def test_reject_twice_is_idempotent(self) -> None:
        harness = Harness()
        harness.review_ready_task()
        first = harness.service.reject("task-1")

        second = harness.service.reject("task-1")

        assert second.already_rejected
        assert second.rejected_at == first.rejected_at

    def test_commit_after_reject_is_wrong_state(self) -> None:
        harness = Harness()
        harness.review_ready_task()
        harness.service.reject("task-1")

        with pytest.raises(WrongStateError) as exc_info:
            harness.service.commit("task-1")

        assert exc_info.value.current_status == "Rejected"

    def test_reject_after_commit_is_wrong_state(self) -> None:
        harness = Harness()
        harness.review_ready_task()
        harness.service.commit("task-1")

        with pytest.raises(WrongStateError):
            harness.service.reject("task-1")

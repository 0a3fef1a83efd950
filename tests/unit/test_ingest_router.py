from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.app.deps import get_ingest_service
from src.app.domain.models import (
    META_REVIEW_READY_AT,
    AgentTask,
    ArtifactRef,
    Ingredient,
    IngestMode,
    IngestPayload,
    Recipe,
    RecipeDraft,
    RecipeSource,
    SectionSimilarity,
    SimilarityLevel,
    SimilarityReport,
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
from src.app.infra.storage.memory_provider import InMemoryStorageProvider
from src.app.routers.ingest import router
from src.app.services.artifacts import ArtifactWriter
from src.app.services.commit_service import CommitService, recipe_id_for_task
from src.app.services.draft_repair import DraftRepairService
from src.app.services.ingest_service import IngestService
from src.app.services.phase_runner import PhaseRunnerOptions


class RunnerStub:
    def __init__(self) -> None:
        self.options = PhaseRunnerOptions()

    async def execute(self, task):
        return None


class Backend:
    def __init__(self) -> None:
        self.tasks = InMemoryTaskRepository()
        self.drafts = InMemoryDraftRepository()
        self.recipes = InMemoryRecipeRepository()
        self.states = InMemoryTaskStateStore()
        commits = CommitService(self.tasks, self.drafts, self.recipes, self.states)
        self.storage = InMemoryStorageProvider()
        repairs = DraftRepairService(self.tasks, self.drafts, self.states, ArtifactWriter(self.storage), repairer=None)
        self.service = IngestService(self.tasks, self.drafts, self.states, RunnerStub(), commits, repairs)

    def review_ready(self, task_id: str = "task-1", ready_at: datetime | None = None) -> AgentTask:
        ready_at = ready_at or datetime.now(timezone.utc)
        url = "https://recipes.example/soup"
        self.tasks.create_task(AgentTask(
            task_id=task_id,
            thread_id="thread-1",
            payload=IngestPayload(mode=IngestMode.URL, url=url),
            created_at=ready_at,
        ))
        source = RecipeSource(url=url, url_hash="hash-1", site_name="Example Kitchen")
        self.drafts.save_draft(task_id, RecipeDraft(
            recipe=Recipe(
                id="draft",
                name="Tomato Soup",
                ingredients=[Ingredient(name="tomatoes", quantity=4)],
                instructions=["Simmer."],
            ),
            source=source,
            validation_report=ValidationReport(warnings=["[NO_TAGS] Tags: No tags specified"]),
            similarity_report=SimilarityReport(sections=[
                SectionSimilarity("instruction_1", "Simmer.", 1, 0.0, SimilarityLevel.OK),
            ]),
            confidence=0.95,
        ))
        task = self.tasks.update_metadata(task_id, {META_REVIEW_READY_AT: ready_at.isoformat()})
        self.states.set(TaskState(task_id=task_id, status=TaskStatus.REVIEW_READY, progress=100))
        return task


@pytest.fixture
def backend() -> Backend:
    return Backend()


@pytest.fixture
def client(backend: Backend) -> TestClient:
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_ingest_service] = lambda: backend.service
    return TestClient(app)


class TestCreateTask:
    def test_accepts_url(self, client: TestClient) -> None:
        response = client.post("/v1/ingest/tasks", json={"mode": "url", "url": "https://example.com/r"})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "Pending"
        assert body["thread_id"] == body["task_id"]

    def test_missing_url_is_422(self, client: TestClient) -> None:
        response = client.post("/v1/ingest/tasks", json={"mode": "url"})
        assert response.status_code == 422

    def test_bad_scheme_is_400(self, client: TestClient) -> None:
        response = client.post("/v1/ingest/tasks", json={"mode": "url", "url": "file:///etc/passwd"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_SCHEME"


class TestTaskState:
    def test_returns_state_and_version(self, client: TestClient, backend: Backend) -> None:
        task = backend.review_ready()

        body = client.get("/v1/ingest/tasks/task-1").json()

        assert body["status"] == "ReviewReady"
        assert body["progress"] == 100
        assert body["version"] == task.version

    def test_lapsed_state_is_unknown(self, client: TestClient, backend: Backend) -> None:
        backend.tasks.create_task(AgentTask(
            task_id="old",
            thread_id="old",
            payload=IngestPayload(mode=IngestMode.URL, url="https://example.com/r"),
            created_at=datetime.now(timezone.utc),
        ))

        body = client.get("/v1/ingest/tasks/old").json()

        assert body["status"] == "Unknown"

    def test_unknown_task_is_404(self, client: TestClient) -> None:
        response = client.get("/v1/ingest/tasks/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "TASK_NOT_FOUND"


class TestDraft:
    def test_returns_draft(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()

        body = client.get("/v1/ingest/tasks/task-1/draft").json()

        assert body["recipe"]["name"] == "Tomato Soup"
        assert body["source"]["site_name"] == "Example Kitchen"
        assert body["warnings"] == ["[NO_TAGS] Tags: No tags specified"]
        assert body["similarity"]["sections"][0]["level"] == "ok"
        assert body["still_violates_policy"] is False

    def test_no_draft_is_404(self, client: TestClient, backend: Backend) -> None:
        response = client.post("/v1/ingest/tasks", json={"mode": "query", "query": "soup"})
        task_id = response.json()["task_id"]

        assert client.get(f"/v1/ingest/tasks/{task_id}/draft").status_code == 404


class TestCommit:
    def test_commit_without_body(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()

        response = client.post("/v1/ingest/tasks/task-1/commit")

        assert response.status_code == 200
        assert response.json()["recipe_id"] == recipe_id_for_task("task-1")
        assert response.json()["already_committed"] is False

    def test_double_commit_same_recipe(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()

        first = client.post("/v1/ingest/tasks/task-1/commit").json()
        second = client.post("/v1/ingest/tasks/task-1/commit").json()

        assert second["recipe_id"] == first["recipe_id"]
        assert second["already_committed"] is True
        assert backend.recipes.count() == 1

    def test_stale_version_is_409(self, client: TestClient, backend: Backend) -> None:
        task = backend.review_ready()

        response = client.post("/v1/ingest/tasks/task-1/commit", json={"expected_version": task.version + 1})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "CONCURRENCY_CONFLICT"

    def test_expired_is_410(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready(ready_at=datetime.now(timezone.utc) - timedelta(days=8))

        response = client.post("/v1/ingest/tasks/task-1/commit")

        assert response.status_code == 410
        assert response.json()["detail"]["code"] == "DRAFT_EXPIRED"

    def test_wrong_state_is_400(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()
        backend.states.set(TaskState(task_id="task-1", status=TaskStatus.RUNNING))

        response = client.post("/v1/ingest/tasks/task-1/commit")

        assert response.status_code == 400
        assert response.json()["detail"]["current_status"] == "Running"


class TestRejectAndCancel:
    def test_reject_with_reason(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()

        response = client.post("/v1/ingest/tasks/task-1/reject", json={"reason": "Not a recipe"})

        assert response.status_code == 200
        assert response.json()["status"] == "Rejected"
        assert client.post("/v1/ingest/tasks/task-1/reject").json()["already_rejected"] is True

    def test_cancel_pending(self, client: TestClient, backend: Backend) -> None:
        task_id = client.post("/v1/ingest/tasks", json={"url": "https://example.com/r"}).json()["task_id"]

        response = client.post(f"/v1/ingest/tasks/{task_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "Cancelled"

    def test_cancel_review_ready_is_400(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()

        response = client.post("/v1/ingest/tasks/task-1/cancel")

        assert response.status_code == 400


class TestArtifacts:
    def test_lists_draft_artifacts(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()
        draft = backend.drafts.get_draft("task-1")
        draft.artifacts = [
            ArtifactRef(type="raw", uri="memory://artifacts/thread-1/task-1/raw.html"),
            ArtifactRef(type="sanitized", uri="memory://artifacts/thread-1/task-1/sanitized.txt"),
        ]
        backend.drafts.save_draft("task-1", draft)

        response = client.get("/v1/ingest/tasks/task-1/artifacts")

        assert response.status_code == 200
        assert response.json() == {
            "task_id": "task-1",
            "artifacts": [
                {"type": "raw", "uri": "memory://artifacts/thread-1/task-1/raw.html"},
                {"type": "sanitized", "uri": "memory://artifacts/thread-1/task-1/sanitized.txt"},
            ],
        }

    def test_no_draft_yet_is_empty(self, client: TestClient, backend: Backend) -> None:
        task_id = client.post("/v1/ingest/tasks", json={"url": "https://example.com/r"}).json()["task_id"]

        response = client.get(f"/v1/ingest/tasks/{task_id}/artifacts")

        assert response.status_code == 200
        assert response.json()["artifacts"] == []

    def test_unknown_task_is_404(self, client: TestClient) -> None:
        assert client.get("/v1/ingest/tasks/missing/artifacts").status_code == 404


class TestRepair:
    def test_clean_draft_needs_no_repair(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()

        response = client.post("/v1/ingest/tasks/task-1/repair")

        assert response.status_code == 200
        body = response.json()
        assert body["repair_needed"] is False
        assert body["repaired_sections"] == []
        assert body["draft"]["recipe"]["instructions"] == ["Simmer."]

    def test_not_review_ready_is_400(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()
        backend.states.set(TaskState(task_id="task-1", status=TaskStatus.COMMITTED))

        response = client.post("/v1/ingest/tasks/task-1/repair")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_TASK_STATE"
        assert response.json()["detail"]["current_status"] == "Committed"

    def test_violation_without_provider_is_503(self, client: TestClient, backend: Backend) -> None:
        backend.review_ready()
        draft = backend.drafts.get_draft("task-1")
        draft.similarity_report = SimilarityReport(sections=[
            SectionSimilarity("instruction_1", "Simmer.", 90, 0.9, SimilarityLevel.BLOCK),
        ])
        draft.still_violates_policy = True
        backend.drafts.save_draft("task-1", draft)

        response = client.post("/v1/ingest/tasks/task-1/repair")

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "REPAIR_UNAVAILABLE"

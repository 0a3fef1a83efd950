# src/app/services/ingest_service.py
"""
Entry point used by the HTTP layer.

Creating a task persists it as Pending and schedules its pipeline as an
independent asyncio task. Review operations delegate to CommitService and DraftRepairService.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from src.app.domain.errors import InvalidPayloadError, NotFoundError, TransientError, WrongStateError
from src.app.domain.models import (
    AgentTask,
    ArtifactRef,
    CommitResult,
    IngestMode,
    IngestPayload,
    RecipeDraft,
    RejectResult,
    TaskState,
    TaskStatus,
)
from src.app.infra.db.base import DraftRepository, TaskRepository
from src.app.infra.state.base import TaskStateStore
from src.app.services.commit_service import CommitService
from src.app.services.draft_repair import DraftRepairResult, DraftRepairService
from src.app.services.phase_runner import PhaseRunner
from src.app.services.url_utils import normalize_url

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 500


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def validate_payload(payload: IngestPayload) -> IngestPayload:
    """Reject malformed payloads before a task exists; URLs are normalized."""
    if payload.mode == IngestMode.URL:
        return IngestPayload(mode=IngestMode.URL, url=normalize_url(payload.url or ""))

    query = (payload.query or "").strip()
    if not query:
        raise InvalidPayloadError("Query mode requires a non-empty query", code="INVALID_QUERY")
    if len(query) > MAX_QUERY_LENGTH:
        raise InvalidPayloadError(f"Query exceeds {MAX_QUERY_LENGTH} characters", code="INVALID_QUERY")
    return IngestPayload(mode=IngestMode.QUERY, query=query)


class IngestService:
    def __init__(
        self,
        tasks: TaskRepository,
        drafts: DraftRepository,
        states: TaskStateStore,
        runner: PhaseRunner,
        commits: CommitService,
        draft_repairs: Optional[DraftRepairService] = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._tasks = tasks
        self._drafts = drafts
        self._states = states
        self._runner = runner
        self._commits = commits
        self._draft_repairs = draft_repairs
        self._clock = clock or _now_utc
        self._running: set[asyncio.Task] = set()

    async def create_task(self, payload: IngestPayload, thread_id: Optional[str] = None) -> AgentTask:
        payload = validate_payload(payload)
        task_id = str(uuid4())
        task = AgentTask(
            task_id=task_id,
            thread_id=thread_id or task_id,
            payload=payload,
            created_at=self._clock(),
        )
        task = await run_in_threadpool(self._tasks.create_task, task)
        await run_in_threadpool(
            self._states.set,
            TaskState(task_id=task_id, status=TaskStatus.PENDING, last_updated=task.created_at),
            self._runner.options.state_ttl,
        )

        job = asyncio.create_task(self._runner.execute(task), name=f"ingest-{task_id}")
        self._running.add(job)
        job.add_done_callback(self._running.discard)

        logger.info("ingest.task_created task=%s thread=%s mode=%s", task_id, task.thread_id, payload.mode.value)
        return task

    def _require_task(self, task_id: str) -> AgentTask:
        task = self._tasks.get_task(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    def get_task(self, task_id: str) -> AgentTask:
        return self._require_task(task_id)

    def get_task_state(self, task_id: str) -> Optional[TaskState]:
        """None means the ephemeral state lapsed; the task itself still exists."""
        self._require_task(task_id)
        return self._states.get(task_id)

    def get_draft(self, task_id: str) -> RecipeDraft:
        self._require_task(task_id)
        draft = self._drafts.get_draft(task_id)
        if draft is None:
            raise NotFoundError(task_id, what="Draft")
        return draft

    def get_artifacts(self, task_id: str) -> list[ArtifactRef]:
        """Evidence stored for the task's draft; empty until a draft exists."""
        self._require_task(task_id)
        draft = self._drafts.get_draft(task_id)
        return list(draft.artifacts) if draft is not None else []

    async def repair_draft(self, task_id: str) -> DraftRepairResult:
        if self._draft_repairs is None:
            raise TransientError(
                "Repair needs a text-generation provider", retryable=False, code="REPAIR_UNAVAILABLE",
            )
        return await self._draft_repairs.repair(task_id)

    def commit(self, task_id: str, expected_version: Optional[int] = None) -> CommitResult:
        return self._commits.commit(task_id, expected_version=expected_version)

    def reject(self, task_id: str, reason: Optional[str] = None) -> RejectResult:
        return self._commits.reject(task_id, reason=reason)

    def cancel(self, task_id: str) -> TaskState:
        """Stops the pipeline at its next phase boundary."""
        self._require_task(task_id)
        current = self._states.get(task_id)
        if current is not None and current.status == TaskStatus.CANCELLED:
            return current
        if current is None or current.status not in (TaskStatus.PENDING, TaskStatus.RUNNING):
            raise WrongStateError(task_id, current.status.value if current else None, expected="Pending or Running")

        state = TaskState(
            task_id=task_id,
            status=TaskStatus.CANCELLED,
            progress=current.progress,
            current_phase=current.current_phase,
            error="Cancelled by request",
            error_code="CANCELLED",
            last_updated=self._clock(),
        )
        if not self._states.transition(state, ttl=self._runner.options.state_ttl):
            latest = self._states.get(task_id)
            if latest is not None and latest.status == TaskStatus.CANCELLED:
                return latest
            raise WrongStateError(task_id, latest.status.value if latest else None, expected="Pending or Running")

        logger.info("ingest.cancel_requested task=%s phase=%s", task_id, current.current_phase)
        return state

    @property
    def in_flight(self) -> int:
        return len(self._running)

    async def wait_idle(self) -> None:
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def shutdown(self) -> None:
        for job in list(self._running):
            job.cancel()
        await self.wait_idle()
        await self._runner.aclose()

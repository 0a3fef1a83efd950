# src/app/services/draft_repair.py
"""
Reviewer-triggered repair of a draft that still copies its source.

The pipeline repairs once on its own; a reviewer can ask for another pass
while the task is ReviewReady. The pass reads the sanitized page text the
pipeline stored as an artifact, rewrites the blocked sections and stores the
rescored draft in place.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from src.app.domain.errors import (
    ExpiredError,
    ModelError,
    NotFoundError,
    StorageError,
    TransientError,
    WrongStateError,
)
from src.app.domain.models import (
    META_REPAIRED_AT,
    AgentTask,
    ArtifactRef,
    RecipeDraft,
    TaskStatus,
    ValidationReport,
)
from src.app.infra.db.base import DraftRepository, TaskRepository
from src.app.infra.db.mappers import similarity_to_dict
from src.app.infra.state.base import TaskStateStore
from src.app.services import artifacts as artifact_names
from src.app.services.artifacts import ArtifactWriter
from src.app.services.expiration import is_expired
from src.app.services.repair import RepairService
from src.app.services.similarity import POLICY_WARNING_CODE, policy_violation_warning

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DraftRepairResult:
    task_id: str
    draft: RecipeDraft
    repair_needed: bool = True
    repaired_sections: list[str] = field(default_factory=list)

    @property
    def still_violates_policy(self) -> bool:
        return self.draft.still_violates_policy


def _rescored_warnings(report: ValidationReport, blocked: list[str]) -> ValidationReport:
    warnings = [warning for warning in report.warnings if not warning.startswith(POLICY_WARNING_CODE)]
    if blocked:
        warnings.append(policy_violation_warning(blocked))
    return ValidationReport(errors=list(report.errors), warnings=warnings)


def _with_artifact(refs: list[ArtifactRef], ref: Optional[ArtifactRef]) -> list[ArtifactRef]:
    if ref is None:
        return list(refs)
    return [item for item in refs if item.type != ref.type] + [ref]


class DraftRepairService:
    def __init__(
        self,
        tasks: TaskRepository,
        drafts: DraftRepository,
        states: TaskStateStore,
        artifacts: ArtifactWriter,
        repairer: Optional[RepairService],
        expiration_window: timedelta = timedelta(days=7),
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._tasks = tasks
        self._drafts = drafts
        self._states = states
        self._artifacts = artifacts
        self._repairer = repairer
        self.expiration_window = expiration_window
        self.deadline_seconds = deadline_seconds
        self._clock = clock or _now_utc

    async def _load_reviewable(self, task_id: str) -> tuple[AgentTask, RecipeDraft]:
        task = await run_in_threadpool(self._tasks.get_task, task_id)
        if task is None:
            raise NotFoundError(task_id)
        state = await run_in_threadpool(self._states.get, task_id)
        if state is None or state.status != TaskStatus.REVIEW_READY:
            raise WrongStateError(task_id, state.status.value if state else None)
        if is_expired(task, state, self._clock(), self.expiration_window):
            raise ExpiredError(task_id, self.expiration_window.days)

        draft = await run_in_threadpool(self._drafts.get_draft, task_id)
        if draft is None:
            raise NotFoundError(task_id, what="Draft", code="NO_DRAFT_FOUND")
        return task, draft

    async def _source_text(self, task: AgentTask) -> str:
        try:
            return await self._artifacts.read_text(task.thread_id, task.task_id, artifact_names.SANITIZED_TEXT)
        except StorageError as error:
            logger.warning("draft_repair.source_missing task=%s error=%s", task.task_id, error)
            raise NotFoundError(task.task_id, what="Sanitized source text", code="SOURCE_NOT_FOUND") from error

    async def repair(self, task_id: str) -> DraftRepairResult:
        """
        Rewrite the sections of a ReviewReady draft that still copy the source.

        Returns the stored draft unchanged with ``repair_needed`` False when
        the similarity report shows no violation.

        Raises:
            NotFoundError, WrongStateError, ExpiredError, ConflictError,
            TransientError when no provider is configured, ModelError when the
            rewrite failed
        """
        task, draft = await self._load_reviewable(task_id)
        report = draft.similarity_report
        if report is None or not report.violates_policy:
            logger.info("draft_repair.not_needed task=%s", task_id)
            return DraftRepairResult(task_id=task_id, draft=draft, repair_needed=False)
        if self._repairer is None:
            raise TransientError(
                "Repair needs a text-generation provider", retryable=False, code="REPAIR_UNAVAILABLE",
            )

        source_text = await self._source_text(task)
        outcome = await self._repairer.repair(
            draft.recipe,
            report,
            source_text,
            deadline_seconds=self.deadline_seconds,
        )
        if outcome.error is not None:
            raise ModelError(f"Repair failed: {outcome.error}", code="REPAIR_FAILED")

        ref = await self._artifacts.write(task.thread_id, task_id, artifact_names.REPAIR_JSON, {
            "requested_by": "reviewer",
            "repaired_sections": outcome.repaired_sections,
            "similarity": similarity_to_dict(outcome.report),
        })
        blocked = [section.name for section in outcome.report.blocking_sections]
        repaired = replace(
            draft,
            recipe=outcome.recipe,
            validation_report=_rescored_warnings(draft.validation_report, blocked),
            similarity_report=outcome.report,
            still_violates_policy=outcome.still_violates_policy,
            repair_applied=draft.repair_applied or bool(outcome.repaired_sections),
            artifacts=_with_artifact(draft.artifacts, ref),
        )

        # a commit that loaded the task before this write sees a version conflict
        await run_in_threadpool(
            self._tasks.update_metadata,
            task_id,
            {META_REPAIRED_AT: self._clock().isoformat()},
            task.version,
        )
        await run_in_threadpool(self._drafts.save_draft, task_id, repaired)

        logger.info(
            "draft_repair.done task=%s repaired=%s still_violates=%s",
            task_id, outcome.repaired_sections, repaired.still_violates_policy,
        )
        return DraftRepairResult(task_id=task_id, draft=repaired, repaired_sections=outcome.repaired_sections)

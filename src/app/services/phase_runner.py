# src/app/services/phase_runner.py
"""
Ingest task state machine.

Drives one task through Fetch -> Extract -> Validate -> ReviewReady. The
similarity guard and the repair pass run inside Validate. After every phase
the task state is persisted and a progress event is published on the task's
thread. Cancellation is honoured at phase boundaries only.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from starlette.concurrency import run_in_threadpool

from src.app.domain.errors import (
    ExtractionFailedError,
    IngestError,
    InvalidPayloadError,
    PolicyViolationError,
    ValidationFailedError,
)
from src.app.domain.models import (
    META_REVIEW_READY_AT,
    AgentTask,
    ArtifactRef,
    IngestMode,
    Phase,
    RecipeDraft,
    RecipeSource,
    TaskState,
    TaskStatus,
)
from src.app.infra.db.base import DraftRepository, TaskRepository
from src.app.infra.db.mappers import recipe_to_dict, similarity_to_dict
from src.app.infra.search.base import SearchProvider
from src.app.infra.state.base import EventBus, TaskStateStore
from src.app.services import artifacts as artifact_names
from src.app.services.artifacts import ArtifactWriter
from src.app.services.extraction import ExtractionChain, ExtractionResult
from src.app.services.fetcher import Fetcher, FetchResult
from src.app.services.repair import RepairService
from src.app.services.sanitizer import SanitizedContent, sanitize_html
from src.app.services.similarity import SimilarityGuard, policy_violation_warning
from src.app.services.ssrf_guard import SsrfGuard
from src.app.services.url_utils import compute_url_hash
from src.app.services.validator import RecipeValidator

logger = logging.getLogger(__name__)

PROGRESS_EVENT_TYPE = "ingest.progress"
SEARCH_CANDIDATES = 5


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PhaseRunnerOptions:
    fetch_weight: int = 20
    extract_weight: int = 50
    validate_weight: int = 20
    review_ready_weight: int = 10
    auto_repair_on_error: bool = True
    block_on_policy_violation: bool = False
    deadline_seconds: Optional[float] = None
    state_ttl: Optional[timedelta] = None

    def validate(self) -> list[str]:
        errors = []
        weights = [self.fetch_weight, self.extract_weight, self.validate_weight, self.review_ready_weight]
        if any(weight < 0 for weight in weights):
            errors.append("phase weights cannot be negative")
        if sum(weights) != 100:
            errors.append(f"phase weights must sum to 100, got {sum(weights)}")
        return errors


class _TaskCancelled(Exception):
    pass


@dataclass
class _PipelineContext:
    task: AgentTask
    progress: int = 0
    fetch: Optional[FetchResult] = None
    content: Optional[SanitizedContent] = None
    extraction: Optional[ExtractionResult] = None
    draft: Optional[RecipeDraft] = None
    artifacts: list[ArtifactRef] = field(default_factory=list)


class PhaseRunner:
    def __init__(
        self,
        tasks: TaskRepository,
        drafts: DraftRepository,
        states: TaskStateStore,
        events: EventBus,
        fetcher: Fetcher,
        extractor: ExtractionChain,
        validator: RecipeValidator,
        guard: SimilarityGuard,
        repairer: Optional[RepairService] = None,
        artifacts: Optional[ArtifactWriter] = None,
        search: Optional[SearchProvider] = None,
        ssrf_guard: Optional[SsrfGuard] = None,
        options: Optional[PhaseRunnerOptions] = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.options = options or PhaseRunnerOptions()
        errors = self.options.validate()
        if errors:
            raise ValueError("; ".join(errors))

        self._tasks = tasks
        self._drafts = drafts
        self._states = states
        self._events = events
        self._fetcher = fetcher
        self._extractor = extractor
        self._validator = validator
        self._guard = guard
        self._repairer = repairer
        self._artifacts = artifacts
        self._search = search
        self._ssrf_guard = ssrf_guard
        self._clock = clock or _now_utc

    async def aclose(self) -> None:
        await self._fetcher.aclose()
        if self._search is not None:
            await self._search.aclose()

    async def execute(self, task: AgentTask) -> Optional[TaskState]:
        """Run every phase for ``task``; returns the final state."""
        ctx = _PipelineContext(task=task)
        try:
            await self._advance(ctx, Phase.FETCH, 0, "Starting ingest")
            await self._run_fetch(ctx)
            await self._advance(ctx, Phase.EXTRACT, self.options.fetch_weight, "Page fetched")
            await self._run_extract(ctx)
            await self._advance(ctx, Phase.VALIDATE, self.options.extract_weight, "Recipe extracted")
            await self._run_validate(ctx)
            await self._advance(ctx, Phase.REVIEW_READY, self.options.validate_weight, "Draft validated")
            return await self._finish_review_ready(ctx)
        except _TaskCancelled:
            logger.info("ingest.cancelled task=%s phase_progress=%d", task.task_id, ctx.progress)
            return await run_in_threadpool(self._states.get, task.task_id)
        except asyncio.CancelledError:
            await self._fail(ctx, TaskStatus.CANCELLED, "Ingest was cancelled", "CANCELLED")
            raise
        except IngestError as error:
            logger.warning("ingest.failed task=%s code=%s reason=%s", task.task_id, error.code, error.reason)
            return await self._fail(ctx, TaskStatus.FAILED, error.reason, error.code)
        except Exception as error:
            logger.exception("ingest.unexpected_error task=%s", task.task_id)
            return await self._fail(ctx, TaskStatus.FAILED, str(error) or type(error).__name__, "UNKNOWN_ERROR")

    async def _advance(self, ctx: _PipelineContext, phase: Phase, weight: int, message: str) -> None:
        ctx.progress = min(100, ctx.progress + weight)
        state = TaskState(
            task_id=ctx.task.task_id,
            status=TaskStatus.RUNNING,
            progress=ctx.progress,
            current_phase=phase.value,
            last_updated=self._clock(),
        )
        written = await run_in_threadpool(self._states.transition, state, self.options.state_ttl)
        if not written:
            raise _TaskCancelled()
        await self._publish(ctx.task, phase, ctx.progress, message)

    async def _publish(self, task: AgentTask, phase: Phase, progress: int, message: str) -> None:
        event: dict[str, Any] = {
            "type": PROGRESS_EVENT_TYPE,
            "task_id": task.task_id,
            "phase": phase.value,
            "progress": progress,
            "message": message,
            "timestamp": self._clock().isoformat(),
        }
        try:
            await self._events.publish(task.thread_id, event)
        except Exception as error:
            logger.warning("ingest.publish_failed task=%s phase=%s error=%s", task.task_id, phase.value, error)

    async def _fail(self, ctx: _PipelineContext, status: TaskStatus, message: str, code: str) -> Optional[TaskState]:
        state = TaskState(
            task_id=ctx.task.task_id,
            status=status,
            progress=ctx.progress,
            current_phase=None,
            error=message,
            error_code=code,
            last_updated=self._clock(),
        )
        written = await run_in_threadpool(self._states.transition, state, self.options.state_ttl)
        if not written:
            return await run_in_threadpool(self._states.get, ctx.task.task_id)
        return state

    async def _store_artifact(self, ctx: _PipelineContext, name: str, data: Any) -> Optional[ArtifactRef]:
        if self._artifacts is None:
            return None
        ref = await self._artifacts.write(ctx.task.thread_id, ctx.task.task_id, name, data)
        if ref is not None:
            ctx.artifacts.append(ref)
        return ref

    async def _resolve_url(self, task: AgentTask) -> str:
        payload = task.payload
        if payload.mode == IngestMode.URL:
            if not payload.url:
                raise InvalidPayloadError("URL mode requires a url", code="MISSING_URL")
            return payload.url

        if not payload.query or not payload.query.strip():
            raise InvalidPayloadError("Query mode requires a query", code="INVALID_QUERY")
        if self._search is None:
            raise InvalidPayloadError("No search provider is configured", code="PROVIDER_DISABLED")

        candidates = await self._search.search(payload.query, limit=SEARCH_CANDIDATES)
        for candidate in candidates:
            if self._ssrf_guard is None:
                return candidate.url
            try:
                await self._ssrf_guard.validate(candidate.url)
            except IngestError as error:
                logger.info("ingest.search_candidate_skipped url=%s reason=%s", candidate.url, error.reason)
                continue
            return candidate.url

        raise ExtractionFailedError(f"No usable search result for query {payload.query!r}", code="NO_SEARCH_RESULTS")

    async def _run_fetch(self, ctx: _PipelineContext) -> None:
        url = await self._resolve_url(ctx.task)
        ctx.fetch = await self._fetcher.fetch(url, deadline_seconds=self.options.deadline_seconds)
        await self._store_artifact(ctx, artifact_names.RAW_HTML, ctx.fetch.content)

    async def _run_extract(self, ctx: _PipelineContext) -> None:
        ctx.content = sanitize_html(ctx.fetch.content)
        await self._store_artifact(ctx, artifact_names.SANITIZED_TEXT, ctx.content.text)

        ctx.extraction = await self._extractor.extract(
            ctx.content,
            ctx.fetch.final_url,
            deadline_seconds=self.options.deadline_seconds,
        )
        await self._store_artifact(ctx, artifact_names.EXTRACTION_JSON, {
            "method": ctx.extraction.method.value,
            "confidence": ctx.extraction.confidence,
            "warnings": ctx.extraction.warnings,
            "recipe": recipe_to_dict(ctx.extraction.recipe),
        })

    async def _run_validate(self, ctx: _PipelineContext) -> None:
        extraction = ctx.extraction
        recipe = extraction.recipe
        report = self._validator.validate(recipe)
        if not report.is_valid:
            await self._store_artifact(ctx, artifact_names.VALIDATION_JSON, {
                "errors": report.errors,
                "warnings": report.warnings,
            })
            raise ValidationFailedError(report.errors)

        source_text = ctx.content.text
        similarity = self._guard.score_recipe(recipe, source_text)
        repair_applied = False

        if similarity.violates_policy and self.options.auto_repair_on_error and self._repairer is not None:
            outcome = await self._repairer.repair(
                recipe,
                similarity,
                source_text,
                deadline_seconds=self.options.deadline_seconds,
            )
            await self._store_artifact(ctx, artifact_names.REPAIR_JSON, {
                "repaired_sections": outcome.repaired_sections,
                "error": outcome.error,
                "similarity": similarity_to_dict(outcome.report),
            })
            recipe, similarity = outcome.recipe, outcome.report
            repair_applied = bool(outcome.repaired_sections)

        still_violates = similarity.violates_policy
        if still_violates:
            blocked = [section.name for section in similarity.blocking_sections]
            if self.options.block_on_policy_violation:
                raise PolicyViolationError(blocked)
            report.warnings.append(policy_violation_warning(blocked))
        report.warnings.extend(extraction.warnings)

        fetch = ctx.fetch
        content = ctx.content
        source = RecipeSource(
            url=fetch.final_url,
            url_hash=compute_url_hash(fetch.final_url),
            site_name=content.site_name,
            author=content.author or _json_ld_author(extraction.raw),
            retrieved_at=fetch.fetched_at,
            extraction_method=extraction.method.value,
            license_hint=content.license_hint,
        )
        recipe.source = source

        ctx.draft = RecipeDraft(
            recipe=recipe,
            source=source,
            validation_report=report,
            similarity_report=similarity,
            still_violates_policy=still_violates,
            repair_applied=repair_applied,
            confidence=extraction.confidence,
        )

        await self._store_artifact(ctx, artifact_names.VALIDATION_JSON, {
            "errors": report.errors,
            "warnings": report.warnings,
            "similarity": similarity_to_dict(similarity),
        })
        ctx.draft.artifacts = list(ctx.artifacts)

    async def _finish_review_ready(self, ctx: _PipelineContext) -> TaskState:
        task = ctx.task
        now = self._clock()
        await run_in_threadpool(self._drafts.save_draft, task.task_id, ctx.draft)

        ctx.progress = 100
        state = TaskState(
            task_id=task.task_id,
            status=TaskStatus.REVIEW_READY,
            progress=100,
            current_phase=Phase.REVIEW_READY.value,
            last_updated=now,
        )
        written = await run_in_threadpool(self._states.transition, state, self.options.state_ttl)
        if not written:
            raise _TaskCancelled()
        # only a task that reached review gets the timestamp the expiry sweep reads
        await run_in_threadpool(
            self._tasks.update_metadata,
            task.task_id,
            {META_REVIEW_READY_AT: now.isoformat()},
        )

        await self._publish(task, Phase.REVIEW_READY, 100, "Draft ready for review")
        logger.info(
            "ingest.review_ready task=%s method=%s confidence=%.2f still_violates=%s",
            task.task_id,
            ctx.draft.source.extraction_method,
            ctx.draft.confidence,
            ctx.draft.still_violates_policy,
        )
        return state


def _json_ld_author(raw: Optional[dict[str, Any]]) -> Optional[str]:
    if not raw:
        return None
    author = raw.get("author")
    if isinstance(author, list):
        author = author[0] if author else None
    if isinstance(author, dict):
        author = author.get("name")
    return author.strip() if isinstance(author, str) and author.strip() else None

# src/app/routers/ingest.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.concurrency import run_in_threadpool

from src.app.deps import get_ingest_service
from src.app.domain.errors import (
    BlockedError,
    ConflictError,
    ExpiredError,
    ExtractionFailedError,
    IngestError,
    InvalidPayloadError,
    ModelError,
    NotFoundError,
    PolicyViolationError,
    TransientError,
    ValidationFailedError,
    WrongStateError,
)
from src.app.domain.models import IngestMode, IngestPayload, RecipeDraft
from src.app.schemas.ingest import (
    ArtifactItem,
    ArtifactListResponse,
    CommitRequest,
    CommitResponse,
    DraftResponse,
    IngestRequest,
    IngredientItem,
    RecipeResponse,
    RecipeSource,
    RejectRequest,
    RejectResponse,
    RepairResponse,
    SectionSimilarityResponse,
    SimilarityResponse,
    TaskCreatedResponse,
    TaskStateResponse,
)
from src.app.services.ingest_service import IngestService

log = logging.getLogger("ingest")
router = APIRouter(prefix="/v1/ingest", tags=["ingest"])

_STATUS_BY_ERROR: list[tuple[type[IngestError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (WrongStateError, status.HTTP_400_BAD_REQUEST),
    (InvalidPayloadError, status.HTTP_400_BAD_REQUEST),
    (ExpiredError, status.HTTP_410_GONE),
    (ConflictError, status.HTTP_409_CONFLICT),
    (BlockedError, status.HTTP_403_FORBIDDEN),
    (ExtractionFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PolicyViolationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ModelError, status.HTTP_502_BAD_GATEWAY),
]


def _http_error(error: IngestError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            status_code = code
            break
    detail = {"code": error.code, "message": error.reason}
    if isinstance(error, WrongStateError):
        detail["current_status"] = error.current_status
    if status_code >= 500:
        log.error("ingest.request_failed code=%s error=%s", error.code, error.reason)
    return HTTPException(status_code=status_code, detail=detail)


def _draft_response(task_id: str, draft: RecipeDraft) -> DraftResponse:
    recipe = draft.recipe
    source = draft.source
    similarity = None
    if draft.similarity_report is not None:
        report = draft.similarity_report
        similarity = SimilarityResponse(
            max_contiguous_token_overlap=report.max_contiguous_token_overlap,
            max_ngram_similarity=report.max_ngram_similarity,
            violates_policy=report.violates_policy,
            sections=[
                SectionSimilarityResponse(
                    name=section.name,
                    contiguous_overlap=section.contiguous_overlap,
                    ngram_similarity=section.ngram_similarity,
                    level=section.level.value,
                )
                for section in report.sections
            ],
            details=report.details,
        )

    return DraftResponse(
        task_id=task_id,
        recipe=RecipeResponse(
            id=recipe.id,
            name=recipe.name,
            description=recipe.description,
            ingredients=[
                IngredientItem(name=item.name, quantity=item.quantity, unit=item.unit, notes=item.notes)
                for item in recipe.ingredients
            ],
            instructions=list(recipe.instructions),
            cuisine=recipe.cuisine,
            diet_type=recipe.diet_type,
            prep_time_minutes=recipe.prep_time_minutes,
            cook_time_minutes=recipe.cook_time_minutes,
            servings=recipe.servings,
            tags=list(recipe.tags),
            image_url=recipe.image_url,
        ),
        source=RecipeSource(
            url=source.url,
            url_hash=source.url_hash,
            site_name=source.site_name,
            author=source.author,
            retrieved_at=source.retrieved_at,
            extraction_method=source.extraction_method,
            license_hint=source.license_hint,
        ),
        errors=list(draft.validation_report.errors),
        warnings=list(draft.validation_report.warnings),
        similarity=similarity,
        still_violates_policy=draft.still_violates_policy,
        repair_applied=draft.repair_applied,
        confidence=draft.confidence,
        artifacts=[ArtifactItem(type=item.type, uri=item.uri) for item in draft.artifacts],
    )


@router.post("/tasks", response_model=TaskCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_ingest_task(
    payload: IngestRequest,
    service: IngestService = Depends(get_ingest_service),
) -> TaskCreatedResponse:
    """
    Start an ingest. The pipeline runs in the background;
    poll GET /v1/ingest/tasks/{task_id} until the task is ReviewReady.
    """
    try:
        task = await service.create_task(
            IngestPayload(mode=IngestMode(payload.mode), url=payload.url, query=payload.query),
            thread_id=payload.thread_id,
        )
    except IngestError as e:
        raise _http_error(e)

    return TaskCreatedResponse(task_id=task.task_id, thread_id=task.thread_id, created_at=task.created_at)


@router.get("/tasks/{task_id}", response_model=TaskStateResponse)
async def get_ingest_task(
    task_id: str,
    service: IngestService = Depends(get_ingest_service),
) -> TaskStateResponse:
    try:
        task = await run_in_threadpool(service.get_task, task_id)
        state = await run_in_threadpool(service.get_task_state, task_id)
    except IngestError as e:
        raise _http_error(e)

    if state is None:
        return TaskStateResponse(task_id=task_id, status="Unknown", version=task.version)
    return TaskStateResponse(
        task_id=task_id,
        status=state.status.value,
        progress=state.progress,
        current_phase=state.current_phase,
        result=state.result,
        error=state.error,
        error_code=state.error_code,
        last_updated=state.last_updated,
        version=task.version,
    )


@router.get("/tasks/{task_id}/draft", response_model=DraftResponse)
async def get_ingest_draft(
    task_id: str,
    service: IngestService = Depends(get_ingest_service),
) -> DraftResponse:
    try:
        draft = await run_in_threadpool(service.get_draft, task_id)
    except IngestError as e:
        raise _http_error(e)
    return _draft_response(task_id, draft)


@router.post("/tasks/{task_id}/commit", response_model=CommitResponse)
async def commit_ingest_task(
    task_id: str,
    payload: Optional[CommitRequest] = None,
    service: IngestService = Depends(get_ingest_service),
) -> CommitResponse:
    expected_version = payload.expected_version if payload else None
    try:
        result = await run_in_threadpool(service.commit, task_id, expected_version)
    except IngestError as e:
        raise _http_error(e)

    return CommitResponse(
        task_id=result.task_id,
        recipe_id=result.recipe_id,
        already_committed=result.already_committed,
        duplicate_of=result.duplicate_of,
        warnings=result.warnings,
    )


@router.post("/tasks/{task_id}/reject", response_model=RejectResponse)
async def reject_ingest_task(
    task_id: str,
    payload: Optional[RejectRequest] = None,
    service: IngestService = Depends(get_ingest_service),
) -> RejectResponse:
    reason = payload.reason if payload else None
    try:
        result = await run_in_threadpool(service.reject, task_id, reason)
    except IngestError as e:
        raise _http_error(e)

    return RejectResponse(
        task_id=result.task_id,
        status=result.status.value,
        already_rejected=result.already_rejected,
        rejected_at=result.rejected_at,
    )


@router.post("/tasks/{task_id}/cancel", response_model=TaskStateResponse)
async def cancel_ingest_task(
    task_id: str,
    service: IngestService = Depends(get_ingest_service),
) -> TaskStateResponse:
    try:
        state = await run_in_threadpool(service.cancel, task_id)
    except IngestError as e:
        raise _http_error(e)

    log.info("ingest.cancelled_via_api task=%s", task_id)
    return TaskStateResponse(
        task_id=task_id,
        status=state.status.value,
        progress=state.progress,
        current_phase=state.current_phase,
        error=state.error,
        error_code=state.error_code,
        last_updated=state.last_updated,
    )


@router.get("/tasks/{task_id}/artifacts", response_model=ArtifactListResponse)
async def list_ingest_artifacts(
    task_id: str,
    service: IngestService = Depends(get_ingest_service),
) -> ArtifactListResponse:
    try:
        artifacts = await run_in_threadpool(service.get_artifacts, task_id)
    except IngestError as e:
        raise _http_error(e)
    return ArtifactListResponse(
        task_id=task_id,
        artifacts=[ArtifactItem(type=item.type, uri=item.uri) for item in artifacts],
    )


@router.post("/tasks/{task_id}/repair", response_model=RepairResponse)
async def repair_ingest_draft(
    task_id: str,
    service: IngestService = Depends(get_ingest_service),
) -> RepairResponse:
    """
    Rewrite the draft sections that still copy the source page.
    Only ReviewReady drafts can be repaired; a clean draft comes back unchanged.
    """
    try:
        result = await service.repair_draft(task_id)
    except IngestError as e:
        raise _http_error(e)

    log.info("ingest.repaired_via_api task=%s sections=%s", task_id, result.repaired_sections)
    return RepairResponse(
        task_id=task_id,
        repair_needed=result.repair_needed,
        repaired_sections=result.repaired_sections,
        still_violates_policy=result.still_violates_policy,
        draft=_draft_response(task_id, result.draft),
    )

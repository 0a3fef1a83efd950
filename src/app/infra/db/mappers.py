from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from src.app.domain.models import (
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

Row = dict[str, Any]


def parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None

    try:
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _safe_int(value: object, default: int = 0) -> int:
    return int(value) if value else default


def _optional_int(value: object) -> Optional[int]:
    return int(value) if value is not None else None


def _safe_str(value: object) -> str | None:
    return str(value) if value else None


def task_to_row(task: AgentTask) -> Row:
    return {
        "task_id": task.task_id,
        "thread_id": task.thread_id,
        "agent_type": task.agent_type,
        "payload": {
            "mode": task.payload.mode.value,
            "url": task.payload.url,
            "query": task.payload.query,
        },
        "created_at": _iso(task.created_at),
        "metadata": dict(task.metadata),
        "version": task.version,
    }


def row_to_task(row: Row) -> AgentTask:
    payload = row.get("payload") or {}
    return AgentTask(
        task_id=str(row["task_id"]),
        thread_id=str(row["thread_id"]),
        agent_type=str(row.get("agent_type") or "Ingest"),
        payload=IngestPayload(
            mode=IngestMode(payload.get("mode") or IngestMode.URL.value),
            url=_safe_str(payload.get("url")),
            query=_safe_str(payload.get("query")),
        ),
        created_at=parse_datetime(row.get("created_at")),
        metadata={str(key): str(value) for key, value in (row.get("metadata") or {}).items()},
        version=_safe_int(row.get("version")),
    )


def state_to_row(state: TaskState) -> Row:
    return {
        "task_id": state.task_id,
        "status": state.status.value,
        "progress": state.progress,
        "current_phase": state.current_phase,
        "result": state.result,
        "error": state.error,
        "error_code": state.error_code,
        "last_updated": _iso(state.last_updated),
    }


def row_to_state(row: Row) -> TaskState:
    return TaskState(
        task_id=str(row["task_id"]),
        status=TaskStatus(str(row["status"])),
        progress=_safe_int(row.get("progress")),
        current_phase=_safe_str(row.get("current_phase")),
        result=_safe_str(row.get("result")),
        error=_safe_str(row.get("error")),
        error_code=_safe_str(row.get("error_code")),
        last_updated=parse_datetime(row.get("last_updated")),
    )


def source_to_dict(source: Optional[RecipeSource]) -> Optional[Row]:
    if source is None:
        return None
    return {
        "url": source.url,
        "url_hash": source.url_hash,
        "site_name": source.site_name,
        "author": source.author,
        "retrieved_at": _iso(source.retrieved_at),
        "extraction_method": source.extraction_method,
        "license_hint": source.license_hint,
    }


def dict_to_source(data: Optional[Row]) -> Optional[RecipeSource]:
    if not data:
        return None
    return RecipeSource(
        url=str(data.get("url") or ""),
        url_hash=_safe_str(data.get("url_hash")),
        site_name=_safe_str(data.get("site_name")),
        author=_safe_str(data.get("author")),
        retrieved_at=parse_datetime(data.get("retrieved_at")),
        extraction_method=_safe_str(data.get("extraction_method")),
        license_hint=_safe_str(data.get("license_hint")),
    )


def recipe_to_dict(recipe: Recipe) -> Row:
    return {
        "id": recipe.id,
        "name": recipe.name,
        "description": recipe.description,
        "ingredients": [
            {
                "name": ingredient.name,
                "quantity": ingredient.quantity,
                "unit": ingredient.unit,
                "notes": ingredient.notes,
            }
            for ingredient in recipe.ingredients
        ],
        "instructions": list(recipe.instructions),
        "cuisine": recipe.cuisine,
        "diet_type": recipe.diet_type,
        "prep_time_minutes": recipe.prep_time_minutes,
        "cook_time_minutes": recipe.cook_time_minutes,
        "servings": recipe.servings,
        "tags": list(recipe.tags),
        "image_url": recipe.image_url,
        "created_at": _iso(recipe.created_at),
        "updated_at": _iso(recipe.updated_at),
        "source": source_to_dict(recipe.source),
    }


def dict_to_recipe(data: Row) -> Recipe:
    return Recipe(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        description=_safe_str(data.get("description")),
        ingredients=[
            Ingredient(
                name=str(item.get("name") or ""),
                quantity=float(item["quantity"]) if item.get("quantity") is not None else None,
                unit=_safe_str(item.get("unit")),
                notes=_safe_str(item.get("notes")),
            )
            for item in data.get("ingredients") or []
            if isinstance(item, dict)
        ],
        instructions=[str(step) for step in data.get("instructions") or []],
        cuisine=_safe_str(data.get("cuisine")),
        diet_type=_safe_str(data.get("diet_type")),
        prep_time_minutes=_optional_int(data.get("prep_time_minutes")),
        cook_time_minutes=_optional_int(data.get("cook_time_minutes")),
        servings=_optional_int(data.get("servings")),
        tags=[str(tag) for tag in data.get("tags") or []],
        image_url=_safe_str(data.get("image_url")),
        created_at=parse_datetime(data.get("created_at")),
        updated_at=parse_datetime(data.get("updated_at")),
        source=dict_to_source(data.get("source")),
    )


def similarity_to_dict(report: Optional[SimilarityReport]) -> Optional[Row]:
    if report is None:
        return None
    return {
        "sections": [
            {
                "name": section.name,
                "text": section.text,
                "contiguous_overlap": section.contiguous_overlap,
                "ngram_similarity": section.ngram_similarity,
                "level": section.level.value,
            }
            for section in report.sections
        ],
        "max_contiguous_token_overlap": report.max_contiguous_token_overlap,
        "max_ngram_similarity": report.max_ngram_similarity,
        "violates_policy": report.violates_policy,
        "details": report.details,
    }


def dict_to_similarity(data: Optional[Row]) -> Optional[SimilarityReport]:
    if not data:
        return None
    return SimilarityReport(
        sections=[
            SectionSimilarity(
                name=str(item.get("name")),
                text=str(item.get("text") or ""),
                contiguous_overlap=_safe_int(item.get("contiguous_overlap")),
                ngram_similarity=float(item.get("ngram_similarity") or 0.0),
                level=SimilarityLevel(item.get("level") or SimilarityLevel.OK.value),
            )
            for item in data.get("sections") or []
        ],
        details=_safe_str(data.get("details")),
    )


def draft_to_dict(draft: RecipeDraft) -> Row:
    return {
        "recipe": recipe_to_dict(draft.recipe),
        "source": source_to_dict(draft.source),
        "validation_report": {
            "errors": list(draft.validation_report.errors),
            "warnings": list(draft.validation_report.warnings),
            "is_valid": draft.validation_report.is_valid,
        },
        "similarity_report": similarity_to_dict(draft.similarity_report),
        "still_violates_policy": draft.still_violates_policy,
        "repair_applied": draft.repair_applied,
        "confidence": draft.confidence,
        "artifacts": [{"type": artifact.type, "uri": artifact.uri} for artifact in draft.artifacts],
    }


def dict_to_draft(data: Row) -> RecipeDraft:
    validation = data.get("validation_report") or {}
    return RecipeDraft(
        recipe=dict_to_recipe(data["recipe"]),
        source=dict_to_source(data.get("source")) or RecipeSource(url=""),
        validation_report=ValidationReport(
            errors=list(validation.get("errors") or []),
            warnings=list(validation.get("warnings") or []),
        ),
        similarity_report=dict_to_similarity(data.get("similarity_report")),
        still_violates_policy=bool(data.get("still_violates_policy")),
        repair_applied=bool(data.get("repair_applied")),
        confidence=float(data.get("confidence") or 0.0),
        artifacts=[
            ArtifactRef(type=str(item.get("type")), uri=str(item.get("uri")))
            for item in data.get("artifacts") or []
            if isinstance(item, dict)
        ],
    )

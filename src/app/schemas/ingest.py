from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class IngestRequest(BaseModel):
    mode: Literal["url", "query"] = "url"
    url: Optional[str] = None
    query: Optional[str] = Field(default=None, max_length=500)
    thread_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_mode_fields(self) -> "IngestRequest":
        if self.mode == "url" and not self.url:
            raise ValueError("url is required when mode is 'url'")
        if self.mode == "query" and not (self.query and self.query.strip()):
            raise ValueError("query is required when mode is 'query'")
        return self


class TaskCreatedResponse(BaseModel):
    task_id: str
    thread_id: str
    status: str = "Pending"
    created_at: Optional[datetime] = None


class TaskStateResponse(BaseModel):
    task_id: str
    status: str = Field(..., description="Pending, Running, ReviewReady, Committed, Rejected, Expired, Failed, Cancelled or Unknown")
    progress: int = 0
    current_phase: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    last_updated: Optional[datetime] = None
    version: Optional[int] = Field(None, description="Token to send back as expected_version on commit")


class IngredientItem(BaseModel):
    name: str
    quantity: Optional[float] = None
    unit: Optional[str] = None
    notes: Optional[str] = None


class RecipeSource(BaseModel):
    url: str
    url_hash: Optional[str] = None
    site_name: Optional[str] = None
    author: Optional[str] = None
    retrieved_at: Optional[datetime] = None
    extraction_method: Optional[str] = None
    license_hint: Optional[str] = None


class RecipeResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    ingredients: list[IngredientItem] = Field(default_factory=list)
    instructions: list[str] = Field(default_factory=list)
    cuisine: Optional[str] = None
    diet_type: Optional[str] = None
    prep_time_minutes: Optional[int] = None
    cook_time_minutes: Optional[int] = None
    servings: Optional[int] = None
    tags: list[str] = Field(default_factory=list)
    image_url: Optional[str] = None


class SectionSimilarityResponse(BaseModel):
    name: str
    contiguous_overlap: int
    ngram_similarity: float
    level: str


class SimilarityResponse(BaseModel):
    max_contiguous_token_overlap: int = 0
    max_ngram_similarity: float = 0.0
    violates_policy: bool = False
    sections: list[SectionSimilarityResponse] = Field(default_factory=list)
    details: Optional[str] = None


class ArtifactItem(BaseModel):
    type: str
    uri: str


class DraftResponse(BaseModel):
    task_id: str
    recipe: RecipeResponse
    source: RecipeSource
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    similarity: Optional[SimilarityResponse] = None
    still_violates_policy: bool = False
    repair_applied: bool = False
    confidence: float = 0.0
    artifacts: list[ArtifactItem] = Field(default_factory=list)


class CommitRequest(BaseModel):
    expected_version: Optional[int] = Field(None, ge=0)


class CommitResponse(BaseModel):
    task_id: str
    recipe_id: str
    already_committed: bool = False
    duplicate_of: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class RejectResponse(BaseModel):
    task_id: str
    status: str
    already_rejected: bool = False
    rejected_at: Optional[str] = None


class ArtifactListResponse(BaseModel):
    task_id: str
    artifacts: list[ArtifactItem] = Field(default_factory=list)


class RepairResponse(BaseModel):
    task_id: str
    repair_needed: bool = True
    repaired_sections: list[str] = Field(default_factory=list)
    still_violates_policy: bool = False
    draft: DraftResponse

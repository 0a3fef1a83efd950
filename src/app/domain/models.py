# src/app/domain/models.py
"""
Domain models for the recipe ingest workflow.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


AGENT_TYPE_INGEST = "Ingest"

# Keys written into AgentTask.metadata by the workflow
META_REVIEW_READY_AT = "review_ready_at"
META_COMMITTED_RECIPE_ID = "committed_recipe_id"
META_COMMITTED_AT = "committed_at"
META_REJECTED_AT = "rejected_at"
META_REJECTION_REASON = "rejection_reason"
META_EXPIRED_AT = "expired_at"
META_EXPIRATION_REASON = "expiration_reason"
META_REPAIRED_AT = "repaired_at"


class TaskStatus(str, Enum):
    """Lifecycle of an ingest task."""
    PENDING = "Pending"
    RUNNING = "Running"
    REVIEW_READY = "ReviewReady"
    COMMITTED = "Committed"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TaskStatus.COMMITTED,
    TaskStatus.REJECTED,
    TaskStatus.EXPIRED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

# Every state write is checked against this table. Running -> Running covers
# progress updates between phases.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.REVIEW_READY,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.REVIEW_READY: frozenset({TaskStatus.COMMITTED, TaskStatus.REJECTED, TaskStatus.EXPIRED}),
}


def can_transition(current: Optional[TaskStatus], target: TaskStatus) -> bool:
    if current is None:
        return target == TaskStatus.PENDING
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def allowed_sources(target: TaskStatus) -> frozenset[TaskStatus]:
    """States from which ``target`` may be entered."""
    return frozenset(source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets)


class IngestMode(str, Enum):
    URL = "url"
    QUERY = "query"


class Phase(str, Enum):
    FETCH = "Fetch"
    EXTRACT = "Extract"
    VALIDATE = "Validate"
    REVIEW_READY = "ReviewReady"


class ExtractionMethod(str, Enum):
    JSON_LD = "JsonLd"
    LLM = "Llm"


class SimilarityLevel(str, Enum):
    OK = "ok"
    WARN = "warn"
    BLOCK = "block"


@dataclass
class IngestPayload:
    mode: IngestMode
    url: Optional[str] = None
    query: Optional[str] = None


@dataclass
class AgentTask:
    """
    A unit of ingest work.
    The payload never changes after creation; metadata only changes through
    versioned writes, and ``version`` is the token those writes compare.
    """
    task_id: str
    thread_id: str
    payload: IngestPayload
    created_at: datetime
    agent_type: str = AGENT_TYPE_INGEST
    metadata: dict[str, str] = field(default_factory=dict)
    version: int = 0


@dataclass
class TaskState:
    """Ephemeral progress record; absence means unknown, not failure."""
    task_id: str
    status: TaskStatus
    progress: int = 0
    current_phase: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    last_updated: Optional[datetime] = None


@dataclass
class Ingredient:
    name: str
    quantity: Optional[float] = None
    unit: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class RecipeSource:
    """Where a recipe came from and how it was obtained."""
    url: str
    url_hash: Optional[str] = None
    site_name: Optional[str] = None
    author: Optional[str] = None
    retrieved_at: Optional[datetime] = None
    extraction_method: Optional[str] = None
    license_hint: Optional[str] = None


@dataclass
class Recipe:
    id: str
    name: str
    description: Optional[str] = None
    ingredients: list[Ingredient] = field(default_factory=list)
    instructions: list[str] = field(default_factory=list)
    cuisine: Optional[str] = None
    diet_type: Optional[str] = None
    prep_time_minutes: Optional[int] = None
    cook_time_minutes: Optional[int] = None
    servings: Optional[int] = None
    tags: list[str] = field(default_factory=list)
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    source: Optional[RecipeSource] = None


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class SectionSimilarity:
    """Overlap metrics for one scored section (description, instruction_N)."""
    name: str
    text: str
    contiguous_overlap: int
    ngram_similarity: float
    level: SimilarityLevel


@dataclass
class SimilarityReport:
    sections: list[SectionSimilarity] = field(default_factory=list)
    details: Optional[str] = None

    @property
    def max_contiguous_token_overlap(self) -> int:
        return max((section.contiguous_overlap for section in self.sections), default=0)

    @property
    def max_ngram_similarity(self) -> float:
        return max((section.ngram_similarity for section in self.sections), default=0.0)

    @property
    def violates_policy(self) -> bool:
        return any(section.level == SimilarityLevel.BLOCK for section in self.sections)

    @property
    def blocking_sections(self) -> list[SectionSimilarity]:
        return [section for section in self.sections if section.level == SimilarityLevel.BLOCK]


@dataclass
class ArtifactRef:
    type: str
    uri: str


@dataclass
class RecipeDraft:
    """Candidate recipe awaiting review, with the evidence gathered for it."""
    recipe: Recipe
    source: RecipeSource
    validation_report: ValidationReport
    similarity_report: Optional[SimilarityReport] = None
    still_violates_policy: bool = False
    repair_applied: bool = False
    confidence: float = 0.0
    artifacts: list[ArtifactRef] = field(default_factory=list)


@dataclass
class CommitResult:
    task_id: str
    recipe_id: str
    already_committed: bool = False
    duplicate_of: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class RejectResult:
    task_id: str
    status: TaskStatus
    already_rejected: bool = False
    rejected_at: Optional[str] = None

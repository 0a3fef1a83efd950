# src/app/deps.py (singletons wired from settings, exposed as FastAPI dependencies)

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from supabase import create_client, Client

from src.app.config import settings
from src.app.domain.errors import InvalidPayloadError, StorageError
from src.app.infra.db.base import DraftRepository, RecipeRepository, TaskRepository
from src.app.infra.db.memory_repos import (
    InMemoryDraftRepository,
    InMemoryRecipeRepository,
    InMemoryTaskRepository,
)
from src.app.infra.db.supabase_repos import (
    SupabaseDraftRepository,
    SupabaseRecipeRepository,
    SupabaseTaskRepository,
)
from src.app.infra.llm.base import TextCompletionClient
from src.app.infra.llm.gemini_client import GeminiCompletionClient
from src.app.infra.llm.retry import RetryingCompletionClient
from src.app.infra.search.base import SearchProvider
from src.app.infra.search.brave_provider import BraveSearchProvider
from src.app.infra.state.base import EventBus, TaskStateStore
from src.app.infra.state.memory import InMemoryEventBus, InMemoryTaskStateStore
from src.app.infra.state.supabase_state_store import SupabaseTaskStateStore
from src.app.infra.storage.base import StorageProvider
from src.app.infra.storage.memory_provider import InMemoryStorageProvider
from src.app.infra.storage.r2_provider import R2StorageProvider
from src.app.services.artifact_retention import ArtifactRetentionSweeper
from src.app.services.artifacts import ArtifactWriter
from src.app.services.circuit_breaker import CircuitBreaker, CircuitBreakerOptions
from src.app.services.commit_service import CommitService
from src.app.services.draft_repair import DraftRepairService
from src.app.services.expiration_sweeper import ExpirationSweeper
from src.app.services.extraction import ExtractionChain, JsonLdExtractor, LlmExtractor, RecipeExtractor
from src.app.services.fetcher import Fetcher, FetchOptions
from src.app.services.ingest_service import IngestService
from src.app.services.phase_runner import PhaseRunner, PhaseRunnerOptions
from src.app.services.repair import RepairService
from src.app.services.similarity import GuardrailOptions, SimilarityGuard
from src.app.services.ssrf_guard import SsrfGuard
from src.app.services.validator import RecipeValidator

logger = logging.getLogger(__name__)

_client: Client | None = None
_stores: Optional[tuple[TaskRepository, DraftRepository, RecipeRepository, TaskStateStore]] = None
_events: EventBus | None = None
_ingest_service: IngestService | None = None
_sweeper: ExpirationSweeper | None = None
_storage: StorageProvider | None = None
_retention: ArtifactRetentionSweeper | None = None


def get_supabase() -> Client:
    global _client
    if _client is None:
        _client = create_client(str(settings.SUPABASE_URL),
                                settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


def state_ttl() -> timedelta:
    return timedelta(hours=settings.TASK_STATE_TTL_HOURS)


def expiration_window() -> timedelta:
    return timedelta(days=settings.DRAFT_EXPIRATION_DAYS)


def get_stores() -> tuple[TaskRepository, DraftRepository, RecipeRepository, TaskStateStore]:
    global _stores
    if _stores is None:
        if settings.STORE_BACKEND == "supabase":
            supa = get_supabase()
            _stores = (
                SupabaseTaskRepository(supa),
                SupabaseDraftRepository(supa),
                SupabaseRecipeRepository(supa),
                SupabaseTaskStateStore(supa, default_ttl=state_ttl()),
            )
        else:
            _stores = (
                InMemoryTaskRepository(),
                InMemoryDraftRepository(),
                InMemoryRecipeRepository(),
                InMemoryTaskStateStore(default_ttl=state_ttl()),
            )
        logger.info("deps.stores_ready backend=%s", settings.STORE_BACKEND)
    return _stores


def get_event_bus() -> EventBus:
    global _events
    if _events is None:
        _events = InMemoryEventBus()
    return _events


def get_storage() -> StorageProvider:
    global _storage
    if _storage is None:
        _storage = build_storage()
    return _storage


def build_storage() -> StorageProvider:
    if settings.R2_BUCKET_NAME:
        try:
            return R2StorageProvider(
                account_id=settings.R2_ACCOUNT_ID,
                access_key_id=settings.R2_ACCESS_KEY_ID,
                secret_access_key=settings.R2_SECRET_ACCESS_KEY,
                bucket_name=settings.R2_BUCKET_NAME,
                public_url=settings.R2_PUBLIC_URL,
            )
        except StorageError as e:
            logger.warning("deps.r2_unavailable error=%s; artifacts stay in memory", e)
    return InMemoryStorageProvider()


def build_llm_client() -> Optional[TextCompletionClient]:
    try:
        gemini = GeminiCompletionClient(api_key=settings.GEMINI_API_KEY, model_name=settings.GEMINI_MODEL)
    except InvalidPayloadError as e:
        logger.warning("deps.llm_disabled reason=%s", e)
        return None
    return RetryingCompletionClient(
        gemini,
        max_attempts=settings.LLM_MAX_ATTEMPTS,
        backoff_base_seconds=settings.LLM_BACKOFF_BASE_SECONDS,
    )


def build_search_provider() -> Optional[SearchProvider]:
    if not settings.BRAVE_SEARCH_API_KEY:
        return None
    return BraveSearchProvider(api_key=settings.BRAVE_SEARCH_API_KEY)


def build_ingest_service() -> IngestService:
    tasks, drafts, recipes, states = get_stores()
    ssrf_guard = SsrfGuard()
    breaker = CircuitBreaker(
        CircuitBreakerOptions(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            failure_window=timedelta(minutes=settings.CIRCUIT_FAILURE_WINDOW_MINUTES),
            block_duration=timedelta(minutes=settings.CIRCUIT_BLOCK_DURATION_MINUTES),
        )
    )
    fetcher = Fetcher(
        ssrf_guard,
        breaker,
        FetchOptions(
            timeout_seconds=settings.FETCH_TIMEOUT_SECONDS,
            max_retries=settings.MAX_FETCH_RETRIES,
            max_size_bytes=settings.MAX_FETCH_SIZE_BYTES,
            max_redirects=settings.MAX_REDIRECTS,
            user_agent=settings.INGEST_USER_AGENT,
            respect_robots_txt=settings.RESPECT_ROBOTS_TXT,
        ),
    )

    artifacts = ArtifactWriter(get_storage())
    llm = build_llm_client()
    extractors: list[RecipeExtractor] = [JsonLdExtractor()]
    repairer = None
    guard = SimilarityGuard(
        GuardrailOptions(
            token_overlap_warn=settings.GUARDRAIL_TOKEN_OVERLAP_WARN,
            token_overlap_error=settings.GUARDRAIL_TOKEN_OVERLAP_ERROR,
            similarity_warn=settings.GUARDRAIL_SIMILARITY_WARN,
            similarity_error=settings.GUARDRAIL_SIMILARITY_ERROR,
            ngram_size=settings.GUARDRAIL_NGRAM_SIZE,
        )
    )
    if llm is not None:
        extractors.append(LlmExtractor(llm, content_budget=settings.CONTENT_CHARACTER_BUDGET))
        repairer = RepairService(llm, guard)

    runner = PhaseRunner(
        tasks=tasks,
        drafts=drafts,
        states=states,
        events=get_event_bus(),
        fetcher=fetcher,
        extractor=ExtractionChain(extractors),
        validator=RecipeValidator(),
        guard=guard,
        repairer=repairer,
        artifacts=artifacts,
        search=build_search_provider(),
        ssrf_guard=ssrf_guard,
        options=PhaseRunnerOptions(
            fetch_weight=settings.PHASE_WEIGHT_FETCH,
            extract_weight=settings.PHASE_WEIGHT_EXTRACT,
            validate_weight=settings.PHASE_WEIGHT_VALIDATE,
            review_ready_weight=settings.PHASE_WEIGHT_REVIEW_READY,
            auto_repair_on_error=settings.AUTO_REPAIR_ON_ERROR,
            block_on_policy_violation=settings.BLOCK_ON_POLICY_VIOLATION,
            deadline_seconds=settings.PIPELINE_DEADLINE_SECONDS,
            state_ttl=state_ttl(),
        ),
    )
    commits = CommitService(
        tasks,
        drafts,
        recipes,
        states,
        expiration_window=expiration_window(),
        state_ttl=state_ttl(),
    )
    draft_repairs = DraftRepairService(
        tasks,
        drafts,
        states,
        artifacts,
        repairer,
        expiration_window=expiration_window(),
        deadline_seconds=settings.PIPELINE_DEADLINE_SECONDS,
    )
    return IngestService(tasks, drafts, states, runner, commits, draft_repairs)


def get_ingest_service() -> IngestService:
    global _ingest_service
    if _ingest_service is None:
        _ingest_service = build_ingest_service()
    return _ingest_service


def get_sweeper() -> ExpirationSweeper:
    global _sweeper
    if _sweeper is None:
        tasks, _, _, states = get_stores()
        _sweeper = ExpirationSweeper(
            tasks,
            states,
            window=expiration_window(),
            interval=timedelta(minutes=settings.EXPIRATION_SWEEP_INTERVAL_MINUTES),
            initial_delay=timedelta(seconds=settings.EXPIRATION_SWEEP_INITIAL_DELAY_SECONDS),
            batch_size=settings.EXPIRATION_SWEEP_BATCH_SIZE,
            state_ttl=state_ttl(),
        )
    return _sweeper


def get_retention_sweeper() -> ArtifactRetentionSweeper:
    global _retention
    if _retention is None:
        tasks, _, _, states = get_stores()
        _retention = ArtifactRetentionSweeper(
            get_storage(),
            tasks,
            states,
            committed_retention=timedelta(days=settings.ARTIFACT_RETENTION_COMMITTED_DAYS),
            other_retention=timedelta(days=settings.ARTIFACT_RETENTION_OTHER_DAYS),
            interval=timedelta(hours=settings.ARTIFACT_RETENTION_INTERVAL_HOURS),
            max_deletes_per_run=settings.ARTIFACT_RETENTION_MAX_DELETES,
        )
    return _retention

from __future__ import annotations


class IngestError(Exception):
    """Root of every failure the ingest pipeline reports to callers.

    ``code`` is a stable identifier stored on failed tasks and returned by the
    API; ``reason`` is the human readable message.
    """

    code = "INGEST_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.reason = message
        if code:
            self.code = code


class NotFoundError(IngestError):
    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str, what: str = "Task", code: str | None = None):
        super().__init__(f"{what} not found: {task_id}", code)
        self.task_id = task_id


class WrongStateError(IngestError):
    code = "INVALID_TASK_STATE"

    def __init__(self, task_id: str, current_status: str | None, expected: str = "ReviewReady"):
        status_label = current_status or "Unknown"
        super().__init__(f"Task {task_id} is {status_label}, expected {expected}")
        self.task_id = task_id
        self.current_status = status_label
        self.expected = expected


class ExpiredError(IngestError):
    code = "DRAFT_EXPIRED"

    def __init__(self, task_id: str, expiration_days: int):
        super().__init__(f"Draft for task {task_id} expired after {expiration_days} days in review")
        self.task_id = task_id
        self.expiration_days = expiration_days


class ConflictError(IngestError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, task_id: str, expected_version: int | None, actual_version: int | None):
        super().__init__(
            f"Task {task_id} was modified concurrently: expected version {expected_version}, found {actual_version}"
        )
        self.task_id = task_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class BlockedError(IngestError):
    code = "SSRF_BLOCKED"

    def __init__(self, url: str, reason: str, code: str | None = None):
        super().__init__(f"Blocked {url}: {reason}", code)
        self.url = url
        self.block_reason = reason


class FetchFailedError(IngestError):
    code = "FETCH_FAILED"

    def __init__(self, url: str, reason: str, status_code: int | None = None, code: str | None = None):
        super().__init__(f"Failed to fetch {url}: {reason}", code)
        self.url = url
        self.status_code = status_code


class ExtractionFailedError(IngestError):
    code = "NO_RECIPE_CONTENT"


class PolicyViolationError(IngestError):
    code = "POLICY_VIOLATION"

    def __init__(self, sections: list[str]):
        super().__init__(f"Extracted text still copies the source after repair: {', '.join(sections)}")
        self.sections = sections


class TransientError(IngestError):
    code = "TRANSIENT"

    def __init__(self, message: str, retryable: bool = True, code: str | None = None):
        super().__init__(message, code)
        self.retryable = retryable


class ModelError(IngestError):
    """The text-generation provider refused or failed the request for good."""

    code = "LLM_ERROR"


class ValidationFailedError(IngestError):
    code = "VALIDATION_FAILED"

    def __init__(self, errors: list[str]):
        super().__init__(f"Recipe failed validation: {'; '.join(errors)}")
        self.errors = errors


class InvalidPayloadError(IngestError):
    code = "INVALID_PAYLOAD"


class StorageError(IngestError):
    code = "STORAGE_ERROR"


class RepositoryError(IngestError):
    code = "REPOSITORY_ERROR"

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Repository error during {operation}: {reason}")
        self.operation = operation


class WorkerConfigurationError(IngestError):
    code = "WORKER_CONFIGURATION"

    def __init__(self, errors: list[str]):
        super().__init__(f"Worker configuration errors: {', '.join(errors)}")
        self.errors = errors

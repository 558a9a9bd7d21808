"""
Error taxonomy for the scene generation pipeline.

Every failure that ends a run is one of these. The orchestrator copies the
message into the scene's ``failure_reason``; the routes map each class to an
HTTP status.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""

    error_code = "PIPELINE_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ValidationError(PipelineError):
    """Bad or missing input, including pre-flight duration overflow."""

    error_code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(PipelineError):
    error_code = "NOT_FOUND"
    http_status = 404


class ConflictError(PipelineError):
    """A run was requested for a scene that is already generating."""

    error_code = "CONFLICT"
    http_status = 409


class ProviderError(PipelineError):
    """Non-2xx or malformed response from a generation vendor."""

    error_code = "PROVIDER_ERROR"
    http_status = 502

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.status_code = status_code


class GenerationTimeoutError(PipelineError, TimeoutError):
    """Polling budget exhausted before the vendor reached a terminal state."""

    error_code = "POLL_TIMEOUT"
    http_status = 504

    def __init__(self, message: str, task_id: str, attempts: int):
        super().__init__(message, {"task_id": task_id, "attempts": attempts})
        self.task_id = task_id
        self.attempts = attempts


class RecoveryExhaustedError(PipelineError):
    """Lip-sync reported success but neither polling nor the raw probe produced a URL."""

    error_code = "RECOVERY_EXHAUSTED"
    http_status = 502

    def __init__(self, message: str, job_id: str):
        super().__init__(message, {"job_id": job_id})
        self.job_id = job_id


class SupersededError(ConflictError):
    """Another run took ownership of the scene while this one was in flight."""

    error_code = "SUPERSEDED"

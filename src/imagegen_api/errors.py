"""Error types for generation, provider, and persistence failures."""

from __future__ import annotations

import enum


class FailureCategory(str, enum.Enum):
    """How a provider-reported failure is handled by the pipeline."""

    # Content rejected by the provider's safety filter; the only fallback trigger.
    MODERATION = "moderation"
    GENERIC = "generic"
    # Provider reported a bare "error" reason; polled again against the same budget.
    TRANSIENT = "transient"


class GenerationError(Exception):
    """Base exception for a task's generation pipeline.

    ``category`` is a stable tag for logs; ``str(exc)`` is the human-readable
    reason stored on the task.
    """

    category = "generation_error"


class SubmissionError(GenerationError):
    """Raised when a provider rejects the initial generation request."""

    category = "submission_rejected"

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] submission rejected: {message}")


class ProviderFailedError(GenerationError):
    """Raised when a provider reports the remote job as failed."""

    category = "provider_failed"

    def __init__(
        self,
        provider: str,
        reason: str,
        failure_category: FailureCategory = FailureCategory.GENERIC,
    ) -> None:
        self.provider = provider
        self.reason = reason
        self.failure_category = failure_category
        super().__init__(f"[{provider}] generation failed: {reason}")


class ModerationRejectedError(ProviderFailedError):
    """Raised when a provider's safety filter rejects the prompt or the output."""

    category = "moderation_rejected"

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(provider, reason, FailureCategory.MODERATION)


class PollTimeoutError(GenerationError):
    """Raised when the polling attempt budget runs out."""

    category = "timeout"

    def __init__(self, provider: str, attempts: int, last_error: str | None = None) -> None:
        self.provider = provider
        self.attempts = attempts
        self.last_error = last_error
        message = f"[{provider}] generation timed out after {attempts} poll attempts"
        if last_error:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)


class DownloadFailedError(GenerationError):
    """Raised when a produced image cannot be downloaded or stored."""

    category = "download_failed"

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"image download failed: {message}")


class UnrecognizedResponseError(GenerationError):
    """Raised when a succeeded provider payload matches no known image shape."""

    category = "unrecognized_response"

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] unrecognized response: {message}")


class ProviderRequestError(Exception):
    """Transport-level failure of one provider call (network, HTTP status, bad JSON)."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")


class PipelineCancelled(Exception):
    """Control-flow signal raised at a cancellation checkpoint."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id} cancelled")


class PersistenceError(Exception):
    """Raised when a store snapshot cannot be written to disk."""

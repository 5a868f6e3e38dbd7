"""
Error taxonomy for the ingestion pipeline.

- RateLimitedError: the extraction service refused the call (HTTP 429); retryable.
- ExhaustedRetriesError: rate limiting persisted through every retry; escalates
  to the cooldown guard.
- ValidationFailure: bad or missing input; never retried.
- DependencyError: a storage, workflow, upload or extraction collaborator failed.
- BatchRejectedError: the only failures surfaced to callers of a batch submit.
"""


class IngestionError(Exception):
    """Base class for all ingestion errors."""


class RateLimitedError(IngestionError):
    """Raised by collaborators when the remote service signals rate limiting."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ExhaustedRetriesError(IngestionError):
    """Rate limiting persisted across all retry attempts."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Rate limit exceeded after {attempts} attempts. The system is currently "
            "overloaded. Please wait 10-15 minutes before trying again."
        )
        self.attempts = attempts


class ValidationFailure(IngestionError):
    """Input is missing or malformed."""


class DependencyError(IngestionError):
    """A downstream collaborator failed."""


class RecordNotFoundError(DependencyError):
    """An update targeted a record id the store does not know."""


class BatchRejectedError(IngestionError):
    """A batch was refused before any work started."""


class BatchTooLargeError(BatchRejectedError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Please process maximum {limit} files at a time to avoid system overload "
            f"(received {size})."
        )
        self.size = size
        self.limit = limit


class CooldownActiveError(BatchRejectedError):
    def __init__(self, remaining: float) -> None:
        super().__init__(
            "System protection: ingestion is in cooldown mode for another "
            f"{remaining:.0f}s. Please wait before processing more documents."
        )
        self.remaining = remaining


class SubmissionThrottledError(BatchRejectedError):
    def __init__(self, wait: float) -> None:
        super().__init__(
            f"Please wait {wait:.0f} more seconds before processing another email "
            "to avoid rate limits."
        )
        self.wait = wait


def is_systemic_overload(exc: BaseException) -> bool:
    """Whether a failure should halt the batch and trigger the cooldown guard."""
    return isinstance(exc, ExhaustedRetriesError)

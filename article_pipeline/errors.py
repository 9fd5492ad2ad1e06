"""
Error taxonomy for article processing.

Every failure that ends an attempt is classified into a FailureKind and stored
on the article, so a batch summary can tell broken input from outages.
"""

from enum import Enum


class FailureKind(Enum):
    """How a failed attempt should be treated by future batches."""
    ADMISSION = "admission"  # never retried automatically
    CONTENT = "content"      # broken input/output, retried after cooldown
    TRANSIENT = "transient"  # infrastructure, retried after cooldown


class PipelineError(Exception):
    """Base class for pipeline errors."""


class AdmissionError(PipelineError):
    """Article rejected before any processing started."""


class ContentTooLongError(AdmissionError):
    """Source text exceeds the configured maximum length."""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Content too long: {length} chars (limit {limit})")
        self.length = length
        self.limit = limit


class ContentError(PipelineError):
    """Failure attributable to the content itself."""


class EmptyGenerationError(ContentError):
    """Generation API returned an empty body."""


class InputTooLongError(ContentError):
    """Generation API rejected the input as exceeding its context length."""


class GenerationError(PipelineError):
    """Generation API call failed (timeout, HTTP error, malformed response)."""


def classify_failure(error: BaseException) -> FailureKind:
    """Map an exception raised during an attempt to its FailureKind."""
    if isinstance(error, AdmissionError):
        return FailureKind.ADMISSION
    if isinstance(error, ContentError):
        return FailureKind.CONTENT
    return FailureKind.TRANSIENT

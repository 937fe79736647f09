"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class PipelineError(Exception):
    pass


class ConfigError(PipelineError):
    pass


class TransientIOError(PipelineError):
    """Network or storage hiccup; the job is retried with backoff."""


class SourceQuotaError(PipelineError):
    """A store endpoint or the model provider asked us to slow down.

    Cool-downs do not count against the job's attempt budget.
    """

    def __init__(self, message: str, *, source: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.source = source
        self.retry_after = retry_after


class ValidationFailure(PipelineError):
    pass


class RenderError(ValidationFailure):
    def __init__(self, message: str, *, document_scope: bool = False, page_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.document_scope = document_scope
        self.page_index = page_index


class ListingValidationError(ValidationFailure):
    pass


class ExtractionErrorKind(str, Enum):
    TRANSIENT = "transient"
    INVALID_RESPONSE = "invalid_response"
    QUOTA_EXCEEDED = "quota_exceeded"
    # auth or request errors (4xx other than 429); retrying the same call cannot help
    REQUEST_REJECTED = "request_rejected"


class ExtractionError(PipelineError):
    def __init__(
        self,
        kind: ExtractionErrorKind,
        message: str,
        *,
        retry_after: Optional[float] = None,
        raw_response: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after
        self.raw_response = raw_response
        # TokenUsage spent before the failure, filled in by the extraction client
        self.usage = None

    @property
    def retryable(self) -> bool:
        return self.kind is ExtractionErrorKind.TRANSIENT


class TerminalJobFailure(PipelineError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class CatalogConflict(PipelineError):
    """Unique-constraint violation that is not an idempotent re-application."""


_SUMMARY_PREFIXES = (
    (ExtractionError, "Product extraction failed"),
    (ListingValidationError, "Model output failed validation"),
    (RenderError, "Flyer PDF could not be rendered"),
    (SourceQuotaError, "Source is rate limiting requests"),
    (TransientIOError, "Temporary I/O problem"),
    (TerminalJobFailure, "Job failed"),
    (CatalogConflict, "Catalog conflict"),
    (ConfigError, "Invalid configuration"),
    (ValidationFailure, "Validation failed"),
    (PipelineError, "Pipeline error"),
)


def summarize_error(exc: BaseException, *, limit: int = 300) -> str:
    """Return a single operator-facing line for exc (no traceback, bounded length).

    Only pipeline errors carry their message into the summary. Anything else is
    reduced to its class name; the full detail belongs in the log.
    """
    for cls, prefix in _SUMMARY_PREFIXES:
        if isinstance(exc, cls):
            break
    else:
        return f"Unexpected error ({type(exc).__name__})"
    if isinstance(exc, TerminalJobFailure):
        prefix = f"{prefix} ({exc.reason})"
    elif isinstance(exc, ExtractionError):
        prefix = f"{prefix} ({exc.kind.value})"
    detail = " ".join(str(exc).split())
    text = f"{prefix}: {detail}" if detail else prefix
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text

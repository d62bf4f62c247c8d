"""
Exceptions raised by the insight clustering pipeline and its scheduler.

Per-cluster and per-form failures (embedding, AI, email) are caught and logged
by the pipeline; load-stage persistence failures and schedule configuration
failures reach the caller.
"""


class InsightPipelineError(Exception):
    """Base class for all pipeline errors."""


class InvalidIdError(InsightPipelineError, ValueError):
    """A form, analysis or insight identifier is malformed."""


class InsufficientDataError(InsightPipelineError):
    """Fewer insights than clustering requires. A terminal state, not a failure."""

    def __init__(self, form_id: str, count: int, minimum: int):
        self.form_id = form_id
        self.count = count
        self.minimum = minimum
        super().__init__(
            f"Form {form_id} has {count} clusterable insights (minimum {minimum} required)"
        )


class DimensionMismatch(InsightPipelineError, ValueError):
    """Two vectors compared with cosine similarity have different lengths."""


class EmbeddingProviderError(InsightPipelineError):
    """The embedding model failed to initialize or to embed a text."""


class EmbeddingFormatError(EmbeddingProviderError):
    """The embedding model returned something that is not a numeric vector."""


class AIServiceError(InsightPipelineError):
    """The generative AI service failed or returned an unusable answer."""


class NotificationError(InsightPipelineError):
    """The email collaborator could not deliver a notification."""


class PersistenceError(InsightPipelineError):
    """The persistence store failed to read or write."""


class NotFoundError(InsightPipelineError):
    """A requested record does not exist."""


class InvalidScheduleError(InsightPipelineError):
    """The scheduler's cron expression cannot be parsed."""

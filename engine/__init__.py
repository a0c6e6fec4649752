from .errors import (
    ConcurrentModificationError,
    ConfigurationError,
    DuplicateEpisodeError,
    PipelineStageError,
    ValidationFailureError,
)
from .governor import ResourceGovernor, RetryPolicy, retry_with_backoff

__all__ = [
    "ConcurrentModificationError",
    "ConfigurationError",
    "DuplicateEpisodeError",
    "PipelineStageError",
    "ResourceGovernor",
    "RetryPolicy",
    "ValidationFailureError",
    "retry_with_backoff",
]

"""
Error taxonomy for the collection pipeline.

Retryable categories map 1:1 onto RetryHandler policies.  Dependency and
circuit skips are not errors; they are ``SkipReason`` values that only ever
surface as run warnings.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    VALIDATION = "validation"
    TIMEOUT = "timeout"


class PipelineError(Exception):
    """Base class for errors raised by source jobs and pipeline stores."""

    category: Optional[ErrorCategory] = None


class TransientNetworkError(PipelineError):
    category = ErrorCategory.NETWORK


class RateLimitError(PipelineError):
    category = ErrorCategory.RATE_LIMIT


class AuthError(PipelineError):
    category = ErrorCategory.AUTH


class ValidationError(PipelineError):
    """Scraped data failed validation.  Never retried."""

    category = ErrorCategory.VALIDATION


class SourceTimeoutError(PipelineError):
    category = ErrorCategory.TIMEOUT


class EntityNotResolved(PipelineError):
    """A raw team name could not be matched and auto-create was off."""

    # Re-running the same scrape resolves the same names the same way.
    category = ErrorCategory.VALIDATION

    def __init__(self, raw_name: str, normalized: str, source: str):
        self.raw_name = raw_name
        self.normalized = normalized
        self.source = source
        super().__init__(
            f'Could not resolve team: "{raw_name}" '
            f'(normalized: "{normalized}") from source "{source}"'
        )


class PersistenceConflict(PipelineError):
    """Uniqueness or version conflict on a shared row; callers re-query."""


class SkipReason(str, Enum):
    DEPENDENCY_NOT_SATISFIED = "dependency_not_satisfied"
    CIRCUIT_OPEN = "circuit_open"
    DATA_FRESH = "data_fresh"

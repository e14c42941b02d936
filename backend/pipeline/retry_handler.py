"""
Retry handler: exponential backoff keyed by classified failure category.

Every category has its own policy (see ``DEFAULT_POLICIES``).  A failure is
retried while the number of failures so far does not exceed the category's
``max_retries``; validation failures have ``max_retries=0`` and therefore
fail on the first attempt.

Delay before retry *n* (1-based)::

    base  = min(initial_delay_ms * multiplier ** (n - 1), max_delay_ms)
    delay = base + uniform(0, 0.10 * base)

Jitter only ever adds delay.  It never shortens the computed backoff.
"""

import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, TypeVar, Union

import requests

from backend.pipeline.errors import ErrorCategory

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, ErrorCategory], None]

JITTER_FRACTION = 0.10


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    initial_delay_ms: float
    max_delay_ms: float
    backoff_multiplier: float

    def base_delay_ms(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` (1-based), without jitter."""
        return min(
            self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1),
            self.max_delay_ms,
        )


DEFAULT_POLICIES: Dict[ErrorCategory, RetryPolicy] = {
    ErrorCategory.NETWORK:    RetryPolicy(5, 1000, 60000, 2),
    ErrorCategory.RATE_LIMIT: RetryPolicy(3, 5000, 300000, 3),   # up to 5 minutes
    ErrorCategory.AUTH:       RetryPolicy(2, 2000, 10000, 2),
    ErrorCategory.VALIDATION: RetryPolicy(0, 0, 0, 1),           # never retried
    ErrorCategory.TIMEOUT:    RetryPolicy(3, 2000, 30000, 2),
}

# Checked in order; first match wins.
_MESSAGE_KEYWORDS = (
    (ErrorCategory.NETWORK,    ("network", "fetch failed", "econnrefused", "enotfound")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "429", "too many requests")),
    (ErrorCategory.AUTH,       ("auth", "401", "403", "unauthorized")),
    (ErrorCategory.TIMEOUT,    ("timeout", "timed out")),
    (ErrorCategory.VALIDATION, ("validation", "invalid")),
)


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Map an arbitrary exception onto a retry category.

    Precedence, highest first:

    1. a declared ``category`` on the exception (every ``PipelineError``).
       This overrides the message, so ``ValidationError("ECONNREFUSED")``
       is ``validation``, not ``network``.
    2. ``requests`` timeouts are ``timeout``.
    3. case-insensitive keyword search over the message, in
       ``_MESSAGE_KEYWORDS`` order, defaulting to ``network``.

    Only untyped exceptions reach the keyword rules.
    """
    declared = getattr(error, "category", None)
    if isinstance(declared, ErrorCategory):
        return declared
    if isinstance(error, requests.exceptions.Timeout):
        return ErrorCategory.TIMEOUT

    message = str(error).lower()
    for category, keywords in _MESSAGE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return category
    return ErrorCategory.NETWORK


class RetryHandler:
    """Runs an operation under a retry policy.

    ``sleep`` and ``rand`` are injectable so tests can observe the backoff
    schedule without waiting for it.
    """

    def __init__(
        self,
        policies: Optional[Dict[ErrorCategory, RetryPolicy]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self._sleep = sleep
        self._rand = rand

    def with_retry(
        self,
        operation: Callable[[], T],
        error_type: Union[ErrorCategory, str, None] = None,
        config_overrides: Optional[Dict[str, float]] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Retry ``operation`` under one fixed category policy (default network)."""
        category = ErrorCategory(error_type or ErrorCategory.NETWORK)
        policy = self.policies[category]
        if config_overrides:
            policy = replace(policy, **config_overrides)
        return self._execute(operation, lambda _exc: (category, policy), on_retry)

    def with_auto_retry(
        self,
        operation: Callable[[], T],
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Retry ``operation``, reclassifying every failure to pick its policy."""

        def _policy_for(exc: BaseException):
            category = classify_error(exc)
            return category, self.policies[category]

        return self._execute(operation, _policy_for, on_retry)

    def compute_delay_ms(self, policy: RetryPolicy, attempt: int) -> float:
        base = policy.base_delay_ms(attempt)
        return base + self._rand() * base * JITTER_FRACTION

    def _execute(self, operation, policy_for, on_retry):
        attempt = 0
        while True:
            try:
                return operation()
            except Exception as exc:
                attempt += 1
                category, policy = policy_for(exc)

                if attempt > policy.max_retries:
                    if policy.max_retries:
                        logger.warning(
                            "Giving up after %d attempt(s) (%s): %s",
                            attempt, category.value, exc,
                        )
                    raise

                delay_ms = self.compute_delay_ms(policy, attempt)
                logger.info(
                    "Attempt %d/%d failed (%s). Retrying in %dms...",
                    attempt, policy.max_retries, category.value, round(delay_ms),
                )
                if on_retry is not None:
                    on_retry(attempt, exc, category)
                self._sleep(delay_ms / 1000.0)

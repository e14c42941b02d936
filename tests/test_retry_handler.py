"""Tests for retry_handler.py classification and backoff."""

import pytest
import requests
from unittest.mock import MagicMock

from backend.pipeline.errors import (
    AuthError,
    ErrorCategory,
    RateLimitError,
    TransientNetworkError,
    ValidationError,
)
from backend.pipeline.retry_handler import (
    DEFAULT_POLICIES,
    RetryHandler,
    classify_error,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _handler(rand=0.0):
    sleeps = []
    handler = RetryHandler(sleep=sleeps.append, rand=lambda: rand)
    return handler, sleeps


def _failing(*errors, result="ok"):
    """Operation that raises ``errors`` in turn, then returns ``result``."""
    remaining = list(errors)
    op = MagicMock()

    def _call():
        if remaining:
            raise remaining.pop(0)
        return result

    op.side_effect = _call
    return op


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("message,expected", [
    ("Network unreachable", ErrorCategory.NETWORK),
    ("fetch failed", ErrorCategory.NETWORK),
    ("connect ECONNREFUSED 127.0.0.1:443", ErrorCategory.NETWORK),
    ("getaddrinfo ENOTFOUND barttorvik.com", ErrorCategory.NETWORK),
    ("Rate limit exceeded", ErrorCategory.RATE_LIMIT),
    ("HTTP 429", ErrorCategory.RATE_LIMIT),
    ("Too Many Requests", ErrorCategory.RATE_LIMIT),
    ("Auth token expired", ErrorCategory.AUTH),
    ("401 Client Error", ErrorCategory.AUTH),
    ("403 Forbidden", ErrorCategory.AUTH),
    ("Unauthorized", ErrorCategory.AUTH),
    ("Request TIMEOUT", ErrorCategory.TIMEOUT),
    ("read timed out", ErrorCategory.TIMEOUT),
    ("Validation failed: 3 teams", ErrorCategory.VALIDATION),
    ("invalid payload", ErrorCategory.VALIDATION),
    ("something odd happened", ErrorCategory.NETWORK),
])
def test_classify_by_message(message, expected):
    assert classify_error(Exception(message)) == expected


def test_classify_first_match_wins():
    # "network" is checked before "timeout"
    assert classify_error(Exception("network timeout")) == ErrorCategory.NETWORK


def test_classify_trusts_declared_category():
    # Message alone would say network; the type says rate limit.
    assert classify_error(RateLimitError("network busy")) == ErrorCategory.RATE_LIMIT
    assert classify_error(ValidationError("x")) == ErrorCategory.VALIDATION
    # a typed error overrides the keyword rules entirely
    assert classify_error(ValidationError("ECONNREFUSED")) == ErrorCategory.VALIDATION
    assert classify_error(Exception("ECONNREFUSED")) == ErrorCategory.NETWORK


def test_classify_requests_timeout():
    assert classify_error(requests.exceptions.ReadTimeout("slow")) == ErrorCategory.TIMEOUT


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

def test_default_policy_table():
    net = DEFAULT_POLICIES[ErrorCategory.NETWORK]
    assert (net.max_retries, net.initial_delay_ms, net.max_delay_ms, net.backoff_multiplier) == (5, 1000, 60000, 2)
    rl = DEFAULT_POLICIES[ErrorCategory.RATE_LIMIT]
    assert (rl.max_retries, rl.initial_delay_ms, rl.max_delay_ms, rl.backoff_multiplier) == (3, 5000, 300000, 3)
    assert DEFAULT_POLICIES[ErrorCategory.VALIDATION].max_retries == 0


def test_base_delay_is_capped():
    policy = DEFAULT_POLICIES[ErrorCategory.NETWORK]
    assert policy.base_delay_ms(1) == 1000
    assert policy.base_delay_ms(3) == 4000
    assert policy.base_delay_ms(10) == 60000


# ---------------------------------------------------------------------------
# with_retry / with_auto_retry
# ---------------------------------------------------------------------------

def test_network_backoff_schedule_without_jitter():
    handler, sleeps = _handler(rand=0.0)
    op = _failing(TransientNetworkError("a"), TransientNetworkError("b"), TransientNetworkError("c"))

    assert handler.with_auto_retry(op) == "ok"
    assert op.call_count == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_jitter_is_one_sided_and_bounded():
    handler, sleeps = _handler(rand=1.0)
    op = _failing(TransientNetworkError("a"), TransientNetworkError("b"), TransientNetworkError("c"))

    handler.with_auto_retry(op)
    assert sleeps == pytest.approx([1.1, 2.2, 4.4])


def test_validation_is_never_retried():
    handler, sleeps = _handler()
    op = _failing(ValidationError("Validation failed: too few teams"))

    with pytest.raises(ValidationError):
        handler.with_auto_retry(op)
    assert op.call_count == 1
    assert sleeps == []


def test_exhaustion_reraises_last_error():
    handler, sleeps = _handler()
    errors = [TransientNetworkError(f"fail {i}") for i in range(10)]
    op = _failing(*errors)

    with pytest.raises(TransientNetworkError) as exc_info:
        handler.with_auto_retry(op)
    # one initial attempt plus five retries
    assert op.call_count == 6
    assert str(exc_info.value) == "fail 5"
    assert len(sleeps) == 5


def test_on_retry_receives_attempt_error_and_category():
    handler, _ = _handler()
    first, second = AuthError("401"), AuthError("401 again")
    op = _failing(first, second)
    calls = []

    handler.with_auto_retry(op, on_retry=lambda n, exc, cat: calls.append((n, exc, cat)))
    assert calls == [(1, first, ErrorCategory.AUTH), (2, second, ErrorCategory.AUTH)]


def test_auto_retry_uses_policy_of_each_failure():
    handler, sleeps = _handler()
    op = _failing(RateLimitError("slow down"), TransientNetworkError("reset"))

    handler.with_auto_retry(op)
    # rate limit attempt 1 -> 5000ms, network attempt 2 -> 2000ms
    assert sleeps == [5.0, 2.0]


def test_with_retry_uses_fixed_category_and_overrides():
    handler, sleeps = _handler()
    op = _failing(Exception("boom"), Exception("boom"))

    with pytest.raises(Exception, match="boom"):
        handler.with_retry(op, error_type="timeout", config_overrides={"max_retries": 1})
    assert op.call_count == 2
    assert sleeps == [2.0]


def test_success_first_try_does_not_sleep():
    handler, sleeps = _handler()
    assert handler.with_retry(lambda: 42) == 42
    assert sleeps == []

"""
Unit tests for retry-wait hints and the backoff schedule.
"""
import pytest

from aria_coach.services.llm.retry import (
    DEFAULT_RETRY_WAIT_SECONDS,
    MAX_RETRY_WAIT_SECONDS,
    compute_backoff,
    parse_retry_after,
)


@pytest.mark.parametrize(
    "headers,body,expected",
    [
        ({"retry-after": "12"}, None, 12.0),
        ({"retry-after-ms": "1500"}, None, 1.5),
        (None, "Rate limit reached. Please try again in 7.5s.", 7.5),
        (None, "Please retry after 20 seconds", 20.0),
        (None, "Please try again in 1m30s", 90.0),
        (None, "Please try again in 250ms", 0.25),
        (None, '{"error": {"details": [{"retryDelay": "30s"}]}}', 30.0),
        (None, "Internal error", None),
        ({"retry-after": "soon"}, None, None),
    ],
)
def test_parse_retry_after(headers, body, expected):
    assert parse_retry_after(headers, body) == expected


def test_header_wins_over_body():
    assert parse_retry_after({"retry-after": "3"}, "try again in 10s") == 3.0


def test_default_backoff_is_linear():
    assert compute_backoff(0) == DEFAULT_RETRY_WAIT_SECONDS
    assert compute_backoff(2) == DEFAULT_RETRY_WAIT_SECONDS * 3


def test_backoff_is_capped():
    assert compute_backoff(0, suggested=600) == MAX_RETRY_WAIT_SECONDS
    assert compute_backoff(100) == MAX_RETRY_WAIT_SECONDS


def test_backoff_never_decreases():
    waits = []
    previous = 0.0
    for attempt, hint in enumerate([5.0, 1.0, None, 45.0, 2.0]):
        previous = compute_backoff(attempt, suggested=hint, previous=previous)
        waits.append(previous)

    assert waits == sorted(waits)
    assert waits[-1] == MAX_RETRY_WAIT_SECONDS

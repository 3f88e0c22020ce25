"""
Retry-wait hints and backoff schedule.

Providers suggest a wait in different places: a ``Retry-After`` header
(seconds or HTTP date), ``retry-after-ms``, or free text in the error body
("Please try again in 7.5s", "retry after 12 seconds", Gemini's
``"retryDelay": "30s"``). The parser is best effort; when nothing is found the
schedule falls back to ``DEFAULT_RETRY_WAIT_SECONDS * (attempt + 1)``.

Every computed wait is capped at ``MAX_RETRY_WAIT_SECONDS`` and never shorter
than the previous wait of the same invocation.
"""
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional

DEFAULT_RETRY_WAIT_SECONDS = 1.0
MAX_RETRY_WAIT_SECONDS = 30.0

_HINT_PATTERNS = (
    re.compile(
        r"(?:try again|retry)\s+(?:in|after)\s+([0-9][0-9hms.]*)\s*"
        r"(ms|milliseconds?|s|secs?|seconds?|minutes?)?",
        re.IGNORECASE,
    ),
    re.compile(r'"retryDelay"\s*:\s*"([0-9.]+)(s)"'),
)
_DURATION_PART = re.compile(r"([0-9]+(?:\.[0-9]+)?)(h|ms|m|s)")


def _parse_duration(token: str, unit: Optional[str]) -> Optional[float]:
    token = token.rstrip(".")
    if not token:
        return None

    parts = _DURATION_PART.findall(token)
    if parts:
        total = 0.0
        for value, part_unit in parts:
            seconds = float(value)
            if part_unit == "h":
                seconds *= 3600
            elif part_unit == "m":
                seconds *= 60
            elif part_unit == "ms":
                seconds /= 1000
            total += seconds
        return total

    try:
        value = float(token)
    except ValueError:
        return None
    unit = (unit or "s").lower()
    if unit.startswith("ms") or unit.startswith("milli"):
        return value / 1000
    if unit.startswith("minute"):
        return value * 60
    return value


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


def parse_retry_after(
    headers: Optional[Mapping[str, str]] = None,
    body: Optional[str] = None,
) -> Optional[float]:
    """
    Extract a provider-suggested wait in seconds, or None.

    Headers win over body text. Negative or unparsable values are ignored.
    """
    ms_value = _header(headers, "retry-after-ms")
    if ms_value:
        try:
            return max(0.0, float(ms_value) / 1000)
        except ValueError:
            pass

    header_value = _header(headers, "retry-after")
    if header_value:
        try:
            return max(0.0, float(header_value))
        except ValueError:
            try:
                when = parsedate_to_datetime(header_value)
            except (TypeError, ValueError):
                when = None
            if when is not None:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

    if body:
        for pattern in _HINT_PATTERNS:
            match = pattern.search(body)
            if match:
                seconds = _parse_duration(match.group(1), match.group(2))
                if seconds is not None and seconds >= 0:
                    return seconds
    return None


def compute_backoff(
    attempt: int,
    suggested: Optional[float] = None,
    previous: float = 0.0,
    base: float = DEFAULT_RETRY_WAIT_SECONDS,
    cap: float = MAX_RETRY_WAIT_SECONDS,
) -> float:
    """
    Wait before retry number ``attempt + 1``.

    Args:
        attempt: Zero-based index of the attempt that just failed
        suggested: Provider hint from ``parse_retry_after``
        previous: Wait used before the previous retry (0 for the first)
        base: Linear step used without a hint
        cap: Upper bound for any wait
    """
    wait = suggested if suggested is not None else base * (attempt + 1)
    return min(max(wait, previous), cap)

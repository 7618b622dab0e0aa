"""
Error Classifier  —  Failure → Retry Category
═══════════════════════════════════════════════

Maps a raw exception onto one of four categories that drive the retry decision:

  RATE_LIMITED  reschedule after retry_after_ms; does not burn an attempt
  PERMANENT     fail the job and the document; never retried
  TRANSIENT     let the queue back off and retry (exponential, base 2s)
  UNKNOWN       treated like TRANSIENT by the worker

Rules are keyword matches on the lower-cased message, evaluated in order.
First match wins, so a message carrying both "invalid" and "timeout" is
TRANSIENT (network rule precedes invalid-input rule).
"""

from __future__ import annotations

import re
import traceback
from dataclasses import dataclass
from enum import Enum

from docflow.pipeline.constants import DEFAULT_BACKOFF_BASE_MS, DEFAULT_RATE_LIMIT_RETRY_MS


class ErrorCategory(str, Enum):
    TRANSIENT    = "TRANSIENT"
    PERMANENT    = "PERMANENT"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN      = "UNKNOWN"


@dataclass(frozen=True)
class CategorizedError:
    category:       ErrorCategory
    message:        str
    retry_after_ms: int | None = None
    stack:          str | None = None

    @property
    def is_retryable(self) -> bool:
        return self.category is not ErrorCategory.PERMANENT


# ---------------------------------------------------------------------------
# Keyword rules: order is significant
# ---------------------------------------------------------------------------

_RATE_LIMIT_KEYWORDS = ("rate exceeded", "throttl", "rate limit", "429")
_ACCESS_KEYWORDS     = ("access denied", "forbidden", "invalid api key", "authentication")
_NOT_FOUND_KEYWORDS  = ("not found", "does not exist")
_NETWORK_KEYWORDS    = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "connection error",
    "network",
)
_INVALID_KEYWORDS    = ("invalid", "unsupported", "corrupt")

_RULES: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (_RATE_LIMIT_KEYWORDS, ErrorCategory.RATE_LIMITED),
    (_ACCESS_KEYWORDS,     ErrorCategory.PERMANENT),
    (_NOT_FOUND_KEYWORDS,  ErrorCategory.PERMANENT),
    (_NETWORK_KEYWORDS,    ErrorCategory.TRANSIENT),
    (_INVALID_KEYWORDS,    ErrorCategory.PERMANENT),
)

_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def extract_retry_after_ms(error: BaseException | str) -> int | None:
    """
    Explicit retry-after hint in milliseconds, if the failure carries one.

    Sources, in order:
      • a ``retry_after`` attribute on the exception (seconds)
      • a "retry after N" phrase in the message (seconds)
    Non-positive values are ignored.
    """
    seconds = getattr(error, "retry_after", None) if isinstance(error, BaseException) else None
    if isinstance(seconds, (int, float)) and seconds > 0:
        return int(seconds * 1000)

    match = _RETRY_AFTER_RE.search(_error_message(error))
    if match and int(match.group(1)) > 0:
        return int(match.group(1)) * 1000
    return None


def categorize_error(error: BaseException | str) -> CategorizedError:
    """Classify a failure. Deterministic: same message → same category."""
    message = _error_message(error)
    lowered = message.lower()
    stack = (
        "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if isinstance(error, BaseException) and error.__traceback__ is not None
        else None
    )

    for keywords, category in _RULES:
        if any(keyword in lowered for keyword in keywords):
            retry_after_ms = None
            if category is ErrorCategory.RATE_LIMITED:
                retry_after_ms = extract_retry_after_ms(error) or DEFAULT_RATE_LIMIT_RETRY_MS
            return CategorizedError(
                category=category,
                message=message,
                retry_after_ms=retry_after_ms,
                stack=stack,
            )

    return CategorizedError(category=ErrorCategory.UNKNOWN, message=message, stack=stack)


def compute_backoff_ms(attempts_made: int, base_ms: int = DEFAULT_BACKOFF_BASE_MS) -> int:
    """Exponential backoff: base, 2×base, 4×base … for attempts 1, 2, 3 …"""
    return base_ms * (2 ** max(attempts_made - 1, 0))

"""
Unit Tests — Error Classifier
══════════════════════════════
  ✅ Keyword rules in order: rate limit, access, not found, network, invalid
  ✅ RATE_LIMITED carries retry_after_ms (explicit hint or 60000 default)
  ✅ Rule order decides mixed messages
  ✅ Deterministic; exceptions and plain strings classify alike
  ✅ Exponential backoff schedule
"""

from __future__ import annotations

import pytest

from docflow.pipeline.errors import (
    ErrorCategory,
    categorize_error,
    compute_backoff_ms,
    extract_retry_after_ms,
)


@pytest.mark.unit
class TestCategorizeError:

    @pytest.mark.parametrize("message", [
        "Rate exceeded",
        "ProvisionedThroughputExceededException: request was throttled",
        "OpenAI rate limit reached for requests",
        "HTTP 429 Too Many Requests",
    ])
    def test_rate_limited(self, message):
        result = categorize_error(RuntimeError(message))
        assert result.category is ErrorCategory.RATE_LIMITED
        assert result.retry_after_ms == 60000
        assert result.is_retryable

    @pytest.mark.parametrize("message", [
        "AccessDenied: Access Denied",
        "403 Forbidden",
        "Incorrect API key provided: invalid api key",
        "Authentication failed",
    ])
    def test_access_errors_are_permanent(self, message):
        assert categorize_error(message).category is ErrorCategory.PERMANENT

    def test_not_found_is_permanent(self):
        result = categorize_error(FileNotFoundError("Object not found: org/doc.pdf"))
        assert result.category is ErrorCategory.PERMANENT
        assert not result.is_retryable

    @pytest.mark.parametrize("message", [
        "Read timeout on endpoint URL",
        "connect ECONNREFUSED 10.0.0.1:443",
        "Connection reset by peer",
        "network unreachable",
    ])
    def test_network_errors_are_transient(self, message):
        assert categorize_error(message).category is ErrorCategory.TRANSIENT

    def test_invalid_input_is_permanent(self):
        result = categorize_error(ValueError("Unsupported file type for OCR: text/plain"))
        assert result.category is ErrorCategory.PERMANENT

    def test_unmatched_is_unknown(self):
        result = categorize_error(RuntimeError("something odd happened"))
        assert result.category is ErrorCategory.UNKNOWN
        assert result.retry_after_ms is None

    def test_network_rule_precedes_invalid_rule(self):
        result = categorize_error("invalid response: request timed out")
        assert result.category is ErrorCategory.TRANSIENT

    def test_rate_limit_precedes_everything(self):
        result = categorize_error("Forbidden: rate limit exceeded")
        assert result.category is ErrorCategory.RATE_LIMITED

    def test_empty_exception_message_uses_type_name(self):
        result = categorize_error(KeyError())
        assert result.message == "KeyError"
        assert result.category is ErrorCategory.UNKNOWN

    def test_bare_timeout_error_is_transient(self):
        assert categorize_error(TimeoutError()).category is ErrorCategory.TRANSIENT

    def test_deterministic(self):
        first = categorize_error("Connection refused")
        second = categorize_error("Connection refused")
        assert first == second

    def test_stack_captured_for_raised_exception(self):
        try:
            raise RuntimeError("network down")
        except RuntimeError as exc:
            result = categorize_error(exc)
        assert result.stack is not None
        assert "RuntimeError: network down" in result.stack


@pytest.mark.unit
class TestRetryAfter:

    def test_retry_after_attribute_in_seconds(self):
        exc = RuntimeError("Rate exceeded")
        exc.retry_after = 12
        assert categorize_error(exc).retry_after_ms == 12000

    def test_retry_after_in_message(self):
        assert extract_retry_after_ms("429: please retry after 30 seconds") == 30000

    def test_non_positive_hint_ignored(self):
        exc = RuntimeError("throttled")
        exc.retry_after = 0
        assert extract_retry_after_ms(exc) is None
        assert categorize_error(exc).retry_after_ms == 60000


@pytest.mark.unit
class TestBackoff:

    def test_exponential_schedule(self):
        assert [compute_backoff_ms(n) for n in (1, 2, 3)] == [2000, 4000, 8000]

    def test_custom_base(self):
        assert compute_backoff_ms(2, base_ms=500) == 1000

    def test_zero_attempts_uses_base(self):
        assert compute_backoff_ms(0) == 2000

"""
Unit tests for ErrorClassifier.

Tests cover:
    - Rule order and classification of each failure kind
    - Exponential backoff with cap and jitter bounds
    - execute_with_retry success, exhaustion and non-retryable paths
    - Strategy-driven recovery in handle_error
    - Partial-failure judgement at and around the threshold
    - Error statistics and history bounds
"""

import asyncio
import random

import pytest

from tender_harvester.models.schemas import (
    ErrorCategory,
    ErrorKind,
    ErrorSeverity,
    RecoveryStrategy,
)
from tender_harvester.orchestrator.error_handler import (
    ClassificationRule,
    ErrorClassifier,
    ErrorContext,
    OperationOutcome,
    RetrySettings,
    TEMPLATES,
    describe,
)
from tender_harvester.utils.exceptions import (
    APIError,
    CacheError,
    ConfigurationError,
    DiscoveryError,
    NetworkError,
    ParsingError,
    RateLimitError,
    RecordValidationError,
    RequestTimeoutError,
    ServerError,
)


@pytest.fixture
def context():
    """Error context for a dataset fetch."""
    return ErrorContext(operation="dataset_fetch", request_id="req_test")


class Flaky:
    """Coroutine factory failing a fixed number of times before succeeding."""

    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestClassification:
    """Test rule-based classification."""

    @pytest.mark.parametrize(
        "error,kind,retryable",
        [
            (NetworkError("Network connection failed: refused"), ErrorKind.NETWORK, True),
            (RequestTimeoutError("Request timed out after 20s"), ErrorKind.TIMEOUT, True),
            (asyncio.TimeoutError(), ErrorKind.TIMEOUT, True),
            (RateLimitError(retry_after=5), ErrorKind.RATE_LIMIT, True),
            (ServerError("API responded with status: 503", status_code=503), ErrorKind.API, True),
            (ParsingError("Malformed JSON response"), ErrorKind.PARSING, False),
            (MemoryError("heap exhausted"), ErrorKind.MEMORY, False),
            (ConfigurationError("missing base url"), ErrorKind.CONFIGURATION, False),
            (RecordValidationError("bad date", field="date"), ErrorKind.VALIDATION, False),
            (CacheError("disk full"), ErrorKind.CACHE, False),
            (RuntimeError("something odd"), ErrorKind.UNKNOWN, True),
        ],
    )
    def test_kinds(self, classifier, error, kind, retryable):
        """Test each failure maps to its kind and retryability."""
        classified = classifier.classify(error)

        assert classified.kind == kind
        assert classified.retryable is retryable

    def test_client_error_is_permanent(self, classifier):
        """Test 4xx other than 429 is a non-retryable API error."""
        classified = classifier.classify(APIError("API responded with status: 400", status_code=400))

        assert classified.kind == ErrorKind.API
        assert classified.category == ErrorCategory.PERMANENT
        assert classified.retryable is False
        assert classified.status_code == 400

    def test_rule_order_first_match_wins(self, classifier):
        """Test a message matching several rules takes the earliest one."""
        classified = classifier.classify(RuntimeError("connection timeout while parsing"))
        assert classified.kind == ErrorKind.NETWORK

    def test_parsing_error_with_api_in_source_is_parsing(self, classifier):
        """Test details do not leak into the description used by the rules."""
        error = ParsingError("Malformed JSON response", source="https://example.org/api/status")
        assert "api" not in describe(error)
        assert classifier.classify(error).kind == ErrorKind.PARSING

    def test_discovery_error_keeps_its_kind(self, classifier):
        """Test DiscoveryError carries kind and retryability through."""
        retryable = classifier.classify(DiscoveryError("boom", kind="timeout", retry_after=5.0))
        permanent = classifier.classify(DiscoveryError("bad body", kind="parsing", retryable=False))

        assert retryable.kind == ErrorKind.TIMEOUT
        assert retryable.retryable is True
        assert retryable.retry_after == 5.0
        assert permanent.kind == ErrorKind.PARSING
        assert permanent.retryable is False

    def test_custom_rules(self):
        """Test a classifier built from custom rules."""
        rule = ClassificationRule(
            "always_memory", lambda error, description: True, TEMPLATES[ErrorKind.MEMORY]
        )
        classifier = ErrorClassifier(retry_settings=RetrySettings(), rules=(rule,))

        assert classifier.classify(NetworkError("offline")).kind == ErrorKind.MEMORY

    def test_messages(self, classifier, context):
        """Test user-facing and technical messages are kept apart."""
        classified = classifier.classify(NetworkError("Network connection failed"), context)

        assert "internet connection" in classified.user_message
        assert "NetworkError" in classified.technical_message
        assert "dataset_fetch" in classified.technical_message
        assert classified.suggestions[-1] == "Contact support if the problem persists"
        assert classified.severity == ErrorSeverity.MEDIUM

    def test_not_user_friendly_uses_generic_message(self, classifier):
        """Test parsing failures get the generic message."""
        classified = classifier.classify(ParsingError("Malformed JSON response"))
        assert classified.user_message.startswith("An unexpected error occurred")

    def test_to_error_info(self, classifier):
        """Test conversion to the user-facing model."""
        classified = classifier.classify(RateLimitError(retry_after=7))
        classified.page_number = 3

        info = classified.to_error_info()

        assert info.kind == ErrorKind.RATE_LIMIT
        assert info.retry_after == 7
        assert info.page_number == 3
        assert info.retryable is True
        assert classified.to_dict()["strategies"] == ["retry"]


class TestBackoff:
    """Test retry delay computation."""

    def test_exponential_growth(self, classifier, retry_settings):
        """Test delays grow by the multiplier."""
        delays = [
            classifier.calculate_backoff_delay(attempt, retry_settings, include_jitter=False)
            for attempt in range(1, 5)
        ]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_monotonic_and_capped(self, classifier):
        """Test delays never decrease and stop at max_delay."""
        settings = RetrySettings(base_delay=1.0, max_delay=10.0, jitter_enabled=False)
        delays = [
            classifier.calculate_backoff_delay(attempt, settings, include_jitter=False)
            for attempt in range(1, 12)
        ]

        assert delays == sorted(delays)
        assert max(delays) == 10.0

    def test_jitter_bounds(self):
        """Test jittered delays stay within max_delay + max_jitter."""
        settings = RetrySettings(base_delay=1.0, max_delay=5.0, max_jitter=0.5)
        classifier = ErrorClassifier(retry_settings=settings, rng=random.Random(7))

        for attempt in range(1, 20):
            delay = classifier.calculate_backoff_delay(attempt)
            base = min(2 ** (attempt - 1), 5.0)
            assert base <= delay <= base + 0.5


class TestExecuteWithRetry:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, classifier, context, sim_clock):
        """Test no sleeping when the operation succeeds."""
        operation = Flaky([])

        assert await classifier.execute_with_retry(operation, context) == "ok"
        assert operation.calls == 1
        assert sim_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_recovers_after_retries(self, classifier, context, sim_clock):
        """Test transient failures are retried with growing delays."""
        operation = Flaky([NetworkError("connection reset"), ServerError("status: 503", status_code=503)])

        assert await classifier.execute_with_retry(operation, context) == "ok"
        assert operation.calls == 3
        assert sim_clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, classifier, context):
        """Test the last error is re-raised unchanged after max retries."""
        last = NetworkError("connection refused #4")
        operation = Flaky([NetworkError(f"connection refused #{i}") for i in range(1, 4)] + [last])

        with pytest.raises(NetworkError) as exc_info:
            await classifier.execute_with_retry(operation, context)

        assert exc_info.value is last
        assert operation.calls == 4

    @pytest.mark.asyncio
    async def test_non_retryable_is_not_retried(self, classifier, context):
        """Test permanent failures surface immediately."""
        error = APIError("API responded with status: 404", status_code=404)
        operation = Flaky([error])

        with pytest.raises(APIError) as exc_info:
            await classifier.execute_with_retry(operation, context)

        assert exc_info.value is error
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_overrides(self, classifier, context):
        """Test per-call overrides of the retry settings."""
        operation = Flaky([NetworkError("connection reset")] * 2)

        with pytest.raises(NetworkError):
            await classifier.execute_with_retry(operation, context, max_retries=1)
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_retryable_kinds_filter(self, classifier, context):
        """Test kinds outside retryable_kinds are not retried."""
        operation = Flaky([RuntimeError("odd")])

        with pytest.raises(RuntimeError):
            await classifier.execute_with_retry(operation, context)
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay(self, classifier, context, sim_clock):
        """Test a server supplied Retry-After lengthens the wait."""
        operation = Flaky([RateLimitError(retry_after=12)])

        await classifier.execute_with_retry(operation, context)
        assert sim_clock.sleeps == [12]


class TestHandleError:
    """Test strategy-driven recovery."""

    @pytest.mark.asyncio
    async def test_retry_strategy(self, classifier, context):
        """Test a retryable error recovered by the retry strategy."""
        result = await classifier.handle_error(
            NetworkError("connection reset"), context, operation=Flaky([])
        )

        assert result.success is True
        assert result.data == "ok"
        assert result.recovery_attempts[0].strategy == RecoveryStrategy.RETRY
        assert result.recovery_attempts[0].description == "Retry with exponential backoff"

    @pytest.mark.asyncio
    async def test_fallback_after_failed_retry(self, classifier, context):
        """Test the fallback strategy runs when retrying fails."""
        failing = Flaky([ServerError("status: 500", status_code=500)] * 10)

        result = await classifier.handle_error(
            ServerError("status: 500", status_code=500),
            context,
            operation=failing,
            fallback=Flaky([], result="cached"),
        )

        assert result.success is True
        assert result.data == "cached"
        assert [a.success for a in result.recovery_attempts] == [False, True]

    @pytest.mark.asyncio
    async def test_partial_strategy(self, classifier, context):
        """Test timeouts fall through to partial data."""
        result = await classifier.handle_error(
            RequestTimeoutError("Request timed out"),
            context,
            partial=Flaky([], result=[{"ocid": "ocds-1"}]),
        )

        assert result.success is False
        assert result.partial_data == [{"ocid": "ocds-1"}]

    @pytest.mark.asyncio
    async def test_abort(self, classifier, context):
        """Test abort stops recovery immediately."""
        fallback = Flaky([], result="unused")

        result = await classifier.handle_error(
            ConfigurationError("missing base url"), context, fallback=fallback
        )

        assert result.success is False
        assert result.recovery_attempts == []
        assert fallback.calls == 0
        assert result.technical_details


class TestPartialFailure:
    """Test threshold judgement of independent outcomes."""

    def outcomes(self, succeeded, failed):
        return [OperationOutcome(success=True, data=i) for i in range(succeeded)] + [
            OperationOutcome(success=False, error=ServerError("status: 500", status_code=500))
            for _ in range(failed)
        ]

    @pytest.mark.asyncio
    async def test_exactly_at_threshold_succeeds(self, classifier, context):
        """Test a success fraction equal to the threshold is a success."""
        result = await classifier.handle_partial_failure(self.outcomes(3, 7), context, 0.3)

        assert result.success is True
        assert result.data == [0, 1, 2]
        assert len(result.errors) == 7
        assert len(result.warnings) == 7
        assert result.technical_details == "7 out of 10 operations failed"

    @pytest.mark.asyncio
    async def test_one_below_threshold_fails(self, classifier, context):
        """Test one success short of the threshold is a failure with partial data."""
        result = await classifier.handle_partial_failure(self.outcomes(2, 8), context, 0.3)

        assert result.success is False
        assert result.partial_data == [0, 1]
        assert result.user_message == "Operation partially failed. 2 out of 10 completed successfully."
        assert "20%" in result.technical_details and "30%" in result.technical_details

    @pytest.mark.asyncio
    async def test_all_succeeded(self, classifier, context):
        """Test a clean run has no warnings."""
        result = await classifier.handle_partial_failure(self.outcomes(4, 0), context, 0.5)

        assert result.success is True
        assert result.warnings == []
        assert result.user_message == "Operation completed successfully"

    @pytest.mark.asyncio
    async def test_empty_results(self, classifier, context):
        """Test no outcomes counts as success."""
        result = await classifier.handle_partial_failure([], context)
        assert result.success is True
        assert result.data == []

    @pytest.mark.asyncio
    async def test_secondary_pass_lifts_success(self, classifier, context):
        """Test retry factories can lift the fraction over the threshold."""
        outcomes = self.outcomes(1, 0) + [
            OperationOutcome(
                success=False,
                error=NetworkError("connection reset"),
                retry=Flaky([], result=99),
            ),
            OperationOutcome(success=False, error=NetworkError("connection reset")),
        ]

        result = await classifier.handle_partial_failure(outcomes, context, 0.6)

        assert result.success is True
        assert result.data == [0, 99]
        assert len(result.recovery_attempts) == 1
        assert result.recovery_attempts[0].success is True

    @pytest.mark.asyncio
    async def test_secondary_pass_failure(self, classifier, context):
        """Test failed retry factories are recorded and the result fails."""
        outcomes = [
            OperationOutcome(
                success=False,
                error=NetworkError("connection reset"),
                retry=Flaky([NetworkError("still down")]),
            ),
        ]

        result = await classifier.handle_partial_failure(outcomes, context, 0.5)

        assert result.success is False
        assert result.partial_data == []
        assert result.recovery_attempts[0].success is False


class TestStatistics:
    """Test error history statistics."""

    def test_counts_and_patterns(self, classifier):
        """Test per-kind counts and recurring messages."""
        for _ in range(3):
            classifier.classify(NetworkError("Network connection failed"))
        classifier.classify(ParsingError("Malformed JSON response"))

        stats = classifier.get_statistics()

        assert stats["total_errors"] == 4
        assert stats["errors_by_kind"] == {"network": 3, "parsing": 1}
        assert stats["errors_by_severity"] == {"medium": 3, "high": 1}
        assert stats["common_patterns"] == ['"Network connection failed" (3 occurrences)']
        assert stats["recovery_success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_recovery_success_rate(self, classifier, context):
        """Test recovery attempts feed the success rate."""
        await classifier.handle_error(NetworkError("connection reset"), context, operation=Flaky([]))

        stats = classifier.get_statistics()
        assert stats["recovery_attempts"] == 1
        assert stats["recovery_success_rate"] == 1.0

    def test_history_is_bounded(self, retry_settings):
        """Test the history keeps only the newest entries."""
        classifier = ErrorClassifier(retry_settings=retry_settings, history_size=5)
        for i in range(8):
            classifier.classify(RuntimeError(f"error {i}"))

        assert classifier.get_statistics()["total_errors"] == 5
        assert classifier.recent_errors(2)[-1].message == "error 7"

    def test_record_false_skips_history(self, classifier):
        """Test classification without recording."""
        classifier.classify(NetworkError("offline"), record=False)
        assert classifier.get_statistics()["total_errors"] == 0

    def test_clear_history(self, classifier):
        """Test clearing the history."""
        classifier.classify(NetworkError("offline"))
        classifier.clear_history()
        assert classifier.get_statistics()["total_errors"] == 0

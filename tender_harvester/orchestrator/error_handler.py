"""
Error classification and recovery for Tender Harvester.

Tags raw failures with kind, severity and category through an ordered list
of rules, retries operations with exponential backoff, applies recovery
strategies and judges batches of independent outcomes against a minimum
success threshold. A bounded history backs error statistics.
"""

import asyncio
import logging
import math
import random
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tender_harvester.config import RetryConfig
from tender_harvester.models.schemas import (
    ErrorCategory,
    ErrorKind,
    ErrorSeverity,
    FetchErrorInfo,
    RecoveryStrategy,
)
from tender_harvester.utils.exceptions import (
    CacheError,
    ConfigurationError,
    DiscoveryError,
    RecordValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetrySettings:
    """Retry configuration for execute_with_retry.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Cap on the exponential delay (seconds)
        backoff_multiplier: Growth factor per retry
        jitter_enabled: Add random jitter on top of the capped delay
        max_jitter: Upper bound of the jitter (seconds)
        retryable_kinds: Kinds that may be retried at all
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    max_jitter: float = 1.0
    retryable_kinds: frozenset = frozenset({
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.API,
    })

    @classmethod
    def from_env(cls) -> "RetrySettings":
        """Create settings from environment variables."""
        return cls(
            max_retries=RetryConfig.MAX_RETRIES,
            base_delay=RetryConfig.BASE_DELAY,
            max_delay=RetryConfig.MAX_DELAY,
            backoff_multiplier=RetryConfig.BACKOFF_MULTIPLIER,
            jitter_enabled=RetryConfig.JITTER_ENABLED,
            max_jitter=RetryConfig.MAX_JITTER,
        )


@dataclass
class ErrorContext:
    """Where an error happened."""

    operation: str
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Classification:
    """Outcome of matching one rule."""

    kind: ErrorKind
    severity: ErrorSeverity
    category: ErrorCategory
    retryable: bool
    user_friendly: bool
    strategies: tuple[RecoveryStrategy, ...]


@dataclass(frozen=True)
class ClassificationRule:
    """Predicate over (error, normalized description) mapped to a classification."""

    name: str
    predicate: Callable[[BaseException, str], bool]
    classification: Classification

    def matches(self, error: BaseException, description: str) -> bool:
        return self.predicate(error, description)


@dataclass
class RecoveryAttempt:
    """One recovery strategy attempt."""

    strategy: RecoveryStrategy
    timestamp: float
    success: bool
    duration: float
    error: Optional[BaseException] = None

    @property
    def description(self) -> str:
        return STRATEGY_DESCRIPTIONS.get(self.strategy, self.strategy.value)


@dataclass
class ClassifiedError:
    """A failure tagged with its classification and context."""

    id: str
    error: BaseException
    kind: ErrorKind
    severity: ErrorSeverity
    category: ErrorCategory
    retryable: bool
    user_friendly: bool
    strategies: tuple[RecoveryStrategy, ...]
    context: ErrorContext
    timestamp: float
    user_message: str
    technical_message: str
    retry_after: Optional[float] = None
    status_code: Optional[int] = None
    page_number: Optional[int] = None
    recovery_attempts: list[RecoveryAttempt] = field(default_factory=list)

    @property
    def message(self) -> str:
        return getattr(self.error, "message", None) or str(self.error) or type(self.error).__name__

    @property
    def suggestions(self) -> list[str]:
        return list(KIND_SUGGESTIONS.get(self.kind, ())) + [
            "Contact support if the problem persists",
        ]

    def to_error_info(self) -> FetchErrorInfo:
        """Convert to the user-facing error model."""
        return FetchErrorInfo(
            message=self.user_message,
            kind=self.kind,
            retryable=self.retryable,
            suggestions=self.suggestions,
            technical_message=self.technical_message,
            page_number=self.page_number,
            retry_after=self.retry_after,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "message": self.user_message,
            "technical_message": self.technical_message,
            "page_number": self.page_number,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "strategies": [s.value for s in self.strategies],
            "recovery_attempts": len(self.recovery_attempts),
        }


@dataclass
class OperationOutcome:
    """Result of one independent operation judged by handle_partial_failure.

    Attributes:
        success: Whether the operation produced data
        data: Produced data
        error: Failure, if any
        retry: Optional coroutine factory used by the secondary recovery pass
    """

    success: bool
    data: Any = None
    error: Optional[BaseException] = None
    retry: Optional[Callable[[], Awaitable[Any]]] = None


@dataclass
class PartialFailureResult:
    """Outcome of error handling or partial-failure evaluation."""

    success: bool
    data: Any = None
    partial_data: Optional[list[Any]] = None
    errors: list[ClassifiedError] = field(default_factory=list)
    recovery_attempts: list[RecoveryAttempt] = field(default_factory=list)
    user_message: str = ""
    technical_details: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return any(e.retryable for e in self.errors)


STRATEGY_DESCRIPTIONS = {
    RecoveryStrategy.RETRY: "Retry with exponential backoff",
    RecoveryStrategy.FALLBACK: "Use cached data if available",
    RecoveryStrategy.PARTIAL: "Continue with partial data",
    RecoveryStrategy.ABORT: "Abort the operation",
}

USER_MESSAGES = {
    ErrorKind.NETWORK: "Network connection issue. Please check your internet connection and try again.",
    ErrorKind.TIMEOUT: "The request took too long to complete. Please try again.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorKind.API: "Service temporarily unavailable. Please try again in a few moments.",
    ErrorKind.MEMORY: "The request is too large to process. Please try with a smaller date range.",
    ErrorKind.VALIDATION: "Some of the data did not pass validation.",
    ErrorKind.CONFIGURATION: "The service is misconfigured. Please check the settings.",
}

GENERIC_USER_MESSAGE = "An unexpected error occurred. Please try again or contact support."

KIND_SUGGESTIONS = {
    ErrorKind.NETWORK: ("Check your internet connection", "Try again in a few moments"),
    ErrorKind.TIMEOUT: ("Try reducing the date range or page size", "Try again in a few moments"),
    ErrorKind.RATE_LIMIT: ("Wait a few minutes before retrying due to rate limiting",),
    ErrorKind.API: ("Try again in a few moments",),
    ErrorKind.PARSING: ("The data source returned an unexpected response",),
    ErrorKind.MEMORY: ("Try with a smaller date range to reduce memory usage",),
    ErrorKind.VALIDATION: ("Check the requested date range and parameters",),
    ErrorKind.CONFIGURATION: ("Check the configured upstream URL and limits",),
    ErrorKind.UNKNOWN: ("Try again in a few moments",),
}


def _keywords(*words: str) -> Callable[[BaseException, str], bool]:
    return lambda error, description: any(word in description for word in words)


def _status(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def _is_client_error(error: BaseException, description: str) -> bool:
    status = _status(error)
    return status is not None and 400 <= status < 500 and status != 429


def _is_rate_limited(error: BaseException, description: str) -> bool:
    return _status(error) == 429 or "rate limit" in description or "429" in description


def _is_api_error(error: BaseException, description: str) -> bool:
    status = _status(error)
    if status is not None and status >= 500:
        return True
    return any(word in description for word in ("api", "status", "http"))


_RETRY_FALLBACK = (RecoveryStrategy.RETRY, RecoveryStrategy.FALLBACK)

TEMPLATES = {
    ErrorKind.CONFIGURATION: Classification(
        ErrorKind.CONFIGURATION, ErrorSeverity.CRITICAL, ErrorCategory.CONFIGURATION,
        False, True, (RecoveryStrategy.ABORT,),
    ),
    ErrorKind.VALIDATION: Classification(
        ErrorKind.VALIDATION, ErrorSeverity.LOW, ErrorCategory.USER_INPUT,
        False, True, (RecoveryStrategy.PARTIAL,),
    ),
    ErrorKind.CACHE: Classification(
        ErrorKind.CACHE, ErrorSeverity.LOW, ErrorCategory.SYSTEM,
        False, False, (RecoveryStrategy.PARTIAL,),
    ),
    ErrorKind.NETWORK: Classification(
        ErrorKind.NETWORK, ErrorSeverity.MEDIUM, ErrorCategory.TRANSIENT,
        True, True, _RETRY_FALLBACK,
    ),
    ErrorKind.TIMEOUT: Classification(
        ErrorKind.TIMEOUT, ErrorSeverity.MEDIUM, ErrorCategory.TRANSIENT,
        True, True, (RecoveryStrategy.RETRY, RecoveryStrategy.PARTIAL),
    ),
    ErrorKind.RATE_LIMIT: Classification(
        ErrorKind.RATE_LIMIT, ErrorSeverity.LOW, ErrorCategory.TRANSIENT,
        True, True, (RecoveryStrategy.RETRY,),
    ),
    ErrorKind.API: Classification(
        ErrorKind.API, ErrorSeverity.MEDIUM, ErrorCategory.TRANSIENT,
        True, True, _RETRY_FALLBACK,
    ),
    ErrorKind.PARSING: Classification(
        ErrorKind.PARSING, ErrorSeverity.HIGH, ErrorCategory.PERMANENT,
        False, False, (RecoveryStrategy.ABORT,),
    ),
    ErrorKind.MEMORY: Classification(
        ErrorKind.MEMORY, ErrorSeverity.HIGH, ErrorCategory.SYSTEM,
        False, True, (RecoveryStrategy.PARTIAL, RecoveryStrategy.FALLBACK),
    ),
    ErrorKind.UNKNOWN: Classification(
        ErrorKind.UNKNOWN, ErrorSeverity.MEDIUM, ErrorCategory.TRANSIENT,
        True, False, (RecoveryStrategy.RETRY,),
    ),
}

CLIENT_ERROR = Classification(
    ErrorKind.API, ErrorSeverity.MEDIUM, ErrorCategory.PERMANENT,
    False, True, (RecoveryStrategy.ABORT,),
)

# Evaluated top-down, first match wins
DEFAULT_RULES = (
    ClassificationRule(
        "configuration",
        lambda error, description: isinstance(error, ConfigurationError),
        TEMPLATES[ErrorKind.CONFIGURATION],
    ),
    ClassificationRule(
        "validation",
        lambda error, description: isinstance(error, RecordValidationError),
        TEMPLATES[ErrorKind.VALIDATION],
    ),
    ClassificationRule(
        "cache",
        lambda error, description: isinstance(error, CacheError),
        TEMPLATES[ErrorKind.CACHE],
    ),
    ClassificationRule(
        "network",
        _keywords("network", "connection", "connect", "dns", "socket"),
        TEMPLATES[ErrorKind.NETWORK],
    ),
    ClassificationRule(
        "timeout",
        _keywords("timeout", "timed out", "abort"),
        TEMPLATES[ErrorKind.TIMEOUT],
    ),
    ClassificationRule("rate_limit", _is_rate_limited, TEMPLATES[ErrorKind.RATE_LIMIT]),
    ClassificationRule("client_error", _is_client_error, CLIENT_ERROR),
    ClassificationRule("api", _is_api_error, TEMPLATES[ErrorKind.API]),
    ClassificationRule(
        "parsing",
        _keywords("parse", "json", "invalid", "malformed", "decode"),
        TEMPLATES[ErrorKind.PARSING],
    ),
    ClassificationRule("memory", _keywords("memory", "heap"), TEMPLATES[ErrorKind.MEMORY]),
)


def describe(error: BaseException) -> str:
    """
    Normalized description used by the classification rules.

    Args:
        error: Raw exception

    Returns:
        Lowercased "TypeName: message" (details excluded)
    """
    message = getattr(error, "message", None) or str(error)
    return f"{type(error).__name__}: {message}".lower()


class ErrorClassifier:
    """
    Error classifier and recovery coordinator.

    Features:
    - Ordered, individually testable classification rules
    - Retry with exponential backoff, cap and jitter
    - Strategy-driven recovery (retry, fallback, partial, abort)
    - Threshold-based judgement of independent outcomes
    - Bounded history with aggregate statistics

    Example:
        >>> classifier = ErrorClassifier()
        >>> classified = classifier.classify(TimeoutError("read timed out"))
        >>> classified.kind
        <ErrorKind.TIMEOUT: 'timeout'>
    """

    def __init__(
        self,
        retry_settings: Optional[RetrySettings] = None,
        history_size: Optional[int] = None,
        rules: Optional[tuple[ClassificationRule, ...]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the classifier.

        Args:
            retry_settings: Default retry settings (defaults to RetrySettings.from_env())
            history_size: Classified errors kept for statistics
            rules: Classification rules, evaluated in order
            sleep: Awaitable sleep used between retries (injectable for tests)
            rng: Random source for jitter
        """
        self.retry_settings = retry_settings or RetrySettings.from_env()
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self._history: deque[ClassifiedError] = deque(
            maxlen=history_size or RetryConfig.HISTORY_SIZE
        )
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    # ========== Classification ==========

    def match(self, error: BaseException) -> Classification:
        """Return the classification of the first matching rule."""
        if isinstance(error, DiscoveryError):
            try:
                return TEMPLATES[ErrorKind(error.kind)]
            except ValueError:
                return TEMPLATES[ErrorKind.UNKNOWN]

        description = describe(error)
        for rule in self.rules:
            if rule.matches(error, description):
                return rule.classification
        return TEMPLATES[ErrorKind.UNKNOWN]

    def classify(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None,
        record: bool = True,
    ) -> ClassifiedError:
        """
        Classify an error and store it in the history.

        Args:
            error: Raw exception
            context: Where the error happened
            record: Whether to append to the history

        Returns:
            ClassifiedError with user-facing and technical messages
        """
        context = context or ErrorContext(operation="unknown")
        classification = self.match(error)

        retryable = classification.retryable
        if isinstance(error, DiscoveryError):
            retryable = error.retryable

        classified = ClassifiedError(
            id=f"err_{uuid.uuid4().hex[:12]}",
            error=error,
            kind=classification.kind,
            severity=classification.severity,
            category=classification.category,
            retryable=retryable,
            user_friendly=classification.user_friendly,
            strategies=classification.strategies,
            context=context,
            timestamp=time.time(),
            user_message=self._user_message(classification),
            technical_message=self._technical_message(error, context),
            retry_after=getattr(error, "retry_after", None),
            status_code=_status(error),
            page_number=getattr(error, "page_number", None),
        )

        if record:
            self._history.append(classified)

        logger.debug(
            "Classified error",
            extra={
                "error_id": classified.id,
                "kind": classified.kind.value,
                "severity": classified.severity.value,
                "retryable": classified.retryable,
                "operation": context.operation,
            },
        )
        return classified

    def _user_message(self, classification: Classification) -> str:
        if classification.category == ErrorCategory.PERMANENT and classification.kind == ErrorKind.API:
            return "The data source rejected the request. Please check the date range and parameters."
        if not classification.user_friendly:
            return GENERIC_USER_MESSAGE
        return USER_MESSAGES.get(
            classification.kind,
            "An error occurred while processing your request. Please try again.",
        )

    def _technical_message(self, error: BaseException, context: ErrorContext) -> str:
        return (
            f"{type(error).__name__}: {error} | Operation: {context.operation} | "
            f"Timestamp: {time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(context.timestamp))}"
        )

    # ========== Retry ==========

    def calculate_backoff_delay(
        self,
        attempt: int,
        settings: Optional[RetrySettings] = None,
        include_jitter: bool = True,
    ) -> float:
        """
        Delay before retry number `attempt` (1-based).

        Args:
            attempt: Retry number, starting at 1
            settings: Retry settings (defaults to instance settings)
            include_jitter: Add jitter when enabled in settings

        Returns:
            min(base * multiplier^(attempt-1), max_delay) plus jitter
        """
        settings = settings or self.retry_settings
        delay = settings.base_delay * settings.backoff_multiplier ** max(attempt - 1, 0)
        delay = min(delay, settings.max_delay)
        if include_jitter and settings.jitter_enabled:
            delay += self._rng.uniform(0, settings.max_jitter)
        return delay

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        settings: Optional[RetrySettings] = None,
        **overrides: Any,
    ) -> T:
        """
        Run an operation, retrying retryable failures with backoff.

        Args:
            operation: Coroutine factory
            context: Error context for classification
            settings: Retry settings (defaults to instance settings)
            **overrides: Field overrides applied on top of settings

        Returns:
            Result of the first successful attempt

        Raises:
            Exception: The last attempt's error, unchanged
        """
        settings = settings or self.retry_settings
        if overrides:
            settings = replace(settings, **overrides)

        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                classified = self.classify(e, context)

                if not classified.retryable or classified.kind not in settings.retryable_kinds:
                    raise
                if attempt >= settings.max_retries:
                    logger.error(
                        "Max retries exceeded",
                        extra={
                            "operation": context.operation,
                            "attempts": attempt + 1,
                            "kind": classified.kind.value,
                        },
                    )
                    raise

                attempt += 1
                delay = self.calculate_backoff_delay(attempt, settings)
                if classified.retry_after:
                    delay = max(delay, min(classified.retry_after, settings.max_delay))

                logger.warning(
                    "Retrying operation",
                    extra={
                        "operation": context.operation,
                        "attempt": attempt,
                        "max_retries": settings.max_retries,
                        "delay": round(delay, 2),
                        "kind": classified.kind.value,
                        "error": classified.message,
                    },
                )
                await self._sleep(delay)

    # ========== Recovery ==========

    async def handle_error(
        self,
        error: BaseException,
        context: ErrorContext,
        operation: Optional[Callable[[], Awaitable[Any]]] = None,
        fallback: Optional[Callable[[], Awaitable[Any]]] = None,
        partial: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> PartialFailureResult:
        """
        Classify an error and try its recovery strategies in order.

        Args:
            error: The failure to recover from
            context: Error context
            operation: Coroutine factory re-run by the retry strategy
            fallback: Coroutine factory producing substitute data
            partial: Coroutine factory producing partial data

        Returns:
            PartialFailureResult describing the recovery outcome
        """
        classified = self.classify(error, context)
        attempts: list[RecoveryAttempt] = []

        logger.info(
            "Handling error",
            extra={
                "error_id": classified.id,
                "kind": classified.kind.value,
                "severity": classified.severity.value,
                "retryable": classified.retryable,
            },
        )

        for strategy in classified.strategies:
            if strategy == RecoveryStrategy.ABORT:
                break

            handler = {
                RecoveryStrategy.RETRY: operation,
                RecoveryStrategy.FALLBACK: fallback,
                RecoveryStrategy.PARTIAL: partial,
            }[strategy]
            if handler is None:
                continue

            started = time.monotonic()
            try:
                if strategy == RecoveryStrategy.RETRY:
                    data = await self.execute_with_retry(handler, context)
                else:
                    data = await handler()
            except Exception as recovery_error:
                attempt = RecoveryAttempt(
                    strategy, time.time(), False, time.monotonic() - started, recovery_error
                )
                attempts.append(attempt)
                classified.recovery_attempts.append(attempt)
                logger.warning(
                    f"Recovery strategy failed: {strategy.value}",
                    extra={"error_id": classified.id, "recovery_error": str(recovery_error)},
                )
                continue

            attempt = RecoveryAttempt(strategy, time.time(), True, time.monotonic() - started)
            attempts.append(attempt)
            classified.recovery_attempts.append(attempt)

            if strategy == RecoveryStrategy.PARTIAL:
                return PartialFailureResult(
                    success=False,
                    partial_data=data if isinstance(data, list) else [data],
                    errors=[classified],
                    recovery_attempts=attempts,
                    user_message="Operation partially completed with some issues",
                    technical_details=classified.technical_message,
                )
            return PartialFailureResult(
                success=True,
                data=data,
                errors=[classified],
                recovery_attempts=attempts,
                user_message="Operation completed successfully after recovery",
            )

        return PartialFailureResult(
            success=False,
            errors=[classified],
            recovery_attempts=attempts,
            user_message=classified.user_message,
            technical_details=classified.technical_message,
        )

    async def handle_partial_failure(
        self,
        results: list[OperationOutcome],
        context: ErrorContext,
        min_success_threshold: float = 0.5,
    ) -> PartialFailureResult:
        """
        Judge independent outcomes against a minimum success fraction.

        At or above the threshold the result is a success carrying the
        successful data plus warnings. Below it, outcomes that carry a retry
        factory get one more attempt; if that lifts the fraction to the
        threshold the result is a success, otherwise a failure carrying
        whatever partial data exists and a summary.

        Args:
            results: Independent outcomes
            context: Error context
            min_success_threshold: Fraction in [0, 1]

        Returns:
            PartialFailureResult
        """
        if not results:
            return PartialFailureResult(
                success=True, data=[], user_message="Operation completed successfully"
            )

        successful = [r for r in results if r.success]
        failed = [r for r in results if not r.success]
        errors = [
            self.classify(r.error or RuntimeError("Unknown failure"), context) for r in failed
        ]

        if self._meets_threshold(len(successful), len(results), min_success_threshold):
            return self._threshold_met(successful, failed, errors, len(results))

        recovered, still_failed, attempts = await self._secondary_pass(failed, context)
        successful.extend(recovered)

        if self._meets_threshold(len(successful), len(results), min_success_threshold):
            result = self._threshold_met(successful, still_failed, errors, len(results))
            result.recovery_attempts = attempts
            return result

        rate = len(successful) / len(results)
        return PartialFailureResult(
            success=False,
            partial_data=[r.data for r in successful],
            errors=errors,
            recovery_attempts=attempts,
            user_message=(
                f"Operation partially failed. {len(successful)} out of "
                f"{len(results)} completed successfully."
            ),
            technical_details=(
                f"Success rate: {round(rate * 100)}%, below threshold of "
                f"{round(min_success_threshold * 100)}%"
            ),
        )

    @staticmethod
    def _meets_threshold(succeeded: int, total: int, threshold: float) -> bool:
        rate = succeeded / total
        return rate >= threshold or math.isclose(rate, threshold)

    def _threshold_met(
        self,
        successful: list[OperationOutcome],
        failed: list[OperationOutcome],
        errors: list[ClassifiedError],
        total: int,
    ) -> PartialFailureResult:
        return PartialFailureResult(
            success=True,
            data=[r.data for r in successful],
            errors=errors,
            user_message=(
                f"Operation completed with {len(failed)} minor issues"
                if failed else "Operation completed successfully"
            ),
            technical_details=(
                f"{len(failed)} out of {total} operations failed" if failed else None
            ),
            warnings=[e.user_message for e in errors],
        )

    async def _secondary_pass(
        self, failed: list[OperationOutcome], context: ErrorContext
    ) -> tuple[list[OperationOutcome], list[OperationOutcome], list[RecoveryAttempt]]:
        recovered: list[OperationOutcome] = []
        still_failed: list[OperationOutcome] = []
        attempts: list[RecoveryAttempt] = []

        for outcome in failed:
            if outcome.retry is None:
                still_failed.append(outcome)
                continue

            started = time.monotonic()
            try:
                data = await outcome.retry()
            except Exception as e:
                attempts.append(RecoveryAttempt(
                    RecoveryStrategy.RETRY, time.time(), False, time.monotonic() - started, e
                ))
                self.classify(e, context)
                still_failed.append(outcome)
                continue

            attempts.append(RecoveryAttempt(
                RecoveryStrategy.RETRY, time.time(), True, time.monotonic() - started
            ))
            recovered.append(OperationOutcome(success=True, data=data))

        return recovered, still_failed, attempts

    # ========== Statistics ==========

    def get_statistics(self) -> dict[str, Any]:
        """
        Aggregate statistics over the error history.

        Returns:
            Dictionary with total errors, counts by kind and severity,
            recovery success rate and the top-5 recurring messages
        """
        history = list(self._history)
        by_kind = Counter(e.kind.value for e in history)
        by_severity = Counter(e.severity.value for e in history)

        all_attempts = [a for e in history for a in e.recovery_attempts]
        succeeded = sum(1 for a in all_attempts if a.success)

        message_counts = Counter(e.message for e in history)
        patterns = [
            f'"{message}" ({count} occurrences)'
            for message, count in message_counts.most_common()
            if count > 1
        ][:5]

        return {
            "total_errors": len(history),
            "errors_by_kind": dict(by_kind),
            "errors_by_severity": dict(by_severity),
            "recovery_attempts": len(all_attempts),
            "recovery_success_rate": succeeded / len(all_attempts) if all_attempts else 0.0,
            "common_patterns": patterns,
            "history_limit": self._history.maxlen,
        }

    def recent_errors(self, limit: int = 10) -> list[ClassifiedError]:
        return list(self._history)[-limit:]

    def clear_history(self) -> None:
        self._history.clear()

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"ErrorClassifier(rules={len(self.rules)}, "
            f"history={len(self._history)}/{self._history.maxlen})"
        )

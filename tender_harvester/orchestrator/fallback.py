"""
Fallback / resilience orchestrator for Tender Harvester.

Wraps a live operation with cached-data fallback, a pluggable partial
recovery hook and progressive scheduled retries, and tracks connectivity
so foreground attempts pause while offline.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from tender_harvester.config import FallbackConfig
from tender_harvester.orchestrator.cache_manager import CacheManager
from tender_harvester.orchestrator.error_handler import (
    ClassifiedError,
    ErrorClassifier,
    ErrorContext,
)
from tender_harvester.utils.exceptions import NetworkError

logger = logging.getLogger(__name__)

# Partial recovery hook: (operation, classified failure) -> data or None
PartialRecoveryHook = Callable[
    [Callable[[], Awaitable[Any]], ClassifiedError], Awaitable[Optional[Any]]
]


def format_cache_age(age_seconds: float) -> str:
    """
    Human-readable cache age.

    Example:
        >>> format_cache_age(7300)
        '2 hours ago'
    """
    minutes = int(age_seconds // 60)
    hours = minutes // 60
    days = hours // 24

    for amount, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if amount > 0:
            return f"{amount} {unit}{'s' if amount != 1 else ''} ago"
    return "just now"


@dataclass
class FallbackSettings:
    """
    Configuration for the fallback orchestrator.

    Attributes:
        enable_cached_fallback: Cache live results and serve them on failure
        max_cache_age: Oldest cached entry usable as fallback (seconds)
        retry_schedule: Progressive retry delays (seconds); the last value repeats
        max_retry_attempts: Scheduled retries per request id
        background_refresh: Refresh the cache silently after a cache fallback
        offline_detection: Probe connectivity in check_connectivity()
    """

    enable_cached_fallback: bool = True
    max_cache_age: float = 24 * 60 * 60
    retry_schedule: list[float] = field(default_factory=lambda: [1.0, 2.0, 5.0, 10.0, 30.0])
    max_retry_attempts: int = 5
    background_refresh: bool = True
    offline_detection: bool = True

    @classmethod
    def from_env(cls) -> "FallbackSettings":
        """Create settings from environment variables."""
        return cls(
            enable_cached_fallback=FallbackConfig.ENABLE_CACHED_FALLBACK,
            max_cache_age=FallbackConfig.MAX_CACHE_AGE_SECONDS,
            retry_schedule=list(FallbackConfig.RETRY_SCHEDULE),
            max_retry_attempts=FallbackConfig.MAX_RETRY_ATTEMPTS,
            background_refresh=FallbackConfig.BACKGROUND_REFRESH,
            offline_detection=FallbackConfig.OFFLINE_DETECTION,
        )


@dataclass
class FallbackOptions:
    """Per-call options of execute_with_fallback."""

    operation_name: str = "api-request"
    allow_partial_data: bool = True
    retry_schedule: Optional[list[float]] = None
    cache_ttl: Optional[float] = None


@dataclass
class RetryInfo:
    """Scheduled-retry details returned to the caller."""

    request_id: str
    next_retry_at: float
    attempt: int
    max_attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "next_retry_at": self.next_retry_at,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
        }


@dataclass
class FallbackResult:
    """
    Outcome of execute_with_fallback.

    source is "live", "cache", "partial" or "none" (failure).
    """

    data: Any
    source: str
    is_fallback: bool = False
    cache_age: Optional[float] = None
    warnings: list[str] = field(default_factory=list)
    errors: list[ClassifiedError] = field(default_factory=list)
    retry_scheduled: Optional[RetryInfo] = None
    total_time: float = 0.0

    @property
    def success(self) -> bool:
        return self.source != "none"


@dataclass
class OfflineState:
    """Connectivity as last observed."""

    is_offline: bool = False
    last_online: float = field(default_factory=time.time)
    connection_quality: str = "good"


@dataclass
class ScheduledRetry:
    """One entry of the retry queue."""

    request_id: str
    cache_key: str
    operation: Callable[[], Awaitable[Any]]
    attempt: int
    max_attempts: int
    next_retry_at: float
    schedule: list[float]
    operation_name: str = "api-request"
    background: bool = False
    cache_ttl: Optional[float] = None
    on_success: Optional[Callable[[Any], None]] = None
    on_failure: Optional[Callable[[ClassifiedError], None]] = None
    last_error: Optional[ClassifiedError] = None
    task: Optional[asyncio.Task] = None
    # Set while an attempt of this entry is awaiting its operation
    claimed: bool = False

    def info(self) -> RetryInfo:
        return RetryInfo(self.request_id, self.next_retry_at, self.attempt, self.max_attempts)


class FallbackStrategy:
    """
    Resilience layer around a live operation.

    Strategy order on failure:
        1. Cached data younger than max_cache_age (tagged "cache"), with a
           silent background refresh when the failure was retryable
        2. Partial recovery hook (tagged "partial")
        3. Scheduled retry from the progressive delay table (tagged "none")

    Scheduled retries run as independent asyncio tasks: cancelling the
    foreground call leaves them running, and a successful retry warms the
    cache for later callers.

    Example:
        >>> fallback = FallbackStrategy(cache, classifier)
        >>> result = await fallback.execute_with_fallback(fetch, cache_key)
        >>> print(result.source, result.warnings)
    """

    def __init__(
        self,
        cache: CacheManager,
        classifier: ErrorClassifier,
        settings: Optional[FallbackSettings] = None,
        partial_recovery: Optional[PartialRecoveryHook] = None,
        connectivity_probe: Optional[Callable[[], Awaitable[bool]]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            cache: Shared cache instance
            classifier: Shared error classifier
            settings: Fallback settings (defaults to FallbackSettings.from_env())
            partial_recovery: Optional hook trying to salvage partial data
            connectivity_probe: Optional async check returning True when online
            clock: Wall-clock time source in seconds
            sleep: Awaitable sleep used by scheduled retries
        """
        self.cache = cache
        self.classifier = classifier
        self.settings = settings or FallbackSettings.from_env()
        self.partial_recovery = partial_recovery
        self.connectivity_probe = connectivity_probe
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep

        self._retry_queue: dict[str, ScheduledRetry] = {}
        self._offline = OfflineState(last_online=self._clock())
        self._online = asyncio.Event()
        self._online.set()

        self._stats = {
            "live_successes": 0,
            "cache_fallbacks": 0,
            "partial_recoveries": 0,
            "failures": 0,
            "offline_skips": 0,
            "retries_scheduled": 0,
            "retries_succeeded": 0,
            "retries_failed": 0,
        }

        logger.info(
            "FallbackStrategy initialized",
            extra={
                "max_cache_age": self.settings.max_cache_age,
                "retry_schedule": self.settings.retry_schedule,
                "max_retry_attempts": self.settings.max_retry_attempts,
            },
        )

    # ========== Execution ==========

    async def execute_with_fallback(
        self,
        operation: Callable[[], Awaitable[Any]],
        cache_key: str,
        options: Optional[FallbackOptions] = None,
    ) -> FallbackResult:
        """
        Run the live operation, falling back on failure.

        Args:
            operation: Coroutine factory producing the live data
            cache_key: Cache key for the result
            options: Per-call options

        Returns:
            FallbackResult tagged live, cache, partial or none
        """
        options = options or FallbackOptions()
        started = self._clock()
        context = ErrorContext(
            operation=options.operation_name, metadata={"cache_key": cache_key}
        )

        if self._offline.is_offline:
            self._stats["offline_skips"] += 1
            logger.warning(
                "Offline, skipping live attempt",
                extra={"operation": options.operation_name, "cache_key": cache_key},
            )
            classified = self.classifier.classify(
                NetworkError("Network connection is offline"), context
            )
        else:
            try:
                logger.debug(
                    "Attempting live operation",
                    extra={"operation": options.operation_name, "cache_key": cache_key},
                )
                data = await operation()
            except Exception as e:
                classified = self.classifier.classify(e, context)
                logger.warning(
                    "Live operation failed, attempting fallback strategies",
                    extra={
                        "operation": options.operation_name,
                        "kind": classified.kind.value,
                        "error": classified.message,
                    },
                )
            else:
                if self.settings.enable_cached_fallback:
                    self.cache.set(cache_key, data, ttl=options.cache_ttl)
                self._stats["live_successes"] += 1
                return FallbackResult(
                    data=data, source="live", total_time=self._clock() - started
                )

        return await self._fall_back(operation, cache_key, options, classified, started)

    async def _fall_back(
        self,
        operation: Callable[[], Awaitable[Any]],
        cache_key: str,
        options: FallbackOptions,
        classified: ClassifiedError,
        started: float,
    ) -> FallbackResult:
        warnings: list[str] = []
        errors = [classified]

        # Strategy 1: cached data
        if self.settings.enable_cached_fallback:
            cached, age = self._try_cache(cache_key)
            if cached is not None:
                warnings.append(f"Using cached data from {format_cache_age(age)}")
                if self.settings.background_refresh and classified.retryable:
                    self.schedule_retry(
                        cache_key, operation, options, background=True
                    )
                self._stats["cache_fallbacks"] += 1
                logger.info(
                    "Serving cached fallback",
                    extra={"cache_key": cache_key, "cache_age": round(age, 1)},
                )
                return FallbackResult(
                    data=cached,
                    source="cache",
                    is_fallback=True,
                    cache_age=age,
                    warnings=warnings,
                    errors=errors,
                    total_time=self._clock() - started,
                )

        # Strategy 2: partial recovery
        if options.allow_partial_data and self.partial_recovery is not None:
            try:
                partial = await self.partial_recovery(operation, classified)
            except Exception as e:
                logger.warning("Partial recovery failed", extra={"error": str(e)})
                partial = None
            if partial is not None:
                warnings.append("Partial data recovered from alternative sources")
                self._stats["partial_recoveries"] += 1
                return FallbackResult(
                    data=partial,
                    source="partial",
                    is_fallback=True,
                    warnings=warnings,
                    errors=errors,
                    total_time=self._clock() - started,
                )

        # Strategy 3: schedule a retry
        retry_info = None
        if classified.retryable:
            retry_info = self.schedule_retry(cache_key, operation, options)
        self._stats["failures"] += 1

        return FallbackResult(
            data=None,
            source="none",
            is_fallback=True,
            warnings=warnings,
            errors=errors,
            retry_scheduled=retry_info,
            total_time=self._clock() - started,
        )

    def _try_cache(self, cache_key: str) -> tuple[Optional[Any], float]:
        cached = self.cache.get(cache_key)
        if cached is None:
            return None, 0.0

        age = self.cache.get_entry_age(cache_key) or 0.0
        if age > self.settings.max_cache_age:
            logger.info(
                "Cached data too old, rejecting fallback",
                extra={
                    "cache_key": cache_key,
                    "cache_age": age,
                    "max_age": self.settings.max_cache_age,
                },
            )
            return None, age
        return cached, age

    # ========== Scheduled retries ==========

    def schedule_retry(
        self,
        cache_key: str,
        operation: Callable[[], Awaitable[Any]],
        options: Optional[FallbackOptions] = None,
        background: bool = False,
        on_success: Optional[Callable[[Any], None]] = None,
        on_failure: Optional[Callable[[ClassifiedError], None]] = None,
    ) -> RetryInfo:
        """
        Queue a retry of operation in a background task.

        A cache key with a retry already queued reuses that entry, so its
        request id stays stable across attempts.

        Args:
            cache_key: Cache key refreshed on success
            operation: Coroutine factory to retry
            options: Per-call options (custom schedule, cache ttl)
            background: Silent refresh after a cache fallback
            on_success: Callback receiving the data (default stores it in the cache)
            on_failure: Callback receiving each classified failure

        Returns:
            RetryInfo for the queued entry
        """
        options = options or FallbackOptions()
        for entry in self._retry_queue.values():
            if entry.cache_key == cache_key:
                return entry.info()

        schedule = options.retry_schedule or self.settings.retry_schedule
        entry = ScheduledRetry(
            request_id=f"{cache_key}-{uuid.uuid4().hex[:8]}",
            cache_key=cache_key,
            operation=operation,
            attempt=1,
            max_attempts=self.settings.max_retry_attempts,
            next_retry_at=self._clock() + self._delay_for(schedule, 1),
            schedule=list(schedule),
            operation_name=options.operation_name,
            background=background,
            cache_ttl=options.cache_ttl,
            on_success=on_success,
            on_failure=on_failure,
        )
        self._retry_queue[entry.request_id] = entry
        entry.task = asyncio.create_task(self._run_scheduled(entry))
        self._stats["retries_scheduled"] += 1

        logger.info(
            "Retry scheduled",
            extra={
                "request_id": entry.request_id,
                "attempt": entry.attempt,
                "max_attempts": entry.max_attempts,
                "next_retry_at": entry.next_retry_at,
                "background": background,
            },
        )
        return entry.info()

    @staticmethod
    def _delay_for(schedule: list[float], attempt: int) -> float:
        return schedule[min(attempt - 1, len(schedule) - 1)]

    async def _run_scheduled(self, entry: ScheduledRetry) -> None:
        context = ErrorContext(
            operation=entry.operation_name,
            request_id=entry.request_id,
            metadata={"cache_key": entry.cache_key},
        )
        while True:
            await self._sleep(self._delay_for(entry.schedule, entry.attempt))
            await self._online.wait()

            if entry.request_id not in self._retry_queue:
                return
            if entry.claimed:
                # A manual flush is running this entry
                continue

            logger.debug(
                "Executing scheduled retry",
                extra={"request_id": entry.request_id, "attempt": entry.attempt},
            )
            entry.claimed = True
            try:
                data = await entry.operation()
            except Exception as e:
                entry.claimed = False
                classified = self.classifier.classify(e, context)
                entry.last_error = classified
                self._stats["retries_failed"] += 1
                if entry.on_failure:
                    entry.on_failure(classified)

                if entry.attempt >= entry.max_attempts or not classified.retryable:
                    logger.warning(
                        "Scheduled retry abandoned",
                        extra={
                            "request_id": entry.request_id,
                            "attempt": entry.attempt,
                            "kind": classified.kind.value,
                        },
                    )
                    self._retry_queue.pop(entry.request_id, None)
                    return

                entry.attempt += 1
                entry.next_retry_at = self._clock() + self._delay_for(entry.schedule, entry.attempt)
                logger.warning(
                    "Scheduled retry failed",
                    extra={
                        "request_id": entry.request_id,
                        "next_attempt": entry.attempt,
                        "error": classified.message,
                    },
                )
                continue

            entry.claimed = False
            self._complete(entry, data)
            return

    def _complete(self, entry: ScheduledRetry, data: Any) -> None:
        self._retry_queue.pop(entry.request_id, None)
        self._stats["retries_succeeded"] += 1
        if entry.on_success:
            entry.on_success(data)
        elif self.settings.enable_cached_fallback:
            self.cache.set(entry.cache_key, data, ttl=entry.cache_ttl)
        logger.info(
            "Scheduled retry succeeded",
            extra={"request_id": entry.request_id, "attempt": entry.attempt},
        )

    async def retry_failed_operations(self) -> dict[str, int]:
        """
        Run every queued retry now.

        Entries whose scheduled attempt is already in flight are skipped,
        and an entry run here is not run again by its scheduled task.

        Returns:
            Dictionary with attempted, succeeded and failed counts
        """
        results = {"attempted": 0, "succeeded": 0, "failed": 0}

        for entry in list(self._retry_queue.values()):
            if entry.claimed or entry.request_id not in self._retry_queue:
                continue

            results["attempted"] += 1
            entry.claimed = True
            try:
                data = await entry.operation()
            except Exception as e:
                entry.claimed = False
                results["failed"] += 1
                entry.last_error = self.classifier.classify(
                    e, ErrorContext(operation=entry.operation_name, request_id=entry.request_id)
                )
                if entry.on_failure:
                    entry.on_failure(entry.last_error)
                logger.warning(
                    "Manual retry failed",
                    extra={"request_id": entry.request_id, "error": str(e)},
                )
                continue

            entry.claimed = False
            results["succeeded"] += 1
            if entry.request_id not in self._retry_queue:
                # Cleared while this attempt was running
                continue
            if entry.task is not None and entry.task is not asyncio.current_task():
                entry.task.cancel()
            self._complete(entry, data)

        return results

    def get_retry_queue_status(self) -> dict[str, Any]:
        """
        Retry queue introspection.

        Returns:
            Dictionary with total_scheduled, next_retry_at and per-entry details
        """
        operations = [entry.info().to_dict() for entry in self._retry_queue.values()]
        return {
            "total_scheduled": len(operations),
            "next_retry_at": min((op["next_retry_at"] for op in operations), default=None),
            "operations": operations,
        }

    def clear_retry_queue(self) -> int:
        """Cancel and drop every scheduled retry; returns how many were dropped."""
        count = len(self._retry_queue)
        for entry in self._retry_queue.values():
            if entry.task is not None:
                entry.task.cancel()
        self._retry_queue.clear()
        logger.info(f"Retry queue cleared ({count} entries)")
        return count

    async def wait_for_retries(self) -> None:
        """Wait until every scheduled retry task has finished."""
        tasks = [e.task for e in self._retry_queue.values() if e.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel scheduled retries and wait for their tasks to exit."""
        tasks = [e.task for e in self._retry_queue.values() if e.task is not None]
        self.clear_retry_queue()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("FallbackStrategy shut down")

    # ========== Connectivity ==========

    @property
    def is_offline(self) -> bool:
        return self._offline.is_offline

    def get_connection_quality(self) -> OfflineState:
        return OfflineState(**vars(self._offline))

    def mark_offline(self) -> None:
        """Record lost connectivity; foreground and scheduled attempts pause."""
        if not self._offline.is_offline:
            logger.warning("Connection lost")
        self._offline.is_offline = True
        self._offline.connection_quality = "offline"
        self._online.clear()

    async def mark_online(self) -> dict[str, int]:
        """
        Record restored connectivity and flush the retry queue.

        Returns:
            Result of retry_failed_operations()
        """
        was_offline = self._offline.is_offline
        self._offline.is_offline = False
        self._offline.connection_quality = "good"
        self._offline.last_online = self._clock()
        self._online.set()

        if was_offline:
            logger.info("Connection restored")
            return await self.retry_failed_operations()
        return {"attempted": 0, "succeeded": 0, "failed": 0}

    async def check_connectivity(self) -> bool:
        """
        Probe connectivity and update the offline state.

        Returns:
            True when online
        """
        if not self.settings.offline_detection or self.connectivity_probe is None:
            return not self._offline.is_offline

        try:
            online = bool(await self.connectivity_probe())
        except Exception as e:
            logger.debug("Connectivity probe failed", extra={"error": str(e)})
            online = False

        if online and self._offline.is_offline:
            await self.mark_online()
        elif not online:
            self.mark_offline()
        return online

    def get_offline_state(self, cache_key: str) -> dict[str, Any]:
        """
        Offline view of a cache key.

        Args:
            cache_key: Cache key to inspect

        Returns:
            Dictionary with has_offline_data, offline_data, cache_age,
            is_stale (older than half the max cache age) and recommendations
        """
        cached, age = self._try_cache(cache_key)
        recommendations: list[str] = []

        if cached is None:
            return {
                "has_offline_data": False,
                "offline_data": None,
                "cache_age": None,
                "is_stale": False,
                "recommendations": [
                    "No offline data available",
                    "Try again when connection is restored",
                ],
            }

        is_stale = age > self.settings.max_cache_age / 2
        if is_stale:
            recommendations += [
                "Cached data is outdated",
                "Results may not reflect recent changes",
            ]
        else:
            recommendations.append("Using recent cached data")

        if self._offline.is_offline:
            recommendations += [
                "Working in offline mode",
                "Data will refresh when connection is restored",
            ]

        return {
            "has_offline_data": True,
            "offline_data": cached,
            "cache_age": age,
            "is_stale": is_stale,
            "recommendations": recommendations,
        }

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self._stats,
            "queued_retries": len(self._retry_queue),
            "is_offline": self._offline.is_offline,
        }

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"FallbackStrategy(queued_retries={len(self._retry_queue)}, "
            f"offline={self._offline.is_offline})"
        )

"""
Concurrent page fetching for Tender Harvester.

A bounded worker pool drains a priority queue of page requests. Workers
report each attempt through a results queue to a single coordinating loop,
which records successes, re-queues retryable failures with backoff and
collects permanent failures. A shared rate-limit gate holds back new
request starts after a 429.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional

from tender_harvester.config import FetchConfig, UpstreamConfig
from tender_harvester.orchestrator.error_handler import (
    ClassifiedError,
    ErrorClassifier,
    ErrorContext,
)
from tender_harvester.parsers.ocds_parser import OCDSParser
from tender_harvester.utils.exceptions import RateLimitError, RequestTimeoutError

logger = logging.getLogger(__name__)

# Added to a retry's priority so it never outranks fresh work
RETRY_PRIORITY_OFFSET = 1_000_000


@dataclass(order=True)
class PageRequest:
    """Queued page fetch, ordered by (priority, sequence)."""

    priority: int
    sequence: int
    page_number: int = field(compare=False)
    date_from: str = field(compare=False)
    date_to: str = field(compare=False)
    page_size: int = field(compare=False)
    retry_count: int = field(default=0, compare=False)
    request_id: str = field(default="", compare=False)

    def for_retry(self, sequence: int) -> "PageRequest":
        """Copy for the next attempt; keeps the window, size and request id."""
        return replace(
            self,
            priority=self.page_number + RETRY_PRIORITY_OFFSET,
            sequence=sequence,
            retry_count=self.retry_count + 1,
        )


@dataclass(frozen=True)
class PageResult:
    """Immutable outcome of one fetch attempt."""

    page_number: int
    records: list[dict[str, Any]]
    success: bool
    elapsed: float
    error: Optional[ClassifiedError] = None
    retry_count: int = 0


@dataclass
class BatchResult:
    """Aggregate of the attempts made for one batch of pages.

    Attributes:
        results: Successful page results
        failures: Every failed attempt, including ones later retried
        errors: Permanent failures (retries exhausted or not retryable)
        page_timings: Elapsed time of the final attempt per page
    """

    results: list[PageResult] = field(default_factory=list)
    failures: list[PageResult] = field(default_factory=list)
    errors: list[ClassifiedError] = field(default_factory=list)
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    total_response_time: float = 0.0
    average_response_time: float = 0.0
    page_timings: dict[int, float] = field(default_factory=dict)

    @property
    def page_count(self) -> int:
        return self.successful_requests + self.failed_requests

    @property
    def failed_pages(self) -> list[int]:
        return sorted(e.page_number for e in self.errors if e.page_number is not None)


@dataclass
class SchedulerSettings:
    """Configuration for the page fetch scheduler.

    Attributes:
        max_concurrent_requests: Worker count
        request_timeout: Timeout of a single request (seconds)
        max_retries: Retries per page before it fails permanently
        rate_limit_delay: Gate delay after a 429 without Retry-After, and backoff base
        backoff_multiplier: Backoff growth factor
        max_backoff_delay: Cap on the computed backoff (seconds)
        max_rate_limit_delay: Cap on server supplied Retry-After (seconds)
    """

    max_concurrent_requests: int = 8
    request_timeout: float = 20.0
    max_retries: int = 3
    rate_limit_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_delay: float = 10.0
    max_rate_limit_delay: float = 60.0

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        """Create settings from environment variables."""
        return cls(
            max_concurrent_requests=FetchConfig.MAX_CONCURRENT_REQUESTS,
            request_timeout=UpstreamConfig.REQUEST_TIMEOUT,
            max_retries=FetchConfig.MAX_RETRIES,
            rate_limit_delay=FetchConfig.RATE_LIMIT_DELAY,
            backoff_multiplier=FetchConfig.BACKOFF_MULTIPLIER,
            max_backoff_delay=FetchConfig.MAX_BACKOFF_DELAY,
            max_rate_limit_delay=FetchConfig.MAX_RATE_LIMIT_DELAY,
        )

    def retry_delay(self, retry_count: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before re-queueing a failed page.

        Args:
            retry_count: Retry number of the upcoming attempt (1-based)
            retry_after: Server supplied minimum delay

        Returns:
            max(min(rate_limit_delay * multiplier^(retry_count-1), max_backoff), retry_after)
        """
        backoff = min(
            self.rate_limit_delay * self.backoff_multiplier ** max(retry_count - 1, 0),
            self.max_backoff_delay,
        )
        if retry_after:
            backoff = max(backoff, min(retry_after, self.max_rate_limit_delay))
        return backoff


class PageFetchScheduler:
    """
    Bounded-concurrency, priority-ordered page fetcher.

    Features:
    - Worker pool draining an asyncio.PriorityQueue
    - Fresh pages in ascending page order, retries deprioritized
    - Shared rate-limit gate honoring Retry-After
    - Per-request timeout
    - Exponential backoff with cap, bounded retries
    - Injectable clock and sleep for simulated time

    Example:
        >>> scheduler = PageFetchScheduler(client, ErrorClassifier())
        >>> batch = await scheduler.process_batch([1, 2, 3], "2025-01-01", "2025-03-31", 50)
        >>> batch.successful_requests
        3
    """

    def __init__(
        self,
        client: Any,
        classifier: ErrorClassifier,
        settings: Optional[SchedulerSettings] = None,
        parser: Optional[OCDSParser] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            client: Object exposing async fetch_page(page_number, date_from,
                date_to, page_size, timeout=None)
            classifier: Error classifier used for failed attempts
            settings: Scheduler settings
            parser: Payload parser
            clock: Monotonic time source in seconds
            sleep: Awaitable sleep for gate waits and backoff
        """
        self.client = client
        self.classifier = classifier
        self.settings = settings or SchedulerSettings.from_env()
        self.parser = parser or OCDSParser()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._sequence = itertools.count()
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._in_flight = 0
        self._waiting_retries = 0
        self._rate_limited_until = 0.0

        self._stats = {
            "batches": 0,
            "requests": 0,
            "successful": 0,
            "failed": 0,
            "retries": 0,
            "rate_limited": 0,
            "peak_in_flight": 0,
        }

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def rate_limited_until(self) -> float:
        return self._rate_limited_until

    async def process_batch(
        self,
        page_numbers: list[int],
        date_from: str,
        date_to: str,
        page_size: int,
        max_concurrency: Optional[int] = None,
    ) -> BatchResult:
        """
        Fetch a set of pages with bounded concurrency.

        Args:
            page_numbers: Pages to fetch
            date_from: Window start
            date_to: Window end
            page_size: Records per page
            max_concurrency: Override of the worker count for this batch

        Returns:
            BatchResult with successful pages, permanent errors and timings
        """
        batch = BatchResult()
        if not page_numbers:
            return batch

        started = self._clock()
        concurrency = max(1, min(
            max_concurrency or self.settings.max_concurrent_requests,
            self.settings.max_concurrent_requests,
            len(page_numbers),
        ))

        queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        reports: asyncio.Queue = asyncio.Queue()
        self._queue = queue

        for page_number in sorted(set(page_numbers)):
            queue.put_nowait(PageRequest(
                priority=page_number,
                sequence=next(self._sequence),
                page_number=page_number,
                date_from=date_from,
                date_to=date_to,
                page_size=page_size,
                request_id=f"page-{page_number}-{date_from}-{date_to}",
            ))
        pending = queue.qsize()

        logger.info(
            f"Processing batch of {pending} pages with max concurrency: {concurrency}",
            extra={"first_page": min(page_numbers), "last_page": max(page_numbers)},
        )

        workers = [asyncio.create_task(self._worker(queue, reports)) for _ in range(concurrency)]
        timers: set[asyncio.Task] = set()

        try:
            while pending:
                request, result = await reports.get()
                batch.total_requests += 1

                if result.success:
                    batch.results.append(result)
                    batch.successful_requests += 1
                    batch.page_timings[result.page_number] = result.elapsed
                    pending -= 1
                    continue

                batch.failures.append(result)
                error = result.error
                if error is not None and error.retryable and request.retry_count < self.settings.max_retries:
                    retry = request.for_retry(next(self._sequence))
                    delay = self.settings.retry_delay(retry.retry_count, error.retry_after)
                    batch.retried_requests += 1
                    self._stats["retries"] += 1
                    logger.warning(
                        f"Scheduling retry for page {request.page_number} in {delay:.2f}s "
                        f"(attempt {retry.retry_count + 1})",
                        extra={"kind": error.kind.value, "request_id": retry.request_id},
                    )
                    timer = asyncio.create_task(self._requeue_after(queue, retry, delay))
                    timers.add(timer)
                    timer.add_done_callback(timers.discard)
                    continue

                batch.failed_requests += 1
                batch.page_timings[result.page_number] = result.elapsed
                if error is not None:
                    batch.errors.append(error)
                pending -= 1
                logger.error(
                    f"Page {request.page_number} failed permanently",
                    extra={
                        "kind": error.kind.value if error else None,
                        "retry_count": request.retry_count,
                    },
                )
        finally:
            for task in [*workers, *timers]:
                task.cancel()
            await asyncio.gather(*workers, *timers, return_exceptions=True)
            self._queue = None
            self._waiting_retries = 0

        batch.total_response_time = self._clock() - started
        if batch.results:
            batch.average_response_time = (
                sum(r.elapsed for r in batch.results) / len(batch.results)
            )

        self._stats["batches"] += 1
        self._stats["successful"] += batch.successful_requests
        self._stats["failed"] += batch.failed_requests

        logger.info(
            "Batch processing completed",
            extra={
                "total": batch.total_requests,
                "successful": batch.successful_requests,
                "failed": batch.failed_requests,
                "retried": batch.retried_requests,
                "avg_response_time": round(batch.average_response_time, 3),
            },
        )
        return batch

    async def _worker(self, queue: asyncio.PriorityQueue, reports: asyncio.Queue) -> None:
        while True:
            request = await queue.get()
            await self._wait_for_gate()
            result = await self._execute(request)
            await reports.put((request, result))

    async def _wait_for_gate(self) -> None:
        remaining = self._rate_limited_until - self._clock()
        while remaining > 0:
            logger.debug(f"Rate limited, waiting {remaining:.2f}s")
            await self._sleep(remaining)
            remaining = self._rate_limited_until - self._clock()

    async def _execute(self, request: PageRequest) -> PageResult:
        self._in_flight += 1
        self._stats["requests"] += 1
        self._stats["peak_in_flight"] = max(self._stats["peak_in_flight"], self._in_flight)
        started = self._clock()

        logger.debug(
            f"Fetching page {request.page_number} (attempt {request.retry_count + 1})",
            extra={"request_id": request.request_id},
        )

        try:
            payload = await asyncio.wait_for(
                self.client.fetch_page(
                    request.page_number,
                    request.date_from,
                    request.date_to,
                    request.page_size,
                    timeout=self.settings.request_timeout,
                ),
                timeout=self.settings.request_timeout,
            )
            page = self.parser.parse_page(payload)
            return PageResult(
                page_number=request.page_number,
                records=page.releases,
                success=True,
                elapsed=self._clock() - started,
                retry_count=request.retry_count,
            )

        except Exception as e:
            error = e
            if isinstance(e, asyncio.TimeoutError) and not isinstance(e, RequestTimeoutError):
                error = RequestTimeoutError(
                    f"Request timed out after {self.settings.request_timeout}s",
                    timeout=self.settings.request_timeout,
                    page_number=request.page_number,
                )
            if isinstance(error, RateLimitError):
                self._open_gate(error.retry_after)

            classified = self.classifier.classify(
                error,
                ErrorContext(
                    operation="fetch_page",
                    request_id=request.request_id,
                    metadata={"retry_count": request.retry_count},
                ),
            )
            classified.page_number = request.page_number
            return PageResult(
                page_number=request.page_number,
                records=[],
                success=False,
                elapsed=self._clock() - started,
                error=classified,
                retry_count=request.retry_count,
            )

        finally:
            self._in_flight -= 1

    def _open_gate(self, retry_after: Optional[float]) -> None:
        delay = retry_after if retry_after else self.settings.rate_limit_delay
        delay = min(delay, self.settings.max_rate_limit_delay)
        until = self._clock() + delay
        # Never shorten a gate another worker already set
        self._rate_limited_until = max(self._rate_limited_until, until)
        self._stats["rate_limited"] += 1
        logger.warning(
            "Rate limited, holding new requests",
            extra={"delay": delay, "rate_limited_until": self._rate_limited_until},
        )

    async def _requeue_after(
        self, queue: asyncio.PriorityQueue, request: PageRequest, delay: float
    ) -> None:
        self._waiting_retries += 1
        try:
            await self._sleep(delay)
            queue.put_nowait(request)
        finally:
            self._waiting_retries -= 1

    def get_queue_status(self) -> dict[str, Any]:
        """
        Snapshot of the scheduler state.

        Returns:
            Dictionary with queued, in-flight and waiting retry counts and
            the rate-limit gate
        """
        now = self._clock()
        return {
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "in_flight": self._in_flight,
            "waiting_retries": self._waiting_retries,
            "rate_limited_until": self._rate_limited_until,
            "is_rate_limited": self._rate_limited_until > now,
            "max_concurrent_requests": self.settings.max_concurrent_requests,
        }

    def get_statistics(self) -> dict[str, Any]:
        return dict(self._stats)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"PageFetchScheduler(max_concurrent={self.settings.max_concurrent_requests}, "
            f"in_flight={self._in_flight})"
        )

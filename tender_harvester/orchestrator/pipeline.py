"""
End-to-end dataset pipeline for Tender Harvester.

Cache lookup, discovery, batched concurrent fetching, aggregation and
fallback, exposed as one aggregated response or as an incremental event
stream.
"""

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from tender_harvester.config import CacheConfig, FetchConfig
from tender_harvester.models.schemas import (
    DatasetResponse,
    FetchPlan,
    Pagination,
    PerformanceMetrics,
    ProgressPhase,
    ProgressSnapshot,
    ResultSource,
    StreamEvent,
    StreamEventType,
)
from tender_harvester.orchestrator.aggregator import DataAggregator
from tender_harvester.orchestrator.cache_manager import CacheManager
from tender_harvester.orchestrator.discovery import DiscoveryProber, DiscoverySettings
from tender_harvester.orchestrator.error_handler import (
    ClassifiedError,
    ErrorClassifier,
    ErrorContext,
    OperationOutcome,
)
from tender_harvester.orchestrator.fallback import FallbackOptions, FallbackStrategy, RetryInfo
from tender_harvester.orchestrator.fetch_scheduler import (
    BatchResult,
    PageFetchScheduler,
    SchedulerSettings,
)
from tender_harvester.parsers.ocds_parser import OCDSParser
from tender_harvester.utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)

# Prefix of the long-lived copy kept for cache fallback
FALLBACK_KEY_PREFIX = "fallback:"

# Upper bound on pages fetched past an estimated count
MAX_EXTRA_PAGES = 1000

EventSink = Callable[[StreamEvent], Awaitable[None]]


class TenderPipeline:
    """
    Fetch orchestration for one upstream release source.

    Flow:
        1. Cache lookup by request options
        2. Discovery (page 1 probe) under execute_with_retry
        3. Pages split into plan.batch_size batches, each fetched by the
           scheduler with min(max_concurrency, recommended) workers
        4. Batch results folded into the aggregator
        5. Page outcomes judged against the minimum success fraction
        6. Result cached and returned, with cache fallback and scheduled
           retries on failure

    The cache, classifier and fallback instances are owned by the caller
    and can be shared between pipelines.

    Example:
        >>> async with OCDSClient() as client:
        ...     pipeline = TenderPipeline(client)
        ...     response = await pipeline.fetch_dataset("2025-01-01", "2025-03-31")
        ...     print(response.status, response.record_count)
    """

    def __init__(
        self,
        client: Any,
        cache: Optional[CacheManager] = None,
        classifier: Optional[ErrorClassifier] = None,
        fallback: Optional[FallbackStrategy] = None,
        discovery_settings: Optional[DiscoverySettings] = None,
        scheduler_settings: Optional[SchedulerSettings] = None,
        min_success_threshold: Optional[float] = None,
        dataset_ttl: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            client: Upstream client exposing fetch_page and fetch_release
            cache: Shared cache (defaults to a new CacheManager)
            classifier: Shared error classifier
            fallback: Shared fallback orchestrator
            discovery_settings: Discovery probe settings
            scheduler_settings: Page scheduler settings
            min_success_threshold: Fraction of pages that must succeed
            dataset_ttl: TTL of cached dataset responses (seconds)
            clock: Monotonic time source in seconds
            sleep: Awaitable sleep passed to the collaborators
        """
        self.client = client
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self.cache = cache if cache is not None else CacheManager()
        self.classifier = (
            classifier if classifier is not None else ErrorClassifier(sleep=self._sleep)
        )
        self.fallback = (
            fallback if fallback is not None
            else FallbackStrategy(self.cache, self.classifier, sleep=self._sleep)
        )
        # Set when this pipeline started the cache sweeper and must stop it
        self._owns_sweeper = False
        self.parser = OCDSParser()
        self.prober = DiscoveryProber(
            client, discovery_settings, self.parser, sleep=self._sleep, clock=self._clock
        )
        self.scheduler = PageFetchScheduler(
            client,
            self.classifier,
            scheduler_settings,
            self.parser,
            clock=self._clock,
            sleep=self._sleep,
        )
        self.min_success_threshold = (
            FetchConfig.MIN_SUCCESS_THRESHOLD
            if min_success_threshold is None else min_success_threshold
        )
        self.dataset_ttl = (
            CacheConfig.DATASET_TTL_SECONDS if dataset_ttl is None else dataset_ttl
        )

        self._stats = {
            "requests": 0,
            "cache_hits": 0,
            "live_fetches": 0,
            "partial_responses": 0,
            "failed_responses": 0,
            "release_lookups": 0,
        }

        logger.info(
            "TenderPipeline initialized",
            extra={
                "min_success_threshold": self.min_success_threshold,
                "dataset_ttl": self.dataset_ttl,
            },
        )

    # ========== Dataset ==========

    def cache_key(self, date_from: str, date_to: str, page_size: int, max_concurrency: int) -> str:
        return self.cache.generate_key(
            date_from=date_from,
            date_to=date_to,
            page_size=page_size,
            max_concurrency=max_concurrency,
            include_metadata=True,
        )

    async def fetch_dataset(
        self,
        date_from: str,
        date_to: str,
        page_size: int = 50,
        max_concurrency: int = 8,
    ) -> DatasetResponse:
        """
        Fetch and aggregate every release in a date window.

        Args:
            date_from: Window start (YYYY-MM-DD)
            date_to: Window end (YYYY-MM-DD)
            page_size: Records per page
            max_concurrency: Upper bound on concurrent requests

        Returns:
            DatasetResponse with status complete, partial or error
        """
        self._ensure_sweeper()
        self._stats["requests"] += 1
        key = self.cache_key(date_from, date_to, page_size, max_concurrency)

        cached = self._cached_response(key)
        if cached is not None:
            return cached

        logger.info("Cache miss - fetching fresh data", extra={"cache_key": key})

        async def live() -> dict[str, Any]:
            response = await self._fetch_live(date_from, date_to, page_size, max_concurrency)
            self._store(key, response)
            return response.to_dict()

        result = await self.fallback.execute_with_fallback(
            live,
            FALLBACK_KEY_PREFIX + key,
            FallbackOptions(
                operation_name="dataset_fetch",
                cache_ttl=self.fallback.settings.max_cache_age,
            ),
        )

        if result.source == "none":
            self._stats["failed_responses"] += 1
            return self._error_response(result.errors[0], result.retry_scheduled, result.warnings)

        response = DatasetResponse.model_validate(result.data)
        if result.source == "cache":
            response.source = ResultSource.CACHE
            response.performance.cache_hit_rate = 1.0
            response.performance.error_rate = 1.0
            response.warnings.extend(result.warnings)
            response.errors.extend(e.to_error_info() for e in result.errors)
        elif result.source == "partial":
            response.source = ResultSource.PARTIAL
            response.warnings.extend(result.warnings)
        else:
            self._stats["live_fetches"] += 1

        if response.status == "partial":
            self._stats["partial_responses"] += 1
        return response

    async def stream_dataset(
        self,
        date_from: str,
        date_to: str,
        page_size: int = 50,
        max_concurrency: int = 8,
    ) -> AsyncIterator[StreamEvent]:
        """
        Fetch a date window, yielding progress, data, error and complete events.

        A cache hit yields a single complete event. Otherwise events follow
        discovery and every batch, ending with a complete event carrying the
        aggregated records, or an error event.

        Args:
            date_from: Window start (YYYY-MM-DD)
            date_to: Window end (YYYY-MM-DD)
            page_size: Records per page
            max_concurrency: Upper bound on concurrent requests

        Yields:
            StreamEvent
        """
        self._ensure_sweeper()
        self._stats["requests"] += 1
        key = self.cache_key(date_from, date_to, page_size, max_concurrency)

        cached = self._cached_response(key)
        if cached is not None:
            yield StreamEvent(
                type=StreamEventType.COMPLETE,
                data=cached.data,
                progress=ProgressSnapshot(
                    completed=1, total=1, percentage=100, phase=ProgressPhase.COMPLETE
                ),
                performance=cached.performance,
                metadata={"source": ResultSource.CACHE.value, "cache_key": key},
            )
            return

        yield StreamEvent(
            type=StreamEventType.PROGRESS,
            progress=ProgressSnapshot(),
            metadata={"stage": "initializing"},
        )

        events: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            self._fetch_live(date_from, date_to, page_size, max_concurrency, emit=events.put)
        )
        task.add_done_callback(lambda _: events.put_nowait(None))

        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                yield event

            try:
                response = task.result()
            except Exception as e:
                classified = self.classifier.classify(
                    e, ErrorContext(operation="dataset_stream", metadata={"cache_key": key})
                )
                self._stats["failed_responses"] += 1
                logger.error(
                    "Streaming fetch failed",
                    extra={"kind": classified.kind.value, "error": classified.message},
                )
                yield StreamEvent(type=StreamEventType.ERROR, error=classified.to_error_info())
                return

            self._stats["live_fetches"] += 1
            self._store(key, response)
            self.cache.set(
                FALLBACK_KEY_PREFIX + key,
                response.to_dict(),
                ttl=self.fallback.settings.max_cache_age,
            )
            yield StreamEvent(
                type=StreamEventType.COMPLETE,
                data=response.data,
                progress=response.progress,
                performance=response.performance,
                metadata={
                    "status": response.status,
                    "warnings": response.warnings,
                    "pagination": response.pagination.model_dump() if response.pagination else None,
                },
            )
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _fetch_live(
        self,
        date_from: str,
        date_to: str,
        page_size: int,
        max_concurrency: int,
        emit: Optional[EventSink] = None,
    ) -> DatasetResponse:
        started = self._clock()
        context = ErrorContext(
            operation="dataset_fetch",
            request_id=f"req_{uuid.uuid4().hex[:12]}",
            metadata={
                "date_from": date_from,
                "date_to": date_to,
                "page_size": page_size,
                "max_concurrency": max_concurrency,
            },
        )

        plan = await self.classifier.execute_with_retry(
            lambda: self.prober.discover(date_from, date_to, page_size),
            replace(context, operation="api_discovery"),
        )
        concurrency = min(max_concurrency, plan.recommended_concurrency)

        logger.info(
            f"Discovery completed: {plan.total_count} records in {plan.total_pages} pages",
            extra={
                "concurrency": concurrency,
                "batch_size": plan.batch_size,
                "risk_level": plan.risk_level.value,
                "estimated_total_time": plan.estimated_total_time,
            },
        )

        aggregator = DataAggregator(clock=self._clock)
        aggregator.initialize(plan.total_pages)

        if emit is not None:
            await emit(StreamEvent(
                type=StreamEventType.PROGRESS,
                progress=aggregator.get_progress().to_snapshot(),
                performance=PerformanceMetrics(discovery_time=plan.discovery_time),
                metadata={"stage": "discovery_complete", "total_count": plan.total_count},
            ))

        outcomes: list[OperationOutcome] = []
        request_times: list[float] = []
        page_errors: dict[int, ClassifiedError] = {}

        async def run_batch(pages: list[int]) -> BatchResult:
            batch = await self.scheduler.process_batch(
                pages, date_from, date_to, page_size, max_concurrency=concurrency
            )
            aggregator.process_batch_result(batch)
            request_times.extend(r.elapsed for r in batch.results)
            outcomes.extend(self._page_outcomes(batch, run_batch))
            page_errors.update((e.page_number, e) for e in batch.errors)

            if emit is not None:
                await emit(self._batch_event(batch, aggregator))
                for error in batch.errors:
                    await emit(StreamEvent(type=StreamEventType.ERROR, error=error.to_error_info()))
            return batch

        pages = list(range(1, plan.total_pages + 1))
        batches = [pages[i:i + plan.batch_size] for i in range(0, len(pages), plan.batch_size)]
        logger.info(f"Processing {len(batches)} batches with batch size {plan.batch_size}")

        batch = None
        for index, batch_pages in enumerate(batches, start=1):
            logger.debug(f"Processing batch {index}/{len(batches)} with {len(batch_pages)} pages")
            batch = await run_batch(batch_pages)

        if plan.count_is_estimate:
            await self._fetch_past_estimate(plan, batch, aggregator, run_batch)

        # Retried pages append to outcomes; judge the first-pass snapshot
        judgement = await self.classifier.handle_partial_failure(
            list(outcomes), context, self.min_success_threshold
        )

        aggregation_started = self._clock()
        aggregated = aggregator.finalize()
        aggregation_time = self._clock() - aggregation_started

        progress = aggregated.progress
        failed_pages = aggregator.failed_page_numbers
        attempted = progress.successful_pages + len(failed_pages)
        performance = PerformanceMetrics(
            total_time=self._clock() - started,
            average_request_time=(
                sum(request_times) / len(request_times) if request_times else 0.0
            ),
            cache_hit_rate=0.0,
            error_rate=len(failed_pages) / attempted if attempted else 0.0,
            discovery_time=plan.discovery_time,
            aggregation_time=aggregation_time,
        )

        warnings = []
        if plan.count_is_estimate:
            warnings.append("Total count was not advertised; fetched until a short page")
        issues = [i for i in aggregated.validation_errors if i.severity == "warning"]
        if issues:
            warnings.append(f"{len(issues)} validation warnings found")
        warnings.extend(judgement.warnings)

        status = "complete"
        if not judgement.success:
            status = "partial"
            warnings.append(judgement.user_message)
            warnings.append("Some data may be incomplete due to processing errors")

        errors = [page_errors[p].to_error_info() for p in failed_pages if p in page_errors]

        logger.info(
            "Dataset fetch completed",
            extra={
                "status": status,
                "total_releases": len(aggregated.records),
                "failed_pages": len(failed_pages),
                "processing_time": round(performance.total_time, 3),
                "data_quality": aggregated.metadata.data_quality_score,
            },
        )

        return DatasetResponse(
            success=judgement.success,
            status=status,
            source=ResultSource.LIVE,
            data=aggregated.records,
            pagination=Pagination(
                total=len(aggregated.records),
                page_size=page_size,
                total_pages=progress.total_pages,
                fetched_pages=progress.successful_pages,
                failed_pages=len(failed_pages),
            ),
            metadata={
                "total_count": plan.total_count,
                "count_is_estimate": plan.count_is_estimate,
                "risk_level": plan.risk_level.value,
                "concurrency": concurrency,
                "batch_size": plan.batch_size,
                "duplicates_removed": aggregated.duplicates_removed,
                "validation_issues": len(aggregated.validation_errors),
                "failed_page_numbers": failed_pages,
                "recovery_attempts": [
                    {
                        "strategy": a.strategy.value,
                        "success": a.success,
                        "duration": a.duration,
                        "description": a.description,
                    }
                    for a in judgement.recovery_attempts
                ],
                "request_id": context.request_id,
                "last_updated": datetime.now(timezone.utc).isoformat(),
                **aggregated.metadata.to_dict(),
            },
            performance=performance,
            progress=progress.to_snapshot(),
            warnings=warnings,
            errors=errors,
        )

    async def _fetch_past_estimate(
        self,
        plan: FetchPlan,
        last_batch: Optional[BatchResult],
        aggregator: DataAggregator,
        run_batch: Callable[[list[int]], Awaitable[BatchResult]],
    ) -> None:
        # The estimate is the first page length; a full last page means more may follow
        page_number = plan.total_pages
        batch = last_batch
        while self._page_is_full(batch, page_number, plan.page_size):
            if page_number - plan.total_pages >= MAX_EXTRA_PAGES:
                logger.warning(
                    "Stopped fetching past the estimated count",
                    extra={"last_page": page_number},
                )
                return
            page_number += 1
            aggregator.extend(page_number)
            batch = await run_batch([page_number])

        if page_number > plan.total_pages:
            logger.info(
                "Fetched past the estimated count",
                extra={"estimated_pages": plan.total_pages, "fetched_pages": page_number},
            )

    @staticmethod
    def _page_is_full(batch: Optional[BatchResult], page_number: int, page_size: int) -> bool:
        if batch is None:
            return False
        for result in batch.results:
            if result.page_number == page_number:
                return len(result.records) >= page_size
        return False

    def _page_outcomes(
        self,
        batch: BatchResult,
        run_batch: Callable[[list[int]], Awaitable[BatchResult]],
    ) -> list[OperationOutcome]:
        outcomes = [OperationOutcome(success=True, data=r.page_number) for r in batch.results]

        for error in batch.errors:
            async def retry(page_number: int = error.page_number) -> int:
                recovered = await run_batch([page_number])
                if recovered.errors:
                    raise recovered.errors[0].error
                return page_number

            outcomes.append(OperationOutcome(
                success=False,
                error=error.error,
                retry=retry if error.page_number is not None else None,
            ))
        return outcomes

    def _batch_event(self, batch: BatchResult, aggregator: DataAggregator) -> StreamEvent:
        progress = aggregator.get_progress()
        attempted = progress.successful_pages + progress.failed_pages
        return StreamEvent(
            type=StreamEventType.DATA,
            data=[record for result in batch.results for record in result.records],
            progress=progress.to_snapshot(),
            performance=PerformanceMetrics(
                average_request_time=batch.average_response_time,
                error_rate=progress.failed_pages / attempted if attempted else 0.0,
            ),
            metadata={"pages": sorted(r.page_number for r in batch.results)},
        )

    # ========== Cache helpers ==========

    def _cached_response(self, key: str) -> Optional[DatasetResponse]:
        cached = self.cache.get(key)
        if cached is None:
            return None

        self._stats["cache_hits"] += 1
        response = DatasetResponse.model_validate(cached)
        response.source = ResultSource.CACHE
        response.performance.cache_hit_rate = 1.0
        logger.info(
            "Cache hit - returning cached result",
            extra={"cache_key": key, "total_releases": response.record_count},
        )
        return response

    def _store(self, key: str, response: DatasetResponse) -> None:
        # Partial responses are served once and refetched on the next call
        if response.status != "complete":
            return
        if self.cache.set(key, response.to_dict(), ttl=self.dataset_ttl):
            logger.debug("Result cached successfully", extra={"cache_key": key})
        else:
            logger.warning("Failed to cache result", extra={"cache_key": key})

    def _error_response(
        self,
        classified: ClassifiedError,
        retry_info: Optional[RetryInfo],
        warnings: list[str],
    ) -> DatasetResponse:
        info = classified.to_error_info()
        if retry_info is not None:
            info = info.model_copy(update={
                "next_retry_at": retry_info.next_retry_at,
                "attempt_number": retry_info.attempt,
                "max_attempts": retry_info.max_attempts,
            })

        logger.error(
            "Dataset fetch failed",
            extra={
                "kind": classified.kind.value,
                "retryable": classified.retryable,
                "error": classified.message,
            },
        )
        return DatasetResponse(
            success=False,
            status="error",
            source=ResultSource.LIVE,
            warnings=warnings,
            errors=[info],
            error=info,
            metadata={"error_id": classified.id},
            performance=PerformanceMetrics(error_rate=1.0),
        )

    # ========== Single release ==========

    async def fetch_release(self, ocid: str) -> dict[str, Any]:
        """
        Look up one release by ocid.

        Args:
            ocid: Release identifier

        Returns:
            Release dict

        Raises:
            NotFoundError: Release does not exist (not retried)
            Exception: Last error of the retried lookup, unchanged
        """
        self._ensure_sweeper()
        self._stats["release_lookups"] += 1
        key = f"release:{ocid}"
        cached = self.cache.get(key)
        if cached is not None:
            return copy.deepcopy(cached)

        payload = await self.classifier.execute_with_retry(
            lambda: self.client.fetch_release(ocid),
            ErrorContext(operation="release_lookup", metadata={"ocid": ocid}),
        )
        release = self.parser.parse_release(payload, ocid)
        if release is None:
            raise NotFoundError(f"Release not found: {ocid}", resource_id=ocid)

        self.cache.set(key, release, ttl=self.dataset_ttl)
        return copy.deepcopy(release)

    # ========== Statistics ==========

    def get_statistics(self) -> dict[str, Any]:
        """
        Statistics of the pipeline and its collaborators.

        Returns:
            Dictionary with pipeline, cache, scheduler, error and fallback figures
        """
        stats = {
            "pipeline": dict(self._stats),
            "cache": self.cache.get_stats(),
            "scheduler": self.scheduler.get_statistics(),
            "errors": self.classifier.get_statistics(),
            "fallback": self.fallback.get_statistics(),
        }
        if hasattr(self.client, "get_stats"):
            stats["client"] = self.client.get_stats()
        return stats

    def _ensure_sweeper(self) -> None:
        # Called from the async entry points, so a loop is running
        if not self.cache.sweeper_running:
            self.cache.start_sweeper()
            self._owns_sweeper = True

    async def close(self) -> None:
        """Stop background work owned by the collaborators."""
        await self.fallback.shutdown()
        if self._owns_sweeper:
            self.cache.stop_sweeper()
            self._owns_sweeper = False

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"TenderPipeline(requests={self._stats['requests']}, cache={self.cache!r})"

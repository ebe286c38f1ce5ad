"""
Pytest configuration and shared fixtures for Tender Harvester tests.

Provides:
    - Simulated clock with an awaitable sleep
    - Scripted fake upstream client
    - Cache, classifier and settings fixtures wired to the simulated clock
    - Temporary directories
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

from tender_harvester.orchestrator.cache_manager import CacheManager
from tender_harvester.orchestrator.discovery import DiscoverySettings
from tender_harvester.orchestrator.error_handler import ErrorClassifier, RetrySettings
from tender_harvester.orchestrator.fallback import FallbackSettings
from tender_harvester.orchestrator.fetch_scheduler import SchedulerSettings
from tender_harvester.utils.exceptions import NotFoundError
from tests.fixtures import make_dataset


# ========== Simulated Time ==========


class SimClock:
    """
    Simulated time source.

    Calling the instance returns the current simulated time. sleep() yields
    to the event loop once and then moves time forward to the sleeper's
    wake-up time, never backwards, so concurrent sleepers overlap instead of
    adding up.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        delay = max(delay, 0.0)
        self.sleeps.append(delay)
        target = self.now + delay
        await asyncio.sleep(0)
        self.now = max(self.now, target)

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ========== Fake Upstream ==========


Failure = Union[BaseException, List[BaseException]]


class FakeOCDSClient:
    """
    Scripted stand-in for OCDSClient.

    Attributes:
        pages: Releases per page number
        total_count: Advertised count (None to omit it from payloads)
        failures: Per page, either one exception raised on every call or a
            list of exceptions raised on successive calls before succeeding
        calls: (page_number, start time) of every fetch_page call
    """

    def __init__(
        self,
        pages: Optional[Dict[int, List[Dict[str, Any]]]] = None,
        total_count: Optional[int] = None,
        clock: Optional[SimClock] = None,
        latency: float = 0.0,
        failures: Optional[Dict[int, Failure]] = None,
        releases: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.pages = pages or {}
        self.total_count = total_count
        self.clock = clock
        self.latency = latency
        self.failures: Dict[int, Failure] = {
            page: failure if isinstance(failure, BaseException) else list(failure)
            for page, failure in (failures or {}).items()
        }
        self.releases = releases or {}
        self.release_failures: List[BaseException] = []

        self.calls: List[tuple] = []
        self.release_calls: List[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def fetch_page(
        self,
        page_number: int,
        date_from: str,
        date_to: str,
        page_size: int,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        self.calls.append((page_number, self.clock() if self.clock else 0.0))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.clock is not None and self.latency:
                await self.clock.sleep(self.latency)
            else:
                await asyncio.sleep(0)

            failure = self.failures.get(page_number)
            if isinstance(failure, BaseException):
                raise failure
            if failure:
                raise failure.pop(0)

            payload: Dict[str, Any] = {"releases": list(self.pages.get(page_number, []))}
            if self.total_count is not None:
                payload["totalCount"] = self.total_count
            return payload
        finally:
            self.in_flight -= 1

    async def fetch_release(self, ocid: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        self.release_calls.append(ocid)
        await asyncio.sleep(0)
        if self.release_failures:
            raise self.release_failures.pop(0)
        if ocid not in self.releases:
            raise NotFoundError(f"Resource not found: {ocid}", resource_id=ocid)
        return self.releases[ocid]

    @property
    def started_pages(self) -> List[int]:
        return [page for page, _ in self.calls]

    def get_stats(self) -> Dict[str, Any]:
        return {"requests_made": len(self.calls) + len(self.release_calls)}


# ========== Directory Fixtures ==========


@pytest.fixture
def temp_log_dir():
    """
    Create temporary directory for log files.

    Yields:
        Path to temporary directory
    """
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


# ========== Clock and Settings Fixtures ==========


@pytest.fixture
def sim_clock() -> SimClock:
    """Simulated clock starting at t=0."""
    return SimClock()


@pytest.fixture
def retry_settings() -> RetrySettings:
    """Retry settings without jitter for deterministic delays."""
    return RetrySettings(
        max_retries=3,
        base_delay=1.0,
        max_delay=30.0,
        backoff_multiplier=2.0,
        jitter_enabled=False,
    )


@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    """Scheduler settings with small delays."""
    return SchedulerSettings(
        max_concurrent_requests=8,
        request_timeout=20.0,
        max_retries=3,
        rate_limit_delay=1.0,
        backoff_multiplier=2.0,
        max_backoff_delay=10.0,
        max_rate_limit_delay=60.0,
    )


@pytest.fixture
def discovery_settings() -> DiscoverySettings:
    """Discovery probe settings."""
    return DiscoverySettings(max_attempts=3, base_delay=1.0, max_delay=5.0, timeout=15.0)


@pytest.fixture
def fallback_settings() -> FallbackSettings:
    """Fallback settings with a short retry schedule."""
    return FallbackSettings(
        enable_cached_fallback=True,
        max_cache_age=24 * 60 * 60,
        retry_schedule=[1.0, 2.0, 5.0],
        max_retry_attempts=3,
        background_refresh=True,
        offline_detection=True,
    )


# ========== Component Fixtures ==========


@pytest.fixture
def classifier(retry_settings: RetrySettings, sim_clock: SimClock) -> ErrorClassifier:
    """Error classifier sleeping on the simulated clock."""
    return ErrorClassifier(retry_settings=retry_settings, sleep=sim_clock.sleep)


@pytest.fixture
def cache(sim_clock: SimClock) -> CacheManager:
    """
    Cache on the simulated clock without default invalidation rules.

    Yields:
        CacheManager instance

    Cleanup:
        Stops the sweeper and drops entries
    """
    manager = CacheManager(
        ttl_seconds=300,
        max_size=100,
        compression_enabled=True,
        compression_threshold=10_000,
        max_memory_mb=100,
        clock=sim_clock,
        default_rules=False,
    )
    yield manager
    manager.close()


@pytest.fixture
def make_client(sim_clock: SimClock):
    """
    Factory for fake upstream clients bound to the simulated clock.

    Returns:
        Callable accepting FakeOCDSClient keyword arguments
    """
    def factory(**kwargs: Any) -> FakeOCDSClient:
        kwargs.setdefault("clock", sim_clock)
        return FakeOCDSClient(**kwargs)

    return factory


@pytest.fixture
def dataset_237():
    """237 releases in pages of 50 (five pages, the last holding 37)."""
    return make_dataset(237, 50)

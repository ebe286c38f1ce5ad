"""
Dataset size discovery for Tender Harvester.

Probes page 1 of the release listing once (with its own bounded retry),
reads the advertised total count and derives a fetch plan from fixed
dataset-size brackets.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tender_harvester.config import UpstreamConfig
from tender_harvester.models.schemas import FetchPlan, RiskLevel
from tender_harvester.parsers.ocds_parser import OCDSParser
from tender_harvester.utils.exceptions import (
    APIError,
    DiscoveryError,
    NetworkError,
    ParsingError,
    RateLimitError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyBracket:
    """Fetch strategy for datasets up to max_count records."""

    max_count: float
    concurrency: int
    batch_size: int
    risk_level: RiskLevel
    reasoning: str


STRATEGY_BRACKETS = (
    StrategyBracket(100, 2, 5, RiskLevel.LOW,
                    "Small dataset - using conservative concurrent requests"),
    StrategyBracket(500, 5, 10, RiskLevel.LOW,
                    "Medium dataset - using moderate concurrent requests"),
    StrategyBracket(1000, 8, 15, RiskLevel.MEDIUM,
                    "Large dataset - using higher concurrent requests with monitoring"),
    StrategyBracket(math.inf, 10, 20, RiskLevel.HIGH,
                    "Very large dataset - using maximum safe concurrent requests"),
)

# Suggested wait before calling discovery again, per failure kind
RETRY_AFTER_HINTS = {
    "timeout": 5.0,
    "network": 3.0,
    "api": 2.0,
}


def select_bracket(total_count: int) -> StrategyBracket:
    """Pick the first bracket whose max_count covers total_count."""
    for bracket in STRATEGY_BRACKETS:
        if total_count <= bracket.max_count:
            return bracket
    return STRATEGY_BRACKETS[-1]


def build_plan(
    total_count: int,
    page_size: int,
    date_from: str,
    date_to: str,
    seconds_per_batch: float = 1.0,
    **extra: Any,
) -> FetchPlan:
    """
    Derive a fetch plan from a record count.

    Args:
        total_count: Records in the dataset
        page_size: Records per page
        date_from: Window start
        date_to: Window end
        seconds_per_batch: Time constant used for the estimate
        **extra: Additional FetchPlan fields (timings, estimate flag)

    Returns:
        FetchPlan with total_pages = ceil(total_count / page_size)

    Example:
        >>> plan = build_plan(237, 50, "2025-01-01", "2025-03-31")
        >>> plan.total_pages, plan.recommended_concurrency, plan.batch_size
        (5, 5, 10)
    """
    total_pages = math.ceil(total_count / page_size)
    bracket = select_bracket(total_count)
    total_batches = math.ceil(total_pages / bracket.batch_size)

    return FetchPlan(
        total_count=total_count,
        total_pages=total_pages,
        page_size=page_size,
        recommended_concurrency=bracket.concurrency,
        batch_size=bracket.batch_size,
        estimated_total_time=total_batches * seconds_per_batch,
        risk_level=bracket.risk_level,
        reasoning=bracket.reasoning,
        date_from=date_from,
        date_to=date_to,
        **extra,
    )


@dataclass
class DiscoverySettings:
    """Configuration for the discovery probe.

    Attributes:
        max_attempts: Probe attempts before giving up
        base_delay: Delay after the first failed attempt (seconds)
        max_delay: Cap on the backoff delay (seconds)
        timeout: Timeout of one probe request (seconds)
        seconds_per_batch: Per-batch time constant for plan estimates
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    timeout: float = 15.0
    seconds_per_batch: float = 1.0

    @classmethod
    def from_env(cls) -> "DiscoverySettings":
        """Create settings from environment variables."""
        return cls(timeout=UpstreamConfig.DISCOVERY_TIMEOUT)

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


class DiscoveryProber:
    """
    Discovers dataset size and computes a fetch plan.

    Example:
        >>> async with OCDSClient(OCDSClientConfig.from_env()) as client:
        ...     plan = await DiscoveryProber(client).discover("2025-01-01", "2025-03-31", 50)
    """

    def __init__(
        self,
        client: Any,
        settings: Optional[DiscoverySettings] = None,
        parser: Optional[OCDSParser] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the prober.

        Args:
            client: Object exposing async fetch_page(page_number, date_from,
                date_to, page_size, timeout=None) returning the decoded payload
            settings: Probe settings
            parser: Payload parser
            sleep: Awaitable sleep used between attempts
            clock: Monotonic time source in seconds
        """
        self.client = client
        self.settings = settings or DiscoverySettings.from_env()
        self.parser = parser or OCDSParser()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    async def discover(self, date_from: str, date_to: str, page_size: int) -> FetchPlan:
        """
        Probe page 1 and build a fetch plan.

        Args:
            date_from: Window start (YYYY-MM-DD)
            date_to: Window end (YYYY-MM-DD)
            page_size: Records per page

        Returns:
            FetchPlan for the window

        Raises:
            DiscoveryError: Classified failure; kind "parsing" is not retryable
        """
        started = self._clock()
        logger.info(
            "Starting discovery",
            extra={"date_from": date_from, "date_to": date_to, "page_size": page_size},
        )

        try:
            payload, response_time = await self._probe_with_retry(date_from, date_to, page_size)
            page = self.parser.parse_page(payload)
        except DiscoveryError:
            raise
        except Exception as e:
            raise self._to_discovery_error(e) from e

        count_is_estimate = False
        if page.has_explicit_count:
            total_count = page.total_count
        elif "releases" in payload:
            total_count = len(page.releases)
            count_is_estimate = True
            logger.warning(
                "No explicit total count found, using first page length as estimate",
                extra={"estimate": total_count, "page_size": page_size},
            )
        else:
            raise DiscoveryError(
                "Unable to determine total count from API response",
                kind="parsing",
                retryable=False,
            )

        plan = build_plan(
            total_count,
            page_size,
            date_from,
            date_to,
            seconds_per_batch=self.settings.seconds_per_batch,
            count_is_estimate=count_is_estimate,
            discovery_time=self._clock() - started,
            api_response_time=response_time,
        )

        logger.info(
            "Discovery completed",
            extra={
                "total_count": plan.total_count,
                "total_pages": plan.total_pages,
                "concurrency": plan.recommended_concurrency,
                "risk_level": plan.risk_level.value,
                "count_is_estimate": count_is_estimate,
            },
        )
        return plan

    async def _probe_with_retry(
        self, date_from: str, date_to: str, page_size: int
    ) -> tuple[dict[str, Any], float]:
        attempt = 1
        while True:
            started = self._clock()
            try:
                payload = await self.client.fetch_page(
                    1, date_from, date_to, page_size, timeout=self.settings.timeout
                )
                return payload, self._clock() - started

            except ParsingError:
                # Malformed payloads do not improve on retry
                raise

            except Exception as e:
                logger.warning(
                    f"Discovery attempt {attempt}/{self.settings.max_attempts} failed",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                if attempt >= self.settings.max_attempts:
                    raise
                await self._sleep(self.settings.backoff(attempt))
                attempt += 1

    def _to_discovery_error(self, error: Exception) -> DiscoveryError:
        if isinstance(error, ParsingError):
            return DiscoveryError(
                error.message, kind="parsing", retryable=False, cause=error
            )

        if isinstance(error, (RequestTimeoutError, asyncio.TimeoutError)):
            kind, message = "timeout", "Discovery request timed out"
        elif isinstance(error, NetworkError):
            kind, message = "network", "Network error during discovery"
        elif isinstance(error, APIError):
            kind, message = "api", error.message
        else:
            kind, message = "network", str(error) or "Unknown discovery error"

        retry_after = RETRY_AFTER_HINTS.get(kind, 5.0)
        if isinstance(error, RateLimitError) and error.retry_after:
            retry_after = max(retry_after, float(error.retry_after))
        if kind == "network" and not isinstance(error, NetworkError):
            retry_after = 5.0

        logger.error(
            "Discovery failed",
            extra={"kind": kind, "error": str(error), "retry_after": retry_after},
        )
        return DiscoveryError(
            message, kind=kind, retryable=True, retry_after=retry_after, cause=error
        )

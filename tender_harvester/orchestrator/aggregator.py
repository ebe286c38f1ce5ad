"""
Data aggregation for Tender Harvester.

Folds batch results into one deduplicated, validated release set keyed by
ocid, tracking progress, an ETA and a data-quality score.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from tender_harvester.models.schemas import ProgressPhase, ProgressSnapshot
from tender_harvester.orchestrator.fetch_scheduler import BatchResult, PageResult
from tender_harvester.parsers.ocds_parser import get_path

logger = logging.getLogger(__name__)

# (dotted path, weight) pairs summed by completeness_score
COMPLETENESS_WEIGHTS = (
    ("ocid", 10),
    ("date", 5),
    ("tender.title", 10),
    ("tender.description", 5),
    ("tender.tenderPeriod.endDate", 10),
    ("tender.value.amount", 5),
    ("parties", 10),
    ("tender.procurementMethod", 3),
    ("tender.mainProcurementCategory", 3),
    ("tender.eligibilityCriteria", 2),
    ("tender.submissionMethod", 2),
)

# Smoothing factor of the per-page time average
ETA_ALPHA = 0.3


def completeness_score(record: dict[str, Any]) -> int:
    """
    Weighted count of populated fields.

    Args:
        record: OCDS release

    Returns:
        Sum of the weights of every non-empty field

    Example:
        >>> completeness_score({"ocid": "ocds-1", "tender": {"title": "Roads"}})
        20
    """
    return sum(weight for path, weight in COMPLETENESS_WEIGHTS if get_path(record, path))


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 date or timestamp, None if malformed."""
    if not isinstance(value, str) or "-" not in value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class ValidationIssue:
    """A validation finding; severity "error" means the record was dropped."""

    record_id: str
    page_number: int
    field: str
    message: str
    severity: str = "warning"

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "page_number": self.page_number,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass
class ProgressInfo:
    """Progress of the current aggregation run."""

    total_pages: int = 0
    processed_pages: int = 0
    successful_pages: int = 0
    failed_pages: int = 0
    percentage: float = 0.0
    estimated_time_remaining: float = 0.0
    phase: ProgressPhase = ProgressPhase.FETCHING

    def to_snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            completed=self.processed_pages,
            total=self.total_pages,
            percentage=self.percentage,
            phase=self.phase,
            estimated_time_remaining=self.estimated_time_remaining,
        )


@dataclass
class AggregationMetadata:
    """Run metadata reported by finalize."""

    start_time: float = 0.0
    end_time: Optional[float] = None
    total_processing_time: Optional[float] = None
    average_page_processing_time: float = 0.0
    data_quality_score: int = 100
    unique_ids: int = 0
    earliest_date: Optional[str] = None
    latest_date: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processing_time": self.total_processing_time,
            "average_page_processing_time": self.average_page_processing_time,
            "data_quality_score": self.data_quality_score,
            "unique_ids": self.unique_ids,
            "date_range": {"earliest": self.earliest_date, "latest": self.latest_date},
        }


@dataclass
class AggregationResult:
    """Final output of one aggregation run."""

    records: list[dict[str, Any]]
    total_processed: int
    duplicates_removed: int
    validation_errors: list[ValidationIssue]
    progress: ProgressInfo
    metadata: AggregationMetadata


@dataclass
class _Candidate:
    record: dict[str, Any]
    score: int
    page_number: int


class DataAggregator:
    """
    Deduplicating aggregator for page results.

    Features:
    - O(1) deduplication keyed by ocid
    - Duplicate resolution by completeness score, ties keep the first seen
    - Hard validation (ocid and tender object) and soft warnings
    - Monotonic progress percentage with an EMA-based ETA
    - Data-quality score and a final consistency pass

    Pages inside a batch are folded in page order, so the result does not
    depend on completion order.

    Example:
        >>> aggregator = DataAggregator()
        >>> aggregator.initialize(total_pages=5)
        >>> aggregator.process_batch_result(batch)
        >>> result = aggregator.finalize()
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self.reset()

    def reset(self) -> None:
        """Reset all state for reuse."""
        self._records: dict[str, _Candidate] = {}
        self._issues: list[ValidationIssue] = []
        self._duplicates: Counter = Counter()
        self._flagged_windows: set[str] = set()
        self._records_seen = 0
        self._succeeded_pages: set[int] = set()
        self._failed_pages: set[int] = set()
        self._ema_page_time: Optional[float] = None
        self._batch_times: list[float] = []
        self.progress = ProgressInfo()
        self.metadata = AggregationMetadata(start_time=self._clock())

    def initialize(self, total_pages: int) -> None:
        """
        Start a run expecting total_pages pages.

        Args:
            total_pages: Pages in the fetch plan
        """
        self.progress.total_pages = total_pages
        self.progress.phase = ProgressPhase.FETCHING
        self.metadata.start_time = self._clock()
        logger.info(f"Initializing data aggregation for {total_pages} pages")

    def extend(self, total_pages: int) -> None:
        """Raise the expected page count; the percentage never decreases."""
        if total_pages > self.progress.total_pages:
            self.progress.total_pages = total_pages
            self._update_progress()

    def process_batch_result(self, batch: BatchResult) -> None:
        """
        Fold one batch into the aggregate.

        Args:
            batch: Scheduler output; successful pages are merged, permanent
                failures count as processed but failed pages
        """
        started = self._clock()
        self.progress.phase = ProgressPhase.AGGREGATING

        for page in sorted(batch.results, key=lambda r: r.page_number):
            self._process_page(page)

        self._failed_pages.update(batch.failed_pages)
        self._refresh_page_counts()

        pages = batch.page_count
        if pages:
            sample = (batch.total_response_time + self._clock() - started) / pages
            if self._ema_page_time is None:
                self._ema_page_time = sample
            else:
                self._ema_page_time = ETA_ALPHA * sample + (1 - ETA_ALPHA) * self._ema_page_time
            self._batch_times.append(sample)

        self._update_progress()
        self._update_metadata()

        logger.info(
            f"Batch processed. Total unique releases: {len(self._records)}",
            extra={
                "percentage": self.progress.percentage,
                "eta_seconds": round(self.progress.estimated_time_remaining, 2),
            },
        )

    def add_records(self, records: list[dict[str, Any]], page_number: int = 0) -> None:
        """Merge records that did not come from a batch (e.g. a single lookup)."""
        for record in records:
            self._process_record(record, page_number)
        self._update_metadata()

    def _process_page(self, page: PageResult) -> None:
        if not page.success:
            return
        self._succeeded_pages.add(page.page_number)
        for record in page.records:
            self._process_record(record, page.page_number)

    def _process_record(self, record: Any, page_number: int) -> None:
        self._records_seen += 1
        issues = self.validate_record(record, page_number)
        self._issues.extend(issues)

        if any(issue.severity == "error" for issue in issues):
            logger.error(
                "Dropping invalid release",
                extra={
                    "page_number": page_number,
                    "fields": [i.field for i in issues if i.severity == "error"],
                },
            )
            return

        ocid = record["ocid"]
        score = completeness_score(record)
        existing = self._records.get(ocid)

        if existing is None:
            self._records[ocid] = _Candidate(record, score, page_number)
        else:
            self._duplicates[ocid] += 1
            if score > existing.score:
                self._records[ocid] = _Candidate(record, score, page_number)

        self._update_date_range(record.get("date"))

    def validate_record(self, record: Any, page_number: int) -> list[ValidationIssue]:
        """
        Structural validation of one release.

        Args:
            record: Candidate release
            page_number: Page it came from

        Returns:
            Issues found; any "error" means the record must be dropped
        """
        if not isinstance(record, dict):
            return [ValidationIssue("unknown", page_number, "record", "Release is not an object", "error")]

        issues = []
        ocid = record.get("ocid")
        record_id = ocid if isinstance(ocid, str) and ocid else "unknown"

        if not isinstance(ocid, str) or not ocid:
            issues.append(ValidationIssue(
                record_id, page_number, "ocid", "Missing required field: ocid", "error"
            ))

        tender = record.get("tender")
        if not isinstance(tender, dict):
            issues.append(ValidationIssue(
                record_id, page_number, "tender", "Missing required field: tender", "error"
            ))
        else:
            if not tender.get("title"):
                issues.append(ValidationIssue(
                    record_id, page_number, "tender.title", "Missing tender title"
                ))
            if not get_path(tender, "tenderPeriod.endDate"):
                issues.append(ValidationIssue(
                    record_id, page_number, "tender.tenderPeriod.endDate", "Missing tender end date"
                ))

        if record.get("date") and parse_date(record["date"]) is None:
            issues.append(ValidationIssue(record_id, page_number, "date", "Invalid date format"))

        return issues

    def get_progress(self) -> ProgressInfo:
        """Copy of the current progress."""
        return ProgressInfo(**vars(self.progress))

    def finalize(self) -> AggregationResult:
        """
        Run the consistency pass and return the aggregate.

        Returns:
            AggregationResult with records in first-seen order
        """
        self.progress.phase = ProgressPhase.VALIDATING
        self._final_validation()

        self.progress.phase = ProgressPhase.COMPLETE
        self.progress.percentage = 100.0
        self.progress.estimated_time_remaining = 0.0
        self.metadata.end_time = self._clock()
        self.metadata.total_processing_time = self.metadata.end_time - self.metadata.start_time
        self._update_metadata()

        result = AggregationResult(
            records=[c.record for c in self._records.values()],
            total_processed=self.progress.processed_pages,
            duplicates_removed=sum(self._duplicates.values()),
            validation_errors=list(self._issues),
            progress=self.get_progress(),
            metadata=AggregationMetadata(**vars(self.metadata)),
        )

        logger.info(
            "Data aggregation completed",
            extra={
                "total_releases": len(result.records),
                "duplicates_removed": result.duplicates_removed,
                "validation_issues": len(result.validation_errors),
                "data_quality_score": self.metadata.data_quality_score,
            },
        )
        return result

    def _final_validation(self) -> None:
        for ocid, candidate in self._records.items():
            period = get_path(candidate.record, "tender.tenderPeriod")
            if not isinstance(period, dict) or ocid in self._flagged_windows:
                continue
            start, end = period.get("startDate"), period.get("endDate")
            if not start or not end:
                continue
            start_dt, end_dt = parse_date(start), parse_date(end)
            if start_dt is not None and end_dt is not None:
                try:
                    inverted = start_dt > end_dt
                except TypeError:
                    # Mixed naive/aware timestamps
                    inverted = str(start) > str(end)
            else:
                inverted = str(start) > str(end)
            if inverted:
                self._flagged_windows.add(ocid)
                self._issues.append(ValidationIssue(
                    ocid, -1, "tender.tenderPeriod", "Tender start date is after end date"
                ))

    def get_deduplication_stats(self) -> dict[str, Any]:
        """
        Duplicate counts observed so far.

        Returns:
            Dictionary with total valid records, unique records, duplicates
            found and duplicates per ocid
        """
        duplicates = sum(self._duplicates.values())
        return {
            "total_records": len(self._records) + duplicates,
            "unique_records": len(self._records),
            "duplicates_found": duplicates,
            "duplicates_by_id": dict(self._duplicates),
        }

    def score_of(self, ocid: str) -> Optional[int]:
        candidate = self._records.get(ocid)
        return candidate.score if candidate else None

    @property
    def record_count(self) -> int:
        return len(self._records)

    @property
    def validation_issues(self) -> list[ValidationIssue]:
        return list(self._issues)

    @property
    def failed_page_numbers(self) -> list[int]:
        """Pages that failed and were not later recovered."""
        return sorted(self._failed_pages - self._succeeded_pages)

    def _refresh_page_counts(self) -> None:
        # A page recovered after failing counts once, as successful
        self.progress.successful_pages = len(self._succeeded_pages)
        self.progress.failed_pages = len(self._failed_pages - self._succeeded_pages)
        self.progress.processed_pages = self.progress.successful_pages + self.progress.failed_pages

    def _update_progress(self) -> None:
        total = self.progress.total_pages
        if total:
            percentage = min(100.0, round(self.progress.processed_pages / total * 100, 1))
            self.progress.percentage = max(self.progress.percentage, percentage)
        remaining = max(total - self.progress.processed_pages, 0)
        if self._ema_page_time is not None:
            self.progress.estimated_time_remaining = self._ema_page_time * remaining

    def _update_metadata(self) -> None:
        self.metadata.unique_ids = len(self._records)
        if self._batch_times:
            self.metadata.average_page_processing_time = (
                sum(self._batch_times) / len(self._batch_times)
            )
        if self._records_seen:
            error_rate = len(self._issues) / self._records_seen
            self.metadata.data_quality_score = max(0, round(100 - error_rate * 100))
        else:
            self.metadata.data_quality_score = 100

    def _update_date_range(self, value: Any) -> None:
        if parse_date(value) is None:
            return
        if self.metadata.earliest_date is None or value < self.metadata.earliest_date:
            self.metadata.earliest_date = value
        if self.metadata.latest_date is None or value > self.metadata.latest_date:
            self.metadata.latest_date = value

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"DataAggregator(records={len(self._records)}, "
            f"progress={self.progress.percentage}%)"
        )

"""
Unit tests for DataAggregator.

Tests cover:
    - Completeness scoring and duplicate resolution
    - Idempotent deduplication across repeated batches
    - Hard validation failures and soft warnings
    - Monotonic progress and ETA smoothing
    - Final consistency pass and quality score
    - Order independence within a batch
"""

import pytest

from tender_harvester.models.schemas import ProgressPhase
from tender_harvester.orchestrator.aggregator import (
    DataAggregator,
    completeness_score,
    parse_date,
)
from tender_harvester.orchestrator.error_handler import ErrorClassifier
from tender_harvester.orchestrator.fetch_scheduler import BatchResult, PageResult
from tender_harvester.utils.exceptions import ServerError
from tests.fixtures import make_release, make_sparse_release


def page(page_number, records, elapsed=1.0):
    return PageResult(page_number=page_number, records=records, success=True, elapsed=elapsed)


def batch_of(*pages, failed=(), total_response_time=None):
    """Build a BatchResult from successful pages and failed page numbers."""
    batch = BatchResult(results=list(pages))
    classifier = ErrorClassifier()
    for page_number in failed:
        error = classifier.classify(ServerError("API responded with status: 500", status_code=500))
        error.page_number = page_number
        batch.errors.append(error)
    batch.successful_requests = len(pages)
    batch.failed_requests = len(failed)
    batch.total_requests = batch.successful_requests + batch.failed_requests
    batch.total_response_time = (
        total_response_time if total_response_time is not None
        else sum(p.elapsed for p in pages)
    )
    return batch


@pytest.fixture
def aggregator(sim_clock):
    """Aggregator on the simulated clock."""
    return DataAggregator(clock=sim_clock)


class TestCompletenessScore:
    """Test the weighted completeness score."""

    def test_sparse_release(self):
        """Test ocid and title only."""
        assert completeness_score(make_sparse_release("ocds-1")) == 20

    def test_default_release(self):
        """Test the default factory release."""
        assert completeness_score(make_release("ocds-1")) == 45

    def test_full_release(self):
        """Test every weighted field populated."""
        release = make_release(
            "ocds-1",
            parties=[{"name": "Department of Roads"}],
        )
        release["tender"].update({
            "procurementMethod": "open",
            "mainProcurementCategory": "works",
            "eligibilityCriteria": "CIDB grade 5",
            "submissionMethod": ["electronicSubmission"],
        })
        assert completeness_score(release) == 65

    def test_empty_values_do_not_count(self):
        """Test empty strings and lists score nothing."""
        release = {"ocid": "ocds-1", "tender": {"title": "", "description": ""}, "parties": []}
        assert completeness_score(release) == 10


class TestParseDate:
    """Test ISO-8601 date parsing."""

    @pytest.mark.parametrize(
        "value",
        ["2025-01-15", "2025-01-15T09:00:00Z", "2025-01-15T09:00:00+02:00"],
    )
    def test_valid(self, value):
        """Test accepted formats."""
        assert parse_date(value) is not None

    @pytest.mark.parametrize("value", ["yesterday", "2025-13-40", "", None, 20250115])
    def test_invalid(self, value):
        """Test rejected values."""
        assert parse_date(value) is None


class TestDeduplication:
    """Test duplicate resolution by completeness."""

    def test_more_complete_duplicate_wins(self, aggregator):
        """Test a later, more complete duplicate replaces the stored record."""
        sparse = make_sparse_release("ocds-1")
        full = make_release("ocds-1")
        aggregator.initialize(total_pages=2)

        aggregator.process_batch_result(batch_of(page(1, [sparse]), page(2, [full])))

        result = aggregator.finalize()
        assert result.records == [full]
        assert result.duplicates_removed == 1
        assert aggregator.score_of("ocds-1") == 45

    def test_less_complete_duplicate_is_dropped(self, aggregator):
        """Test a later, sparser duplicate does not replace the stored record."""
        full = make_release("ocds-1")
        aggregator.initialize(total_pages=2)

        aggregator.process_batch_result(batch_of(page(1, [full]), page(2, [make_sparse_release("ocds-1")])))

        assert aggregator.finalize().records == [full]

    def test_tie_keeps_first_seen(self, aggregator):
        """Test equal scores keep the first record."""
        first = make_release("ocds-1", title="First")
        second = make_release("ocds-1", title="Second")
        aggregator.initialize(total_pages=1)

        aggregator.process_batch_result(batch_of(page(1, [first, second])))

        assert aggregator.finalize().records[0]["tender"]["title"] == "First"

    def test_idempotent_across_batches(self, aggregator):
        """Test folding the same batch twice leaves the record set unchanged."""
        records = [make_release(f"ocds-{i}") for i in range(10)]
        aggregator.initialize(total_pages=1)

        aggregator.process_batch_result(batch_of(page(1, records)))
        once = [dict(r) for r in aggregator.finalize().records]

        aggregator.process_batch_result(batch_of(page(1, records)))
        twice = aggregator.finalize().records

        assert twice == once
        assert aggregator.record_count == 10

    def test_order_independence(self, sim_clock):
        """Test completion order within a batch does not change the result."""
        sparse = make_sparse_release("ocds-1", title="Sparse")
        other = make_sparse_release("ocds-1", title="Other")

        forward = DataAggregator(clock=sim_clock)
        forward.process_batch_result(batch_of(page(1, [sparse]), page(2, [other])))
        backward = DataAggregator(clock=sim_clock)
        backward.process_batch_result(batch_of(page(2, [other]), page(1, [sparse])))

        assert forward.finalize().records == backward.finalize().records == [sparse]

    def test_deduplication_stats(self, aggregator):
        """Test duplicate counts per ocid."""
        aggregator.process_batch_result(batch_of(
            page(1, [make_release("ocds-1"), make_release("ocds-2")]),
            page(2, [make_release("ocds-1"), make_release("ocds-1")]),
        ))

        stats = aggregator.get_deduplication_stats()
        assert stats == {
            "total_records": 4,
            "unique_records": 2,
            "duplicates_found": 2,
            "duplicates_by_id": {"ocds-1": 2},
        }


class TestValidation:
    """Test hard validation and warnings."""

    def test_missing_ocid_is_dropped(self, aggregator):
        """Test records without ocid are excluded and reported."""
        record = {"tender": {"title": "No id"}}

        aggregator.process_batch_result(batch_of(page(3, [record, make_release("ocds-1")])))

        result = aggregator.finalize()
        assert [r["ocid"] for r in result.records] == ["ocds-1"]
        errors = [i for i in result.validation_errors if i.severity == "error"]
        assert errors[0].field == "ocid"
        assert errors[0].page_number == 3
        assert errors[0].record_id == "unknown"

    def test_missing_tender_is_dropped(self, aggregator):
        """Test records without a tender object are excluded."""
        aggregator.process_batch_result(batch_of(page(1, [{"ocid": "ocds-9", "tender": "n/a"}])))

        result = aggregator.finalize()
        assert result.records == []
        assert result.validation_errors[0].field == "tender"
        assert result.validation_errors[0].record_id == "ocds-9"

    def test_non_object_record_is_dropped(self, aggregator):
        """Test a scalar record is reported and skipped."""
        issues = aggregator.validate_record("junk", 1)
        assert issues[0].severity == "error"

    def test_warnings_keep_the_record(self, aggregator):
        """Test soft issues do not exclude the record."""
        record = make_release("ocds-1", title="", end_date=None, date="not-a-date")

        aggregator.process_batch_result(batch_of(page(1, [record])))

        result = aggregator.finalize()
        assert len(result.records) == 1
        fields = sorted(i.field for i in result.validation_errors)
        assert fields == ["date", "tender.tenderPeriod.endDate", "tender.title"]
        assert all(i.severity == "warning" for i in result.validation_errors)

    def test_start_after_end_is_flagged_once(self, aggregator):
        """Test the final pass flags inverted tender periods once per record."""
        record = make_release(
            "ocds-1", start_date="2025-03-01T00:00:00Z", end_date="2025-02-01T00:00:00Z"
        )
        aggregator.process_batch_result(batch_of(page(1, [record])))

        aggregator.finalize()
        result = aggregator.finalize()

        flagged = [i for i in result.validation_errors if i.field == "tender.tenderPeriod"]
        assert len(flagged) == 1
        assert flagged[0].message == "Tender start date is after end date"
        assert flagged[0].page_number == -1

    def test_quality_score(self, aggregator):
        """Test the quality score drops with the issue rate."""
        records = [make_release(f"ocds-{i}") for i in range(3)] + [
            {"tender": {"title": "No id", "tenderPeriod": {"endDate": "2025-02-01"}}}
        ]

        aggregator.process_batch_result(batch_of(page(1, records)))

        assert aggregator.finalize().metadata.data_quality_score == 75

    def test_clean_data_scores_100(self, aggregator):
        """Test a run without issues scores 100."""
        aggregator.process_batch_result(batch_of(page(1, [make_release("ocds-1")])))
        assert aggregator.finalize().metadata.data_quality_score == 100


class TestProgress:
    """Test progress tracking."""

    def test_percentage_and_counts(self, aggregator):
        """Test progress after each batch."""
        aggregator.initialize(total_pages=4)

        aggregator.process_batch_result(batch_of(page(1, []), page(2, [])))
        progress = aggregator.get_progress()
        assert progress.percentage == 50.0
        assert progress.successful_pages == 2
        assert progress.phase == ProgressPhase.AGGREGATING

        aggregator.process_batch_result(batch_of(page(3, []), failed=[4]))
        progress = aggregator.get_progress()
        assert progress.percentage == 100.0
        assert progress.failed_pages == 1
        assert progress.processed_pages == 4

    def test_percentage_never_decreases(self, aggregator):
        """Test extending the plan does not lower the percentage."""
        aggregator.initialize(total_pages=2)
        aggregator.process_batch_result(batch_of(page(1, []), page(2, [])))

        aggregator.extend(3)

        assert aggregator.get_progress().percentage == 100.0
        assert aggregator.get_progress().total_pages == 3

    def test_recovered_page_counts_once(self, aggregator):
        """Test a failed page fetched later counts as successful only."""
        aggregator.initialize(total_pages=2)
        aggregator.process_batch_result(batch_of(page(1, []), failed=[2]))
        assert aggregator.failed_page_numbers == [2]

        aggregator.process_batch_result(batch_of(page(2, [make_release("ocds-1")])))

        progress = aggregator.get_progress()
        assert progress.successful_pages == 2
        assert progress.failed_pages == 0
        assert progress.processed_pages == 2
        assert aggregator.failed_page_numbers == []

    def test_eta_uses_smoothed_page_time(self, aggregator):
        """Test the ETA is the EMA of per-page time times remaining pages."""
        aggregator.initialize(total_pages=10)

        aggregator.process_batch_result(batch_of(page(1, []), page(2, []), total_response_time=4.0))
        assert aggregator.get_progress().estimated_time_remaining == pytest.approx(2.0 * 8)

        aggregator.process_batch_result(batch_of(page(3, []), page(4, []), total_response_time=8.0))
        # 0.3 * 4.0 + 0.7 * 2.0
        assert aggregator.get_progress().estimated_time_remaining == pytest.approx(2.6 * 6)

    def test_get_progress_returns_copy(self, aggregator):
        """Test callers cannot mutate internal progress."""
        aggregator.get_progress().percentage = 99.0
        assert aggregator.get_progress().percentage == 0.0

    def test_finalize_completes(self, aggregator, sim_clock):
        """Test finalize sets the complete phase and timings."""
        aggregator.initialize(total_pages=3)
        aggregator.process_batch_result(batch_of(page(1, [make_release("ocds-1", date="2025-01-20")])))
        sim_clock.advance(5)

        result = aggregator.finalize()

        assert result.progress.phase == ProgressPhase.COMPLETE
        assert result.progress.percentage == 100.0
        assert result.progress.estimated_time_remaining == 0.0
        assert result.metadata.total_processing_time == 5
        assert result.metadata.to_dict()["date_range"] == {
            "earliest": "2025-01-20",
            "latest": "2025-01-20",
        }

    def test_reset(self, aggregator):
        """Test reset clears records and progress."""
        aggregator.initialize(total_pages=1)
        aggregator.process_batch_result(batch_of(page(1, [make_release("ocds-1")])))

        aggregator.reset()

        assert aggregator.record_count == 0
        assert aggregator.get_progress().total_pages == 0
        assert aggregator.validation_issues == []


class TestAddRecords:
    """Test merging records outside a batch."""

    def test_add_records(self, aggregator):
        """Test records from a single lookup are deduplicated too."""
        aggregator.add_records([make_sparse_release("ocds-1"), make_release("ocds-1")], page_number=0)

        assert aggregator.record_count == 1
        assert aggregator.score_of("ocds-1") == 45

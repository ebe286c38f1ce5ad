"""
Tender Harvester usage examples.

Demonstrates aggregated fetches, the event stream, partial failures
and cache administration against an in-memory release source, so the
examples run without network access.
"""

import asyncio

from tender_harvester.models.schemas import StreamEventType
from tender_harvester.orchestrator.cache_admin import CacheAdministration
from tender_harvester.orchestrator.pipeline import TenderPipeline
from tender_harvester.utils.exceptions import NotFoundError, ServerError


class InMemoryReleaseSource:
    """Serves pages of generated releases, optionally failing some pages."""

    def __init__(self, total: int, failing_pages: tuple = ()):
        self.total = total
        self.failing_pages = set(failing_pages)

    async def fetch_page(self, page_number, date_from, date_to, page_size, timeout=None):
        await asyncio.sleep(0.01)
        if page_number in self.failing_pages:
            raise ServerError("Service unavailable", status_code=503)

        start = (page_number - 1) * page_size
        stop = min(start + page_size, self.total)
        releases = [
            {
                "ocid": f"ocds-demo-{i:05d}",
                "date": date_from,
                "tender": {"title": f"Tender {i}", "value": {"amount": 1000 + i}},
            }
            for i in range(start, stop)
        ]
        return {"releases": releases, "totalCount": self.total}

    async def fetch_release(self, ocid, timeout=None):
        raise NotFoundError(f"Resource not found: {ocid}", resource_id=ocid)


async def example_aggregated_fetch():
    """Fetch a window twice; the second call is a cache hit."""
    print("=== Aggregated Fetch ===\n")

    pipeline = TenderPipeline(InMemoryReleaseSource(total=237))

    response = await pipeline.fetch_dataset("2025-01-01", "2025-03-31", page_size=50)
    print(f"1. Live fetch: status={response.status}, records={response.record_count}")
    print(f"   Pages: {response.pagination.fetched_pages}/{response.pagination.total_pages}")

    response = await pipeline.fetch_dataset("2025-01-01", "2025-03-31", page_size=50)
    print(f"2. Repeat fetch: source={response.source.value}, records={response.record_count}\n")

    await pipeline.close()


async def example_stream():
    """Print each event of a streaming fetch."""
    print("=== Event Stream ===\n")

    pipeline = TenderPipeline(InMemoryReleaseSource(total=120))

    async for event in pipeline.stream_dataset("2025-04-01", "2025-04-30", page_size=25):
        if event.type == StreamEventType.PROGRESS and event.progress:
            print(f"  progress {event.progress.percentage:5.1f}%  {event.metadata.get('stage', '')}")
        elif event.type == StreamEventType.DATA:
            print(f"  data     {len(event.data or [])} records")
        elif event.type == StreamEventType.COMPLETE:
            print(f"  complete {len(event.data or [])} records")
        else:
            print(f"  error    {event.error.message if event.error else ''}")
    print()

    await pipeline.close()


async def example_partial_failure():
    """A failing page leaves a partial result with warnings."""
    print("=== Partial Failure ===\n")

    pipeline = TenderPipeline(
        InMemoryReleaseSource(total=237, failing_pages=(2, 3)),
        min_success_threshold=0.5,
    )

    response = await pipeline.fetch_dataset("2025-05-01", "2025-05-31", page_size=50)
    print(f"Status: {response.status}, records: {response.record_count}")
    for warning in response.warnings:
        print(f"  ! {warning}")
    for error in response.errors:
        print(f"  x page {error.page_number}: {error.message}")
    print()

    await pipeline.close()


async def example_cache_administration():
    """Inspect and invalidate the shared cache."""
    print("=== Cache Administration ===\n")

    pipeline = TenderPipeline(InMemoryReleaseSource(total=80))
    await pipeline.fetch_dataset("2025-06-01", "2025-06-30")
    await pipeline.fetch_dataset("2025-06-01", "2025-06-30")

    admin = CacheAdministration(pipeline.cache, pipeline.classifier)
    stats = admin.stats()["data"]
    print(f"Entries: {stats['total_entries']}, hit rate: {stats['hit_rate_percentage']}%")
    print(f"Health: {admin.health()['data']['status']}")

    result = admin.invalidate_date_range("2025-06-01", "2025-06-30")
    print(f"Invalidated {result['invalidated_count']} entries for June\n")

    await pipeline.close()


async def main():
    await example_aggregated_fetch()
    await example_stream()
    await example_partial_failure()
    await example_cache_administration()


if __name__ == "__main__":
    asyncio.run(main())

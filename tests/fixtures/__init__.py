"""
Test Fixtures

Shared test data and factories for OCDS release payloads.

Components:
    - Release factories with controllable completeness
    - Page payload builders
    - Paged datasets keyed by page number
"""

__all__ = [
    "make_release",
    "make_sparse_release",
    "make_page_payload",
    "make_dataset",
]

from typing import Any, Dict, List, Optional


def make_release(
    ocid: str,
    title: str = "Road maintenance services",
    description: Optional[str] = "Routine maintenance of provincial roads",
    end_date: Optional[str] = "2025-02-28T12:00:00Z",
    start_date: Optional[str] = "2025-01-10T09:00:00Z",
    date: Optional[str] = "2025-01-15T09:00:00Z",
    amount: Optional[float] = 125000.0,
    **extra: Any,
) -> Dict[str, Any]:
    """
    Build an OCDS release.

    With the defaults the release scores 45 on completeness
    (ocid, date, title, description, end date, value amount).

    Args:
        ocid: Release identifier
        title: Tender title
        description: Tender description (None to omit)
        end_date: Tender period end (None to omit)
        start_date: Tender period start (None to omit)
        date: Release date (None to omit)
        amount: Tender value amount (None to omit)
        **extra: Additional top-level release fields

    Returns:
        Release dictionary
    """
    tender: Dict[str, Any] = {"title": title}
    if description is not None:
        tender["description"] = description

    period = {}
    if start_date is not None:
        period["startDate"] = start_date
    if end_date is not None:
        period["endDate"] = end_date
    if period:
        tender["tenderPeriod"] = period

    if amount is not None:
        tender["value"] = {"amount": amount, "currency": "ZAR"}

    release: Dict[str, Any] = {"ocid": ocid, "tender": tender}
    if date is not None:
        release["date"] = date
    release.update(extra)
    return release


def make_sparse_release(ocid: str, title: str = "Office supplies") -> Dict[str, Any]:
    """Release carrying only an ocid and a tender title (completeness 20)."""
    return {"ocid": ocid, "tender": {"title": title}}


def make_page_payload(
    releases: List[Dict[str, Any]],
    total_count: Optional[int] = None,
    count_path: str = "totalCount",
) -> Dict[str, Any]:
    """
    Build one page of the release listing.

    Args:
        releases: Releases on the page
        total_count: Advertised count (None to omit)
        count_path: Dotted location of the count

    Returns:
        Payload dictionary
    """
    payload: Dict[str, Any] = {"releases": releases}
    if total_count is None:
        return payload

    *parents, leaf = count_path.split(".")
    target = payload
    for parent in parents:
        target = target.setdefault(parent, {})
    target[leaf] = total_count
    return payload


def make_dataset(total: int, page_size: int, prefix: str = "ocds-test") -> Dict[int, List[Dict[str, Any]]]:
    """
    Split total releases into pages.

    Args:
        total: Number of releases
        page_size: Releases per page
        prefix: ocid prefix

    Returns:
        Mapping of 1-based page number to releases
    """
    pages: Dict[int, List[Dict[str, Any]]] = {}
    for index in range(total):
        page_number = index // page_size + 1
        pages.setdefault(page_number, []).append(make_release(f"{prefix}-{index:04d}"))
    return pages

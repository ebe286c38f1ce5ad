"""
OCDS Release Parser

Extracts release records and the advertised total count from payloads
returned by the paginated OCDS release endpoint.

Total Count Locations (Priority Order):
    1. totalCount
    2. pagination.totalCount
    3. meta.totalCount

If none of the locations carries a number the caller decides how to
estimate the total; the parser only reports what is present.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tender_harvester.utils.exceptions import ParsingError


_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path on nested mappings.

    Args:
        data: Root mapping
        path: Dotted path (e.g. "tender.tenderPeriod.endDate")
        default: Value returned when any segment is missing

    Returns:
        Value found at path or default

    Example:
        >>> get_path({"tender": {"title": "Roads"}}, "tender.title")
        'Roads'
    """
    current = data
    for segment in path.split("."):
        if not isinstance(current, dict):
            return default
        current = current.get(segment, _MISSING)
        if current is _MISSING:
            return default
    return current


@dataclass
class OCDSPage:
    """Parsed page payload.

    Attributes:
        releases: Release records on the page
        total_count: Advertised dataset size, None if absent
        count_source: Path the count was read from
    """

    releases: List[Dict[str, Any]] = field(default_factory=list)
    total_count: Optional[int] = None
    count_source: Optional[str] = None

    @property
    def has_explicit_count(self) -> bool:
        return self.total_count is not None


class OCDSParser:
    """
    Parser for OCDS release package payloads.

    Supports:
        - Release arrays under "releases"
        - Total count under several tolerated field locations
        - Single release lookups (bare release or one-item package)
    """

    TOTAL_COUNT_PATHS = [
        "totalCount",
        "pagination.totalCount",
        "meta.totalCount",
    ]

    def __init__(self, source: str = "ocds"):
        self.source = source

    def parse_page(self, payload: Any) -> OCDSPage:
        """
        Parse one page of the release listing.

        Args:
            payload: Decoded JSON body

        Returns:
            OCDSPage with releases and total count

        Raises:
            ParsingError: If the payload is not an object or releases is not a list
        """
        if not isinstance(payload, dict):
            raise ParsingError(
                "Invalid response format: expected JSON object",
                source=self.source,
                raw_data=repr(payload),
            )

        releases = payload.get("releases", [])
        if releases is None:
            releases = []
        if not isinstance(releases, list):
            raise ParsingError(
                "Invalid response format: releases is not a list",
                source=self.source,
                raw_data=repr(releases),
            )

        total_count, count_source = self.extract_total_count(payload)
        return OCDSPage(
            releases=[r for r in releases if isinstance(r, dict)],
            total_count=total_count,
            count_source=count_source,
        )

    def extract_total_count(self, payload: Dict[str, Any]) -> tuple[Optional[int], Optional[str]]:
        """
        Find the advertised total count.

        Args:
            payload: Decoded JSON object

        Returns:
            Tuple of (count, path) or (None, None) when no location holds a number
        """
        for path in self.TOTAL_COUNT_PATHS:
            value = get_path(payload, path)
            # bool is an int subclass, not a count
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
                return int(value), path
        return None, None

    def parse_release(self, payload: Any, ocid: str) -> Optional[Dict[str, Any]]:
        """
        Parse a single release lookup.

        Args:
            payload: Decoded JSON body
            ocid: Requested release id

        Returns:
            Release dict, or None when the payload holds no matching release
        """
        if not isinstance(payload, dict):
            raise ParsingError(
                "Invalid response format: expected JSON object",
                source=self.source,
                raw_data=repr(payload),
            )

        if payload.get("ocid"):
            return payload

        releases = payload.get("releases")
        if isinstance(releases, list):
            for release in releases:
                if isinstance(release, dict) and release.get("ocid") == ocid:
                    return release
            if len(releases) == 1 and isinstance(releases[0], dict):
                return releases[0]

        return None

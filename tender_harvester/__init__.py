"""
Tender Harvester - Main Package

Resilient retrieval of paginated OCDS release data from a read-only upstream
source with no bulk export: discovery, concurrent page fetching, deduplicating
aggregation, in-process caching and fallback handling.

Modules:
    clients: HTTP client for the upstream release endpoint
    parsers: Payload parsing (releases, total-count locations)
    models: Pydantic models for responses and stream events
    orchestrator: Cache, error handling, discovery, scheduling, aggregation
    utils: Logging and exceptions
"""

__version__ = "0.1.0"
__author__ = "Tender Harvester Team"

__all__ = [
    "__version__",
    "__author__",
]

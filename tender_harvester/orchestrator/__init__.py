"""
Orchestrator Module

Fetch coordination, caching, aggregation and resilience.

Components:
    - CacheManager: In-memory TTL/LRU cache with compression and sweeps
    - ErrorClassifier: Rule-based error classification and recovery
    - DiscoveryProber: Dataset size discovery and fetch planning
    - PageFetchScheduler: Bounded-concurrency priority page fetcher
    - DataAggregator: Deduplicating aggregation with progress tracking
    - FallbackStrategy: Cache fallback, partial recovery and scheduled retries
    - TenderPipeline: End-to-end dataset fetch and event stream
    - CacheAdministration: Cache and error statistics, health and invalidation
"""

__all__ = [
    "CacheManager",
    "ErrorClassifier",
    "DiscoveryProber",
    "PageFetchScheduler",
    "DataAggregator",
    "FallbackStrategy",
    "TenderPipeline",
    "CacheAdministration",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name == "CacheManager":
        from .cache_manager import CacheManager
        return CacheManager
    elif name == "ErrorClassifier":
        from .error_handler import ErrorClassifier
        return ErrorClassifier
    elif name == "DiscoveryProber":
        from .discovery import DiscoveryProber
        return DiscoveryProber
    elif name == "PageFetchScheduler":
        from .fetch_scheduler import PageFetchScheduler
        return PageFetchScheduler
    elif name == "DataAggregator":
        from .aggregator import DataAggregator
        return DataAggregator
    elif name == "FallbackStrategy":
        from .fallback import FallbackStrategy
        return FallbackStrategy
    elif name == "TenderPipeline":
        from .pipeline import TenderPipeline
        return TenderPipeline
    elif name == "CacheAdministration":
        from .cache_admin import CacheAdministration
        return CacheAdministration
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

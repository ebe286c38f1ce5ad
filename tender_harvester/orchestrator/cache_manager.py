"""
Cache management for Tender Harvester.

In-process cache with per-entry TTL, LRU eviction, a memory budget,
optional zlib compression and a periodic sweep driven by APScheduler.
"""

import hashlib
import logging
import re
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Pattern, Union

import orjson
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tender_harvester.config import CacheConfig
from tender_harvester.utils.exceptions import CacheError, CacheMemoryExceededError

logger = logging.getLogger(__name__)

# Keys longer than this are replaced by a digest
MAX_KEY_LENGTH = 100

# Size assumed for values orjson cannot serialize
DEFAULT_SIZE_ESTIMATE = 1000

_BYTES_PER_MB = 1024 * 1024


@dataclass
class CacheEntry:
    """Single cached value.

    Attributes:
        key: Cache key
        data: Stored payload (zlib bytes when compressed)
        created_at: Creation timestamp (clock seconds)
        ttl: Time-to-live in seconds
        access_count: Number of successful reads
        last_accessed: Timestamp of the last read or write
        size: Estimated uncompressed size in bytes
        compressed: Whether data holds compressed bytes
    """

    key: str
    data: Any
    created_at: float
    ttl: float
    access_count: int = 0
    last_accessed: float = 0.0
    size: int = 0
    compressed: bool = False

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    @property
    def stored_size(self) -> int:
        return len(self.data) if self.compressed else self.size


@dataclass
class InvalidationRule:
    """Sweep-time invalidation rule.

    Attributes:
        pattern: Regex matched against keys
        condition: "time" (age since creation), "access" (age since last
            access) or "size" (total memory in MB)
        threshold: Seconds for time/access, megabytes for size
        priority: Higher priorities are applied first
    """

    pattern: str = ".*"
    condition: str = "time"
    threshold: float = 0.0
    priority: int = 0
    _regex: Pattern = field(init=False, repr=False)

    def __post_init__(self):
        if self.condition not in ("time", "access", "size"):
            raise ValueError(f"Unknown invalidation condition: {self.condition}")
        self._regex = re.compile(self.pattern)

    def matches(self, key: str) -> bool:
        return self._regex.search(key) is not None


class CacheManager:
    """
    In-memory cache manager with TTL, LRU eviction and statistics tracking.

    Features:
    - Per-entry TTL (default 5 minutes), expired reads count as misses
    - LRU eviction when the entry cap is reached
    - Memory budget with rejection of oversized writes
    - zlib compression of large payloads
    - Periodic sweep with prioritized invalidation rules
    - Hit/miss, latency, memory and compression statistics

    Attributes:
        ttl_seconds: Default time-to-live for entries
        max_size: Maximum number of entries
        max_memory_mb: Memory budget in megabytes

    Example:
        >>> cache = CacheManager(ttl_seconds=60)
        >>> key = cache.generate_key(date_from="2025-01-01", date_to="2025-01-31")
        >>> cache.set(key, {"releases": []})
        True
        >>> cache.get(key)
        {'releases': []}
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_size: Optional[int] = None,
        compression_enabled: Optional[bool] = None,
        compression_threshold: Optional[int] = None,
        cleanup_interval: Optional[float] = None,
        max_memory_mb: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        default_rules: bool = True,
    ):
        """
        Initialize cache manager.

        Args:
            ttl_seconds: Default TTL (defaults to CacheConfig.TTL_SECONDS)
            max_size: Entry cap (defaults to CacheConfig.MAX_SIZE)
            compression_enabled: Compress large payloads
            compression_threshold: Size in bytes above which payloads are compressed
            cleanup_interval: Sweep interval in seconds
            max_memory_mb: Memory budget in MB
            clock: Time source in seconds (defaults to time.time)
            default_rules: Install the default invalidation rules
        """
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else CacheConfig.TTL_SECONDS
        self.max_size = max_size if max_size is not None else CacheConfig.MAX_SIZE
        self.compression_enabled = (
            compression_enabled if compression_enabled is not None
            else CacheConfig.COMPRESSION_ENABLED
        )
        self.compression_threshold = (
            compression_threshold if compression_threshold is not None
            else CacheConfig.COMPRESSION_THRESHOLD
        )
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None
            else CacheConfig.CLEANUP_INTERVAL_SECONDS
        )
        self.max_memory_mb = (
            max_memory_mb if max_memory_mb is not None else CacheConfig.MAX_MEMORY_MB
        )
        self._clock = clock or time.time

        # Insertion/access order doubles as LRU order
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._rules: list[InvalidationRule] = []
        self._scheduler: Optional[AsyncIOScheduler] = None

        self._stats = {
            "hits": 0,
            "misses": 0,
            "total_access_time": 0.0,
            "access_count": 0,
            "evictions": 0,
            "rejections": 0,
            "expirations": 0,
        }

        if default_rules:
            self._setup_default_rules()

        logger.info(
            "CacheManager initialized",
            extra={
                "ttl_seconds": self.ttl_seconds,
                "max_size": self.max_size,
                "max_memory_mb": self.max_memory_mb,
            },
        )

    # ========== Keys ==========

    def generate_key(
        self,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        page_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        filters: Optional[dict[str, Any]] = None,
        include_metadata: bool = False,
    ) -> str:
        """
        Generate a deterministic cache key from request options.

        Args:
            date_from: Start date
            date_to: End date (only used together with date_from)
            page_size: Records per page
            max_concurrency: Concurrency budget
            filters: Extra filters, serialized in sorted key order
            include_metadata: Whether metadata is part of the cached value

        Returns:
            Key like "dates:2025-01-01-2025-01-31|pageSize:50", a
            "hash:..." digest for long keys, or "default" when empty
        """
        parts = []

        if date_from and date_to:
            parts.append(f"dates:{date_from}-{date_to}")
        if page_size:
            parts.append(f"pageSize:{page_size}")
        if max_concurrency:
            parts.append(f"concurrency:{max_concurrency}")
        if filters:
            filter_string = ",".join(
                f"{name}:{orjson.dumps(filters[name], option=orjson.OPT_SORT_KEYS).decode()}"
                for name in sorted(filters)
            )
            parts.append(f"filters:{filter_string}")
        if include_metadata:
            parts.append("metadata:true")

        key = "|".join(parts)
        if len(key) > MAX_KEY_LENGTH:
            return f"hash:{hashlib.sha1(key.encode('utf-8')).hexdigest()[:16]}"
        return key or "default"

    # ========== Read / Write ==========

    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve a value if present and not expired.

        Args:
            key: Cache key

        Returns:
            Cached value, or None on miss or expiry (expired entries are removed)

        Raises:
            CacheError: If a compressed payload cannot be decoded
        """
        started = time.perf_counter()
        try:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                logger.debug("Cache miss", extra={"cache_key": key})
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._stats["misses"] += 1
                self._stats["expirations"] += 1
                logger.debug("Cache entry expired", extra={"cache_key": key})
                return None

            entry.access_count += 1
            entry.last_accessed = now
            self._entries.move_to_end(key)
            self._stats["hits"] += 1

            if entry.compressed:
                return self._decompress(entry)
            return entry.data

        finally:
            self._stats["total_access_time"] += time.perf_counter() - started
            self._stats["access_count"] += 1

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        strict: bool = False,
    ) -> bool:
        """
        Store a value.

        Args:
            key: Cache key
            value: Payload (JSON-serializable values can be compressed)
            ttl: Per-entry TTL override in seconds
            strict: Evict LRU entries to make room and raise when the value
                still does not fit, instead of rejecting it

        Returns:
            True if stored, False if rejected by the memory budget

        Raises:
            CacheMemoryExceededError: strict=True and the value cannot fit
        """
        now = self._clock()
        entry_ttl = ttl if ttl is not None else self.ttl_seconds
        size, encoded = self._estimate_size(value)

        # Replacing a key frees its old size first
        previous = self._entries.pop(key, None)

        if self._would_exceed_budget(size):
            if not strict:
                if previous is not None:
                    self._entries[key] = previous
                self._stats["rejections"] += 1
                logger.warning(
                    "Cache entry rejected due to memory limits",
                    extra={
                        "cache_key": key,
                        "size": size,
                        "memory_usage_mb": round(self.memory_usage_mb, 3),
                        "max_memory_mb": self.max_memory_mb,
                    },
                )
                return False

            while self._would_exceed_budget(size) and self._evict_lru():
                pass
            if self._would_exceed_budget(size):
                raise CacheMemoryExceededError(
                    "Cache memory budget exceeded with nothing left to evict",
                    cache_key=key,
                    size_bytes=size,
                    budget_mb=self.max_memory_mb,
                )

        data = value
        compressed = False
        if (
            self.compression_enabled
            and encoded is not None
            and size > self.compression_threshold
            and self._survives_json(value, encoded)
        ):
            data = zlib.compress(encoded)
            compressed = True

        if len(self._entries) >= self.max_size:
            self._evict_lru()

        self._entries[key] = CacheEntry(
            key=key,
            data=data,
            created_at=now,
            ttl=entry_ttl,
            last_accessed=now,
            size=size,
            compressed=compressed,
        )

        logger.debug(
            "Cache entry set",
            extra={
                "cache_key": key,
                "size": size,
                "compressed": compressed,
                "ttl": entry_ttl,
                "total_entries": len(self._entries),
            },
        )
        return True

    def delete(self, key: str) -> bool:
        """Remove a single key. Returns True if it existed."""
        return self._entries.pop(key, None) is not None

    def get_entry_age(self, key: str) -> Optional[float]:
        """
        Age of an entry in seconds, without counting as an access.

        Args:
            key: Cache key

        Returns:
            Seconds since the entry was written, or None if absent or expired
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.is_expired(now):
            return None
        return now - entry.created_at

    # ========== Invalidation ==========

    def invalidate(self, pattern: Union[str, Pattern]) -> int:
        """
        Remove all entries whose key matches a regex.

        Args:
            pattern: Regex string or compiled pattern (searched, not anchored)

        Returns:
            Number of entries removed
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            del self._entries[key]

        logger.info(
            "Cache invalidation completed",
            extra={
                "pattern": regex.pattern,
                "invalidated_count": len(matched),
                "remaining_entries": len(self._entries),
            },
        )
        return len(matched)

    def invalidate_by_date_range(self, date_from: str, date_to: str) -> int:
        """Remove entries cached for exactly this date window."""
        return self.invalidate(re.escape(f"dates:{date_from}-{date_to}"))

    def clear(self) -> int:
        """
        Delete all entries.

        Returns:
            Number of entries deleted
        """
        count = len(self._entries)
        self._entries.clear()
        logger.warning(f"Cleared ALL {count} cache entries")
        return count

    def add_invalidation_rule(self, rule: InvalidationRule) -> None:
        """Register a sweep rule; rules run in descending priority."""
        self._rules.append(rule)
        self._rules.sort(key=lambda r: r.priority, reverse=True)
        logger.debug("Invalidation rule added", extra={"rule": repr(rule)})

    @property
    def rules(self) -> list[InvalidationRule]:
        return list(self._rules)

    def apply_invalidation_rules(self) -> int:
        """
        Apply every registered rule once.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        total = 0

        for rule in self._rules:
            if rule.condition == "size":
                if self.memory_usage_mb > rule.threshold:
                    total += self.invalidate(rule.pattern)
                continue

            if rule.condition == "time":
                stale = [
                    key for key, entry in self._entries.items()
                    if now - entry.created_at > rule.threshold and rule.matches(key)
                ]
            else:
                stale = [
                    key for key, entry in self._entries.items()
                    if now - entry.last_accessed > rule.threshold and rule.matches(key)
                ]
            for key in stale:
                del self._entries[key]
            total += len(stale)

        return total

    def sweep(self) -> int:
        """
        Remove expired entries, apply rules, then enforce the memory budget.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._stats["expirations"] += len(expired)

        removed = len(expired) + self.apply_invalidation_rules()

        while self.memory_usage_mb > self.max_memory_mb and self._evict_lru():
            removed += 1

        if removed:
            logger.info(
                "Cache sweep completed",
                extra={
                    "removed": removed,
                    "remaining_entries": len(self._entries),
                    "memory_usage_mb": round(self.memory_usage_mb, 3),
                },
            )
        return removed

    # ========== Periodic sweep ==========

    async def _sweep_job(self) -> None:
        # Coroutine jobs run on the event loop, not in a worker thread
        self.sweep()

    def start_sweeper(self) -> None:
        """
        Start the periodic sweep on the running event loop.

        Must be called from inside a running asyncio loop.
        """
        if self._scheduler is not None and self._scheduler.running:
            logger.warning("Cache sweeper is already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            func=self._sweep_job,
            trigger=IntervalTrigger(seconds=self.cleanup_interval),
            id="cache_sweep",
            name="Cache Sweep",
            replace_existing=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info("Cache sweeper started", extra={"interval": self.cleanup_interval})

    def stop_sweeper(self) -> None:
        """Stop the periodic sweep if running."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Cache sweeper stopped")
        self._scheduler = None

    @property
    def sweeper_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ========== Statistics ==========

    @property
    def memory_usage_mb(self) -> float:
        return sum(entry.size for entry in self._entries.values()) / _BYTES_PER_MB

    def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary containing hit/miss counts and rates, average access
            time (ms), entry count, total size, memory usage (MB), oldest
            and newest entry timestamps and compression ratio
        """
        entries = list(self._entries.values())
        total_size = sum(entry.size for entry in entries)
        stored_size = sum(entry.stored_size for entry in entries)
        total_requests = self._stats["hits"] + self._stats["misses"]
        access_count = self._stats["access_count"]

        return {
            "total_entries": len(entries),
            "total_size": total_size,
            "hit_rate": self._stats["hits"] / total_requests if total_requests else 0.0,
            "miss_rate": self._stats["misses"] / total_requests if total_requests else 0.0,
            "total_hits": self._stats["hits"],
            "total_misses": self._stats["misses"],
            "average_access_time_ms": (
                self._stats["total_access_time"] * 1000 / access_count if access_count else 0.0
            ),
            "memory_usage_mb": total_size / _BYTES_PER_MB,
            "oldest_entry": min((e.created_at for e in entries), default=None),
            "newest_entry": max((e.created_at for e in entries), default=None),
            "compression_ratio": stored_size / total_size if total_size else 1.0,
            "compressed_entries": sum(1 for e in entries if e.compressed),
            "evictions": self._stats["evictions"],
            "rejections": self._stats["rejections"],
            "expirations": self._stats["expirations"],
            "max_size": self.max_size,
            "max_memory_mb": self.max_memory_mb,
            "ttl_seconds": self.ttl_seconds,
        }

    def keys(self) -> list[str]:
        return list(self._entries)

    # ========== Internals ==========

    def _setup_default_rules(self) -> None:
        # Entries older than 1 hour
        self.add_invalidation_rule(
            InvalidationRule(pattern=".*", condition="time", threshold=60 * 60, priority=1)
        )
        # Entries unused for 30 minutes
        self.add_invalidation_rule(
            InvalidationRule(pattern=".*", condition="access", threshold=30 * 60, priority=2)
        )
        # Everything once memory exceeds 80MB
        self.add_invalidation_rule(
            InvalidationRule(pattern=".*", condition="size", threshold=80, priority=3)
        )

    def _estimate_size(self, value: Any) -> tuple[int, Optional[bytes]]:
        try:
            encoded = orjson.dumps(value)
        except TypeError:
            return DEFAULT_SIZE_ESTIMATE, None
        return len(encoded), encoded

    @staticmethod
    def _survives_json(value: Any, encoded: bytes) -> bool:
        # Tuples, dataclasses and datetimes decode as lists, dicts and strings
        return orjson.loads(encoded) == value

    def _would_exceed_budget(self, size: int) -> bool:
        return self.memory_usage_mb + size / _BYTES_PER_MB > self.max_memory_mb

    def _evict_lru(self) -> bool:
        if not self._entries:
            return False
        key, _ = self._entries.popitem(last=False)
        self._stats["evictions"] += 1
        logger.debug("Evicted least recently used entry", extra={"cache_key": key})
        return True

    def _decompress(self, entry: CacheEntry) -> Any:
        try:
            return orjson.loads(zlib.decompress(entry.data))
        except (zlib.error, orjson.JSONDecodeError) as e:
            raise CacheError(
                f"Failed to decompress cache entry: {e}",
                operation="read",
                cache_key=entry.key,
            ) from e

    def close(self) -> None:
        """Stop the sweeper and drop all entries."""
        self.stop_sweeper()
        self._entries.clear()
        logger.debug("CacheManager closed")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"CacheManager(entries={len(self._entries)}, "
            f"ttl_seconds={self.ttl_seconds}, max_size={self.max_size})"
        )

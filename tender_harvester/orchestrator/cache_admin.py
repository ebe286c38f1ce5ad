"""
Cache and error-monitoring administration for Tender Harvester.

Read-only statistics and health views over the shared cache and error
classifier, plus the invalidation operations.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from tender_harvester.orchestrator.cache_manager import CacheManager
from tender_harvester.orchestrator.error_handler import ErrorClassifier
from tender_harvester.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Health thresholds
MAX_HEALTHY_MEMORY_MB = 80
MIN_HEALTHY_HIT_RATE = 0.3
MIN_HEALTHY_RECOVERY_RATE = 0.7
MAX_HEALTHY_ERRORS = 100


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _percent(value: float) -> int:
    return round(value * 100)


class CacheAdministration:
    """
    Administration surface over a cache and an error classifier.

    Example:
        >>> admin = CacheAdministration(pipeline.cache, pipeline.classifier)
        >>> admin.health()["healthy"]
        True
        >>> admin.invalidate_date_range("2025-01-01", "2025-03-31")["invalidated_count"]
        1
    """

    def __init__(self, cache: CacheManager, classifier: ErrorClassifier):
        self.cache = cache
        self.classifier = classifier

    # ========== Cache ==========

    def stats(self) -> dict[str, Any]:
        """Cache statistics with rounded percentages."""
        stats = self.cache.get_stats()
        return {
            "success": True,
            "data": {
                **stats,
                "hit_rate_percentage": _percent(stats["hit_rate"]),
                "miss_rate_percentage": _percent(stats["miss_rate"]),
                "memory_usage_mb": round(stats["memory_usage_mb"], 2),
                "compression_ratio_percentage": _percent(1 - stats["compression_ratio"]),
            },
            "timestamp": _timestamp(),
        }

    def health(self) -> dict[str, Any]:
        """
        Cache health check.

        Healthy when memory usage is below 80 MB and the hit rate is above 0.3.

        Returns:
            Dictionary with healthy flag, status and recommendations
        """
        stats = self.cache.get_stats()
        memory = stats["memory_usage_mb"]
        hit_rate = stats["hit_rate"]
        healthy = memory < MAX_HEALTHY_MEMORY_MB and hit_rate > MIN_HEALTHY_HIT_RATE

        recommendations = []
        if memory >= MAX_HEALTHY_MEMORY_MB:
            recommendations.append("High memory usage - consider clearing cache")
        if hit_rate <= MIN_HEALTHY_HIT_RATE:
            recommendations.append("Low hit rate - cache may need tuning")

        return {
            "success": True,
            "healthy": healthy,
            "data": {
                "memory_usage_mb": round(memory, 2),
                "hit_rate": round(hit_rate, 2),
                "total_entries": stats["total_entries"],
                "status": "healthy" if healthy else "warning",
                "recommendations": recommendations,
            },
            "timestamp": _timestamp(),
        }

    def clear(self) -> dict[str, Any]:
        """Remove every cache entry."""
        removed = self.cache.clear()
        logger.info("Cache cleared via administration", extra={"removed": removed})
        return {
            "success": True,
            "message": "Cache cleared successfully",
            "data": {"removed": removed},
            "timestamp": _timestamp(),
        }

    def invalidate(self, pattern: str) -> dict[str, Any]:
        """
        Invalidate entries whose key matches a regex pattern.

        Raises:
            ConfigurationError: Empty pattern
        """
        if not pattern:
            raise ConfigurationError("Pattern is required for invalidation")

        count = self.cache.invalidate(pattern)
        return {
            "success": True,
            "message": f"Invalidated {count} cache entries",
            "data": {"invalidated_count": count, "pattern": pattern},
            "invalidated_count": count,
            "timestamp": _timestamp(),
        }

    def invalidate_date_range(self, date_from: str, date_to: str) -> dict[str, Any]:
        """
        Invalidate entries cached for a date window.

        Raises:
            ConfigurationError: Missing date
        """
        if not date_from or not date_to:
            raise ConfigurationError("date_from and date_to are required")

        count = self.cache.invalidate_by_date_range(date_from, date_to)
        return {
            "success": True,
            "message": f"Invalidated {count} cache entries for date range",
            "data": {"invalidated_count": count, "date_from": date_from, "date_to": date_to},
            "invalidated_count": count,
            "timestamp": _timestamp(),
        }

    # ========== Errors ==========

    def error_stats(self) -> dict[str, Any]:
        """Error statistics with per-kind and per-severity distribution."""
        stats = self.classifier.get_statistics()
        total = stats["total_errors"]

        def distribution(counts: dict[str, int], label: str) -> list[dict[str, Any]]:
            return [
                {label: name, "count": count, "percentage": round(count / total * 100) if total else 0}
                for name, count in counts.items()
            ]

        return {
            "success": True,
            "data": {
                **stats,
                "recovery_success_rate_percentage": _percent(stats["recovery_success_rate"]),
                "error_distribution": {
                    "by_kind": distribution(stats["errors_by_kind"], "kind"),
                    "by_severity": distribution(stats["errors_by_severity"], "severity"),
                },
            },
            "timestamp": _timestamp(),
        }

    def error_health(self) -> dict[str, Any]:
        """
        Error health check.

        Healthy when the error count is below 100 and either no recovery was
        attempted or more than 70% of recovery attempts succeeded.

        Returns:
            Dictionary with healthy flag, recommendations and the top 3 patterns
        """
        stats = self.classifier.get_statistics()
        total = stats["total_errors"]
        rate = stats["recovery_success_rate"]
        recovery_ok = stats["recovery_attempts"] == 0 or rate > MIN_HEALTHY_RECOVERY_RATE
        healthy = recovery_ok and total < MAX_HEALTHY_ERRORS

        recommendations = []
        if not recovery_ok:
            recommendations.append("Low recovery success rate - check error handling strategies")
        if total >= MAX_HEALTHY_ERRORS:
            recommendations.append("High error count - investigate common error patterns")

        return {
            "success": True,
            "healthy": healthy,
            "data": {
                "total_errors": total,
                "recovery_success_rate": _percent(rate),
                "status": "healthy" if healthy else "warning",
                "recommendations": recommendations,
                "common_patterns": stats["common_patterns"][:3],
            },
            "timestamp": _timestamp(),
        }

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"CacheAdministration(cache={self.cache!r})"

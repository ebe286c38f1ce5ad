"""
Configuration management for Tender Harvester.

Environment-based configuration using python-dotenv. Every value can be
overridden through the environment or a local .env file.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _float_list(raw: str) -> list[float]:
    return [float(part) for part in raw.split(",") if part.strip()]


class UpstreamConfig:
    """Upstream OCDS release endpoint configuration."""

    BASE_URL: str = os.getenv(
        "OCDS_BASE_URL", "https://ocds-api.etenders.gov.za/api/OCDSReleases"
    )

    # User agent sent with every request
    USER_AGENT: str = os.getenv("OCDS_USER_AGENT", "Tender-Harvester/0.1")

    # Per-request timeout for page fetches (seconds)
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "20"))

    # Timeout for the single discovery request (seconds)
    DISCOVERY_TIMEOUT: float = float(os.getenv("DISCOVERY_TIMEOUT", "15"))

    # Default query window and page size
    DEFAULT_DATE_FROM: str = os.getenv("DEFAULT_DATE_FROM", "2025-01-01")
    DEFAULT_DATE_TO: str = os.getenv("DEFAULT_DATE_TO", "2025-03-31")
    DEFAULT_PAGE_SIZE: int = int(os.getenv("DEFAULT_PAGE_SIZE", "50"))


class FetchConfig:
    """Concurrent page fetching configuration."""

    MAX_CONCURRENT_REQUESTS: int = int(os.getenv("MAX_CONCURRENT_REQUESTS", "8"))
    MAX_RETRIES: int = int(os.getenv("FETCH_MAX_RETRIES", "3"))

    # Base delay after a 429 without Retry-After, also the backoff base (seconds)
    RATE_LIMIT_DELAY: float = float(os.getenv("RATE_LIMIT_DELAY", "1.0"))
    BACKOFF_MULTIPLIER: float = float(os.getenv("BACKOFF_MULTIPLIER", "2"))
    MAX_BACKOFF_DELAY: float = float(os.getenv("MAX_BACKOFF_DELAY", "10"))

    # Upper bound applied to server supplied Retry-After values (seconds)
    MAX_RATE_LIMIT_DELAY: float = float(os.getenv("MAX_RATE_LIMIT_DELAY", "60"))

    # Minimum fraction of successful batches for an overall success
    MIN_SUCCESS_THRESHOLD: float = float(os.getenv("MIN_SUCCESS_THRESHOLD", "0.3"))


class RetryConfig:
    """Recovery coordinator retry configuration."""

    MAX_RETRIES: int = int(os.getenv("RETRY_MAX_RETRIES", "3"))
    BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "30"))
    BACKOFF_MULTIPLIER: float = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2"))
    JITTER_ENABLED: bool = os.getenv("RETRY_JITTER_ENABLED", "true").lower() == "true"

    # Maximum random jitter added to each delay (seconds)
    MAX_JITTER: float = float(os.getenv("RETRY_MAX_JITTER", "1.0"))

    # Number of classified errors kept for statistics
    HISTORY_SIZE: int = int(os.getenv("ERROR_HISTORY_SIZE", "1000"))


class CacheConfig:
    """In-memory cache configuration."""

    # Default entry time-to-live in seconds (5 minutes)
    TTL_SECONDS: float = float(os.getenv("CACHE_TTL_SECONDS", "300"))

    # Maximum number of entries before LRU eviction
    MAX_SIZE: int = int(os.getenv("CACHE_MAX_SIZE", "1000"))

    COMPRESSION_ENABLED: bool = os.getenv("CACHE_COMPRESSION", "true").lower() == "true"

    # Entries above this estimated size are compressed (bytes)
    COMPRESSION_THRESHOLD: int = int(os.getenv("CACHE_COMPRESSION_THRESHOLD", "10000"))

    # Interval of the expiry sweep (seconds)
    CLEANUP_INTERVAL_SECONDS: float = float(os.getenv("CACHE_CLEANUP_INTERVAL", "60"))

    # Memory budget in MB
    MAX_MEMORY_MB: float = float(os.getenv("CACHE_MAX_MEMORY_MB", "100"))

    # TTL used for aggregated dataset responses
    DATASET_TTL_SECONDS: float = float(os.getenv("DATASET_TTL_SECONDS", "300"))


class FallbackConfig:
    """Fallback and scheduled retry configuration."""

    ENABLE_CACHED_FALLBACK: bool = os.getenv("ENABLE_CACHED_FALLBACK", "true").lower() == "true"

    # Maximum age of cached data still usable as fallback (24 hours)
    MAX_CACHE_AGE_SECONDS: float = float(os.getenv("MAX_CACHE_AGE_SECONDS", str(24 * 60 * 60)))

    # Progressive retry delays in seconds
    RETRY_SCHEDULE: list[float] = _float_list(os.getenv("RETRY_SCHEDULE", "1,2,5,10,30"))

    MAX_RETRY_ATTEMPTS: int = int(os.getenv("MAX_RETRY_ATTEMPTS", "5"))
    BACKGROUND_REFRESH: bool = os.getenv("BACKGROUND_REFRESH", "true").lower() == "true"
    OFFLINE_DETECTION: bool = os.getenv("OFFLINE_DETECTION", "true").lower() == "true"


class LoggingConfig:
    """Logging configuration."""

    # Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Log directory
    LOG_DIR: Path = Path(os.getenv("LOG_DIR", "logs"))

    # Log format
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Date format
    DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

    # Maximum log file size in bytes (10MB default)
    MAX_LOG_SIZE: int = int(os.getenv("MAX_LOG_SIZE", str(10 * 1024 * 1024)))

    # Number of backup log files to keep
    BACKUP_COUNT: int = int(os.getenv("BACKUP_COUNT", "5"))

    @classmethod
    def ensure_log_directory(cls) -> None:
        """Create log directory if it doesn't exist."""
        cls.LOG_DIR.mkdir(parents=True, exist_ok=True)


class AppConfig:
    """Main application configuration aggregating all config classes."""

    upstream = UpstreamConfig
    fetch = FetchConfig
    retry = RetryConfig
    cache = CacheConfig
    fallback = FallbackConfig
    logging = LoggingConfig

    APP_NAME: str = "Tender Harvester"
    VERSION: str = "0.1.0"

    @classmethod
    def validate(cls) -> tuple[bool, list[str]]:
        """
        Validate configuration settings.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        if not UpstreamConfig.BASE_URL.startswith(("http://", "https://")):
            errors.append("OCDS_BASE_URL must be an http(s) URL")

        if FetchConfig.MAX_CONCURRENT_REQUESTS < 1:
            errors.append("MAX_CONCURRENT_REQUESTS must be at least 1")

        if not 0 <= FetchConfig.MIN_SUCCESS_THRESHOLD <= 1:
            errors.append("MIN_SUCCESS_THRESHOLD must be between 0 and 1")

        if CacheConfig.TTL_SECONDS <= 0:
            errors.append("CACHE_TTL_SECONDS must be greater than 0")

        if CacheConfig.MAX_SIZE < 1:
            errors.append("CACHE_MAX_SIZE must be at least 1")

        if not FallbackConfig.RETRY_SCHEDULE:
            errors.append("RETRY_SCHEDULE must contain at least one delay")

        return (len(errors) == 0, errors)

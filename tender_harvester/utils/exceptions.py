"""
Custom exception classes for Tender Harvester.

Provides a hierarchy of exceptions for different failure scenarios
with appropriate context and debugging information.
"""

from typing import Any, Optional


class TenderHarvesterError(Exception):
    """Base exception for all Tender Harvester errors.

    All custom exceptions inherit from this class, allowing
    catch-all error handling when needed.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class APIError(TenderHarvesterError):
    """Raised when the upstream API answers with an error status.

    Attributes:
        endpoint: API endpoint that failed
        status_code: HTTP status code (if applicable)
        response_body: Response content (if available)
        request_params: Request parameters used
    """

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_params: Optional[dict[str, Any]] = None,
        **kwargs
    ):
        details = {
            "endpoint": endpoint,
            "status_code": status_code,
            "request_params": request_params,
            **kwargs
        }
        if response_body:
            # Truncate response body for readability
            details["response_preview"] = response_body[:200] + "..." if len(response_body) > 200 else response_body

        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code
        self.response_body = response_body
        self.request_params = request_params


class RateLimitError(APIError):
    """Raised on HTTP 429.

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by API)
    """

    def __init__(
        self,
        message: str = "API rate limit exceeded (status: 429)",
        retry_after: Optional[float] = None,
        **kwargs
    ):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, retry_after=retry_after, **kwargs)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when the upstream returns a 5xx status."""
    pass


class NotFoundError(APIError):
    """Raised when a single resource lookup returns 404."""

    def __init__(self, message: str, resource_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("status_code", 404)
        super().__init__(message, resource_id=resource_id, **kwargs)
        self.resource_id = resource_id


class NetworkError(TenderHarvesterError):
    """Raised when the connection to the upstream fails before a response.

    Attributes:
        endpoint: Endpoint being contacted
    """

    def __init__(self, message: str, endpoint: Optional[str] = None, **kwargs):
        details = {"endpoint": endpoint, **kwargs}
        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.endpoint = endpoint


class RequestTimeoutError(TenderHarvesterError):
    """Raised when a single request exceeds its own timeout.

    Attributes:
        timeout: Timeout that was exceeded (seconds)
        page_number: Page being fetched, if any
    """

    def __init__(
        self,
        message: str = "Request timed out",
        timeout: Optional[float] = None,
        page_number: Optional[int] = None,
        **kwargs
    ):
        details = {"timeout": timeout, "page_number": page_number, **kwargs}
        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.timeout = timeout
        self.page_number = page_number


class ParsingError(TenderHarvesterError):
    """Raised when an upstream payload cannot be parsed.

    Attributes:
        source: Data source that failed to parse
        raw_data: Raw data snippet (optional, for debugging)
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        raw_data: Optional[str] = None,
        **kwargs
    ):
        details = {"source": source, **kwargs}
        if raw_data:
            # Truncate raw data for readability
            details["raw_data_preview"] = raw_data[:200] + "..." if len(raw_data) > 200 else raw_data

        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.source = source
        self.raw_data = raw_data


class DiscoveryError(TenderHarvesterError):
    """Raised when the discovery probe cannot produce a fetch plan.

    Attributes:
        kind: Failure kind (network/timeout/api/parsing)
        retryable: Whether calling discovery again may succeed
        retry_after: Suggested delay before retrying (seconds)
        cause: Underlying exception
    """

    def __init__(
        self,
        message: str,
        kind: str = "network",
        retryable: bool = True,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        details = {
            "kind": kind,
            "retryable": retryable,
            "retry_after": retry_after,
            **kwargs
        }
        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.kind = kind
        self.retryable = retryable
        self.retry_after = retry_after
        self.cause = cause


class CacheError(TenderHarvesterError):
    """Raised when cache operations fail.

    Attributes:
        operation: The cache operation that failed (read/write/delete/clear)
        cache_key: The key involved in the failed operation
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        cache_key: Optional[str] = None,
        **kwargs
    ):
        details = {
            "operation": operation,
            "cache_key": cache_key,
            **kwargs
        }
        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.operation = operation
        self.cache_key = cache_key


class CacheMemoryExceededError(CacheError):
    """Raised when an entry cannot fit the cache budget even after eviction."""

    def __init__(
        self,
        message: str,
        cache_key: Optional[str] = None,
        size_bytes: Optional[int] = None,
        budget_mb: Optional[float] = None,
    ):
        super().__init__(
            message,
            operation="write",
            cache_key=cache_key,
            size_bytes=size_bytes,
            budget_mb=budget_mb,
        )
        self.size_bytes = size_bytes
        self.budget_mb = budget_mb


class RecordValidationError(TenderHarvesterError):
    """Raised when a record or request parameter fails validation.

    Attributes:
        field: Field that failed validation
        value: Offending value
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        details = {"field": field, **kwargs}
        if value is not None:
            # Truncate value for readability
            value_str = str(value)
            details["value"] = value_str[:100] + "..." if len(value_str) > 100 else value_str

        details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message, details)
        self.field = field
        self.value = value


class ConfigurationError(TenderHarvesterError):
    """Raised when settings are missing or inconsistent."""
    pass


class PipelineError(TenderHarvesterError):
    """Raised when the dataset pipeline cannot produce any usable result.

    Attributes:
        classified: Classified error describing the failure (optional)
    """

    def __init__(self, message: str, classified: Optional[Any] = None, **kwargs):
        super().__init__(message, {k: v for k, v in kwargs.items() if v is not None})
        self.classified = classified

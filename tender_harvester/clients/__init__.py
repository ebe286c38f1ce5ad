"""
HTTP Clients Module

Provides the async client for the upstream OCDS release endpoint.

Components:
    - OCDSClient: Async client for the paginated release listing
    - OCDSClientConfig: Configuration for the client
"""

from .ocds_client import OCDSClient, OCDSClientConfig, parse_retry_after

__all__ = [
    "OCDSClient",
    "OCDSClientConfig",
    "parse_retry_after",
]

"""
API Connectors Module.

Provides httpx-based source and target adapters for directory HTTP APIs.
"""

from .client import ApiClient, ApiClientConfig, AuthConfig, PaginationConfig
from .source import ApiSourceConfig, ApiSourceConnector
from .target import ApiTargetConfig, ApiTargetConnector

__all__ = [
    "ApiClient",
    "ApiClientConfig",
    "AuthConfig",
    "PaginationConfig",
    "ApiSourceConfig",
    "ApiSourceConnector",
    "ApiTargetConfig",
    "ApiTargetConnector",
]

"""
vendorlink - resilient outbound request layer for AI vendor APIs.
"""

from vendorlink.services import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitOpenError,
    ClientError,
    RateLimitExceededError,
    RequestCancelledError,
    RequestBudgetConfig,
    RequestDescriptor,
    RequestExecutor,
    RequestOptions,
    RetriesExhaustedError,
    RetryConfig,
    ServiceError,
)
from vendorlink.settings import Settings, load_settings

__version__ = "0.1.0"

__all__ = [
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "ClientError",
    "RateLimitExceededError",
    "RequestCancelledError",
    "RequestBudgetConfig",
    "RequestDescriptor",
    "RequestExecutor",
    "RequestOptions",
    "RetriesExhaustedError",
    "RetryConfig",
    "ServiceError",
    "Settings",
    "load_settings",
]

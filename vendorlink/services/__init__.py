"""
Service layer infrastructure - resilience patterns for outbound vendor calls.

Provides:
- RequestExecutor: Retrying request layer combining all patterns
- CircuitBreaker: Per-service failure isolation
- RateLimitRegistry: Per-endpoint 429 windows
- RequestBudgetRegistry: Per-service requests per minute/hour/day
- InFlightTracker / StaleResourceReaper: Bounded in-flight bookkeeping
"""

from vendorlink.services.errors import (
    ErrorKind,
    ServiceError,
    TransportError,
    RequestTimeoutError,
    ResponseError,
    RateLimitError,
    ServerError,
    ClientError,
    RetriesExhaustedError,
    RateLimitExceededError,
    CircuitOpenError,
    RequestCancelledError,
)
from vendorlink.services.transport import HttpxTransport, RequestDescriptor, Transport
from vendorlink.services.rate_limits import RateLimitRegistry, RateLimitWindow
from vendorlink.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from vendorlink.services.tracker import InFlightTracker, TrackedEntry
from vendorlink.services.reaper import StaleResourceReaper
from vendorlink.services.request_budget import (
    RequestBudget,
    RequestBudgetConfig,
    RequestBudgetRegistry,
)
from vendorlink.services.client import RequestExecutor, RequestOptions, RetryConfig

__all__ = [
    # Errors
    "ErrorKind",
    "ServiceError",
    "TransportError",
    "RequestTimeoutError",
    "ResponseError",
    "RateLimitError",
    "ServerError",
    "ClientError",
    "RetriesExhaustedError",
    "RateLimitExceededError",
    "CircuitOpenError",
    "RequestCancelledError",
    # Transport
    "HttpxTransport",
    "RequestDescriptor",
    "Transport",
    # Rate limits
    "RateLimitRegistry",
    "RateLimitWindow",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Tracking
    "InFlightTracker",
    "TrackedEntry",
    "StaleResourceReaper",
    # Request budgets
    "RequestBudget",
    "RequestBudgetConfig",
    "RequestBudgetRegistry",
    # Client
    "RequestExecutor",
    "RequestOptions",
    "RetryConfig",
]

"""
Service layer - resilient API access.

Provides:
- CacheStore: TTL cache over the persistent store
- NetworkMonitor: connectivity state and the offline queue
- AuthCoordinator: single-flight token refresh
- RequestExecutor: retries, auth recovery, offline queueing
- RequestFacade: per-query state with cache strategies
"""

from carelink.services.errors import (
    ApiError,
    ErrorKind,
    FormattedError,
    ServiceError,
    format_error,
    normalize_error,
)
from carelink.services.cancellation import CancellationToken
from carelink.services.cache import CacheEntry, CacheStats, CacheStore
from carelink.services.network import (
    ConnectivitySource,
    ManualConnectivitySource,
    NetworkMonitor,
    NetworkState,
    PendingRequest,
    ProbeConnectivitySource,
)
from carelink.services.auth import AuthCoordinator, AuthState, AuthToken
from carelink.services.coalescer import RequestCoalescer
from carelink.services.transport import HttpTransport
from carelink.services.executor import ApiResponse, RequestDescriptor, RequestExecutor
from carelink.services.facade import (
    CacheInfo,
    CacheStrategy,
    QueryConfig,
    QueryState,
    RequestFacade,
    RequestStatus,
)

__all__ = [
    # Errors
    "ApiError",
    "ErrorKind",
    "FormattedError",
    "ServiceError",
    "format_error",
    "normalize_error",
    # Cancellation
    "CancellationToken",
    # Cache
    "CacheEntry",
    "CacheStats",
    "CacheStore",
    # Network
    "ConnectivitySource",
    "ManualConnectivitySource",
    "NetworkMonitor",
    "NetworkState",
    "PendingRequest",
    "ProbeConnectivitySource",
    # Auth
    "AuthCoordinator",
    "AuthState",
    "AuthToken",
    # Execution
    "RequestCoalescer",
    "HttpTransport",
    "ApiResponse",
    "RequestDescriptor",
    "RequestExecutor",
    # Facade
    "CacheInfo",
    "CacheStrategy",
    "QueryConfig",
    "QueryState",
    "RequestFacade",
    "RequestStatus",
]

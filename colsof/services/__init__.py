"""
Service layer infrastructure - caching and resilience for reads and writes.

Provides:
- CacheManager: TTL cache with FIFO eviction and pattern invalidation
- RequestDeduplicator: Prevents duplicate concurrent requests
- ResilientExecutor: Bounded retry with linear backoff on transient errors
- CachedGateway: Read-through / write-invalidate composition of the above
- ApiClient: REST client built on the same components
"""

from colsof.services.errors import (
    ServiceError,
    TransientIOError,
    RequestTimeoutError,
    RateLimitError,
    PermanentError,
    ExhaustedRetriesError,
    AcquisitionTimeoutError,
    PoolClosedError,
    is_transient_error,
)
from colsof.services.cache import CacheManager, CacheEntry, CacheResult, CacheStats
from colsof.services.deduplicator import RequestDeduplicator, DedupStats
from colsof.services.retry import ResilientExecutor, RetryPolicy, ExecutorStats
from colsof.services.envelope import Ok, Err, Result, decode_envelope
from colsof.services.read_through import (
    CachedGateway,
    ReadResult,
    invalidation_pattern,
    CASES_INVALIDATION,
    USERS_INVALIDATION,
    STATS_INVALIDATION,
)
from colsof.services.client import ApiClient

__all__ = [
    # Errors
    "ServiceError",
    "TransientIOError",
    "RequestTimeoutError",
    "RateLimitError",
    "PermanentError",
    "ExhaustedRetriesError",
    "AcquisitionTimeoutError",
    "PoolClosedError",
    "is_transient_error",
    # Cache
    "CacheManager",
    "CacheEntry",
    "CacheResult",
    "CacheStats",
    # Deduplicator
    "RequestDeduplicator",
    "DedupStats",
    # Retry
    "ResilientExecutor",
    "RetryPolicy",
    "ExecutorStats",
    # Envelope
    "Ok",
    "Err",
    "Result",
    "decode_envelope",
    # Read-through
    "CachedGateway",
    "ReadResult",
    "invalidation_pattern",
    "CASES_INVALIDATION",
    "USERS_INVALIDATION",
    "STATS_INVALIDATION",
    # Client
    "ApiClient",
]

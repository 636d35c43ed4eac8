"""
Service layer infrastructure - resilient access to the remote API.

Provides:
- Result: Success / Failure / Loading container returned by every operation
- ErrorKind: closed failure taxonomy and the classifier that produces it
- RetryPolicy: exponential backoff with jitter and Retry-After support
- CredentialManager: bearer snapshots with coalesced refresh
- TransportClient: HTTP execution combining the above
- CacheManager: LRU cache with TTL, staleness and prefix invalidation
"""

from twin_client.services.errors import (
    CredentialError,
    DecodeError,
    ErrorKind,
    ErrorTreatment,
    ServiceError,
)
from twin_client.services.result import LOADING, Failure, Loading, Result, Success
from twin_client.services.classifier import (
    TransportOutcome,
    classify,
    parse_retry_after,
    to_failure,
)
from twin_client.services.retry import RetryDecision, RetryPolicy
from twin_client.services.cancellation import CancellationToken
from twin_client.services.telemetry import AttemptEvent, log_attempt_event
from twin_client.services.deduplicator import RequestDeduplicator
from twin_client.services.credentials import (
    CallbackCredentialProvider,
    Credential,
    CredentialManager,
    CredentialProvider,
    StaticCredentialProvider,
)
from twin_client.services.transport import RawResponse, RequestSpec, TransportClient
from twin_client.services.cache import (
    CacheEntry,
    CacheManager,
    CacheStats,
    CacheStore,
    StoredRecord,
)

__all__ = [
    # Errors
    "ErrorKind",
    "ErrorTreatment",
    "ServiceError",
    "DecodeError",
    "CredentialError",
    # Result
    "Result",
    "Success",
    "Failure",
    "Loading",
    "LOADING",
    # Classifier
    "TransportOutcome",
    "classify",
    "to_failure",
    "parse_retry_after",
    # Retry
    "RetryPolicy",
    "RetryDecision",
    # Cancellation / telemetry
    "CancellationToken",
    "AttemptEvent",
    "log_attempt_event",
    # Deduplicator
    "RequestDeduplicator",
    # Credentials
    "Credential",
    "CredentialProvider",
    "CredentialManager",
    "StaticCredentialProvider",
    "CallbackCredentialProvider",
    # Transport
    "RequestSpec",
    "RawResponse",
    "TransportClient",
    # Cache
    "CacheEntry",
    "CacheManager",
    "CacheStats",
    "CacheStore",
    "StoredRecord",
]

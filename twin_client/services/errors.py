"""
Error taxonomy for the API access layer.

Every failure that leaves the transport or decoder is described by exactly
one ErrorKind. Exceptions below are only raised internally and are converted
to Failure values before crossing a component boundary.
"""

from enum import Enum


class ErrorTreatment(str, Enum):
    """How a caller is expected to present a failure."""

    REAUTHENTICATE = "reauthenticate"  # route to sign-in
    OFFLINE = "offline"  # retry affordance + offline indicator
    RETRY_LATER = "retry_later"
    GENERIC = "generic"  # generic error with diagnostic code
    SILENT = "silent"


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "notFound"
    BAD_REQUEST = "badRequest"
    RATE_LIMITED = "rateLimited"
    SERVER_ERROR = "serverError"
    DECODE_ERROR = "decodeError"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Whether the retry policy may re-issue a request failing this way.

        UNAUTHORIZED is handled by the credential refresh cycle, not by
        backoff, so it is not retryable here. UNKNOWN is retryable but the
        policy only allows it once.
        """
        return self in _RETRYABLE

    @property
    def is_transient(self) -> bool:
        """Failures where serving a stale cached value is appropriate."""
        return self in _TRANSIENT

    @property
    def treatment(self) -> ErrorTreatment:
        return _TREATMENTS[self]


_RETRYABLE = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.UNKNOWN,
    }
)

_TRANSIENT = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
    }
)

_TREATMENTS: dict[ErrorKind, ErrorTreatment] = {
    ErrorKind.UNAUTHORIZED: ErrorTreatment.REAUTHENTICATE,
    ErrorKind.NETWORK: ErrorTreatment.OFFLINE,
    ErrorKind.TIMEOUT: ErrorTreatment.OFFLINE,
    ErrorKind.RATE_LIMITED: ErrorTreatment.RETRY_LATER,
    ErrorKind.SERVER_ERROR: ErrorTreatment.RETRY_LATER,
    ErrorKind.DECODE_ERROR: ErrorTreatment.GENERIC,
    ErrorKind.BAD_REQUEST: ErrorTreatment.GENERIC,
    ErrorKind.UNKNOWN: ErrorTreatment.GENERIC,
    ErrorKind.FORBIDDEN: ErrorTreatment.GENERIC,
    ErrorKind.NOT_FOUND: ErrorTreatment.GENERIC,
    ErrorKind.CANCELLED: ErrorTreatment.SILENT,
}


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: ErrorKind | None = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)


class DecodeError(ServiceError):
    """Payload does not match the expected entity shape."""

    kind = ErrorKind.DECODE_ERROR


class CredentialError(ServiceError):
    """Credential could not be obtained or refreshed."""

    kind = ErrorKind.UNAUTHORIZED

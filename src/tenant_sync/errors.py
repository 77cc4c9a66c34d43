"""Error taxonomy and normalization for remote collaborator failures.

Remote services fail in many shapes: azure-core HTTP errors, transport
errors, plain Python exceptions raised by an adapter. Everything is
reduced to an ErrorRecord(kind, message) before it reaches the result
aggregator so retry decisions and summaries deal with one shape only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

# HTTP statuses worth another attempt (timeouts, throttling, server faults)
TRANSIENT_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class ErrorKind(str, Enum):
    """Normalized error categories."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ErrorRecord:
    """Normalized description of a failed remote call."""

    kind: ErrorKind
    message: str

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class RemoteError(Exception):
    """Base class for failures reported by a remote collaborator."""

    kind: ErrorKind = ErrorKind.PERMANENT


class TransientRemoteError(RemoteError):
    """Network, throttling or server-side failure that may succeed on retry."""

    kind = ErrorKind.TRANSIENT


class PermanentRemoteError(RemoteError):
    """Validation or permission failure. Never retried."""

    kind = ErrorKind.PERMANENT


class NotFoundError(RemoteError):
    """The addressed remote object does not exist."""

    kind = ErrorKind.NOT_FOUND


class TimeoutExceeded(Exception):
    """Run deadline reached. Signals early termination, not a failure."""

    pass


class RemoteOperationError(Exception):
    """Raised by the supervisor once a remote call is given up on.

    Carries the normalized record of the last failure and the number of
    attempts that were made.
    """

    def __init__(self, operation: str, record: ErrorRecord, attempts: int) -> None:
        super().__init__(f"{operation} failed after {attempts} attempt(s): {record}")
        self.operation = operation
        self.record = record
        self.attempts = attempts


class FatalListingError(Exception):
    """Initial remote listing failed. No plan can be computed for the run."""

    def __init__(self, what: str, record: ErrorRecord) -> None:
        super().__init__(f"Failed to list {what}: {record}")
        self.what = what
        self.record = record


def classify_error(exc: BaseException) -> ErrorRecord:
    """Normalize any exception raised by a collaborator into an ErrorRecord.

    Args:
        exc: Exception raised by a remote call.

    Returns:
        ErrorRecord with the error kind and a readable message.
    """
    message = str(exc) or type(exc).__name__

    if isinstance(exc, RemoteOperationError):
        return exc.record
    if isinstance(exc, RemoteError):
        return ErrorRecord(exc.kind, message)
    if isinstance(exc, TimeoutExceeded):
        return ErrorRecord(ErrorKind.TIMEOUT, message)

    # azure-core exceptions, most specific first
    if isinstance(exc, ResourceNotFoundError):
        return ErrorRecord(ErrorKind.NOT_FOUND, message)
    if isinstance(exc, ClientAuthenticationError):
        return ErrorRecord(ErrorKind.PERMANENT, message)
    if isinstance(exc, HttpResponseError):
        status = getattr(exc, "status_code", None)
        if status in TRANSIENT_HTTP_STATUSES:
            return ErrorRecord(ErrorKind.TRANSIENT, f"HTTP {status}: {message}")
        if status is not None:
            return ErrorRecord(ErrorKind.PERMANENT, f"HTTP {status}: {message}")
        return ErrorRecord(ErrorKind.PERMANENT, message)
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return ErrorRecord(ErrorKind.TRANSIENT, message)
    if isinstance(exc, AzureError):
        return ErrorRecord(ErrorKind.PERMANENT, message)

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorRecord(ErrorKind.TRANSIENT, message)

    return ErrorRecord(ErrorKind.PERMANENT, f"{type(exc).__name__}: {message}")

"""Tests for remote error classification."""

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from tenant_sync.errors import (
    ErrorKind,
    ErrorRecord,
    FatalListingError,
    NotFoundError,
    PermanentRemoteError,
    RemoteOperationError,
    TimeoutExceeded,
    TransientRemoteError,
    classify_error,
)


def http_error(status: int) -> HttpResponseError:
    error = HttpResponseError(message="request failed")
    error.status_code = status
    return error


class TestClassifyError:
    """Tests for classify_error."""

    def test_own_taxonomy(self) -> None:
        """Test that adapter errors keep their declared kind."""
        assert classify_error(TransientRemoteError("busy")).kind == ErrorKind.TRANSIENT
        assert classify_error(PermanentRemoteError("denied")).kind == ErrorKind.PERMANENT
        assert classify_error(NotFoundError("gone")).kind == ErrorKind.NOT_FOUND

    def test_throttling_is_transient(self) -> None:
        """Test that 429 and 5xx responses are retryable."""
        for status in (408, 429, 500, 503):
            record = classify_error(http_error(status))
            assert record.kind == ErrorKind.TRANSIENT
            assert record.message.startswith(f"HTTP {status}")

    def test_client_errors_are_permanent(self) -> None:
        """Test that 400 and 403 responses are not retried."""
        assert classify_error(http_error(400)).kind == ErrorKind.PERMANENT
        assert classify_error(http_error(403)).kind == ErrorKind.PERMANENT

    def test_azure_specific_errors(self) -> None:
        """Test azure-core subclasses."""
        assert classify_error(ResourceNotFoundError(message="nope")).kind == ErrorKind.NOT_FOUND
        assert classify_error(ClientAuthenticationError(message="token")).kind == ErrorKind.PERMANENT
        assert classify_error(ServiceRequestError(message="dns")).kind == ErrorKind.TRANSIENT

    def test_builtin_network_errors(self) -> None:
        """Test that timeouts and connection errors are transient."""
        assert classify_error(TimeoutError("slow")).kind == ErrorKind.TRANSIENT
        assert classify_error(ConnectionResetError("reset")).kind == ErrorKind.TRANSIENT

    def test_unknown_is_permanent(self) -> None:
        """Test that unknown exceptions are permanent and keep their type."""
        record = classify_error(ValueError("bad words"))
        assert record.kind == ErrorKind.PERMANENT
        assert record.message == "ValueError: bad words"

    def test_empty_message_uses_type(self) -> None:
        """Test that an exception without text still gets a reason."""
        assert classify_error(PermanentRemoteError()).message == "PermanentRemoteError"


class TestErrorRecords:
    """Tests for error record formatting."""

    def test_record_str(self) -> None:
        """Test the readable form of a record."""
        assert str(ErrorRecord(ErrorKind.PERMANENT, "denied")) == "permanent: denied"

    def test_operation_error_message(self) -> None:
        """Test that the supervisor error carries record and attempts."""
        error = RemoteOperationError("create X", ErrorRecord(ErrorKind.TRANSIENT, "busy"), 3)

        assert error.attempts == 3
        assert "after 3 attempt(s)" in str(error)
        assert classify_error(error) == error.record

    def test_timeout_signal(self) -> None:
        """Test that the deadline signal is classified as a timeout."""
        assert classify_error(TimeoutExceeded("deadline")).kind == ErrorKind.TIMEOUT

    def test_fatal_listing_message(self) -> None:
        """Test the fatal listing message."""
        error = FatalListingError("rules", ErrorRecord(ErrorKind.PERMANENT, "denied"))
        assert str(error) == "Failed to list rules: permanent: denied"

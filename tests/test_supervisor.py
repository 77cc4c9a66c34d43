"""Tests for retry and deadline supervision."""

import pytest
from azure.core.exceptions import HttpResponseError
from tenant_mock import FakeClock, RecordingSleep

from tenant_sync.errors import (
    ErrorKind,
    ErrorRecord,
    PermanentRemoteError,
    RemoteOperationError,
    TimeoutExceeded,
    TransientRemoteError,
)
from tenant_sync.supervisor import BackoffStrategy, Deadline, RetryPolicy, Supervisor


class Flaky:
    """Callable failing a given number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or TransientRemoteError("throttled")
        self.calls = 0

    def __call__(self, value: str = "ok") -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class TestDeadline:
    """Tests for Deadline."""

    def test_expiry(self) -> None:
        """Test that the deadline expires once the budget is spent."""
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)

        assert not deadline.expired
        assert deadline.remaining_seconds == 10

        clock.advance(10)
        assert deadline.expired
        assert deadline.remaining_seconds == 0.0

    def test_no_budget_never_expires(self) -> None:
        """Test that a None budget disables the deadline."""
        clock = FakeClock()
        deadline = Deadline(None, clock=clock)
        clock.advance(10**6)

        assert not deadline.expired
        assert deadline.remaining_seconds is None

    def test_check_raises_once_expired(self) -> None:
        """Test that check passes within budget and raises TimeoutExceeded after."""
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)

        clock.advance(9)
        deadline.check()

        clock.advance(1)
        with pytest.raises(TimeoutExceeded, match="deadline of 10s"):
            deadline.check()


class TestRetryPolicy:
    """Tests for RetryPolicy backoff."""

    def test_linear_backoff(self) -> None:
        """Test that linear waits grow by the step per attempt."""
        policy = RetryPolicy(max_attempts=3, backoff_seconds=2.0)
        assert [policy.wait_seconds(a) for a in (1, 2)] == [2.0, 4.0]

    def test_exponential_backoff_with_jitter(self) -> None:
        """Test that exponential waits double and add at most 20% jitter."""
        policy = RetryPolicy(backoff_seconds=2.0, strategy=BackoffStrategy.EXPONENTIAL)

        for attempt, base in ((1, 2.0), (2, 4.0), (3, 8.0)):
            wait = policy.wait_seconds(attempt)
            assert base <= wait <= base * 1.2


class TestSupervisor:
    """Tests for Supervisor.call."""

    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        """Test that a successful call returns its value without sleeping."""
        sleep = RecordingSleep()
        supervisor = Supervisor(Deadline(None), sleep=sleep)

        result = await supervisor.call("noop", Flaky(0), "value")

        assert result == "value"
        assert sleep.waits == []

    @pytest.mark.asyncio
    async def test_transient_retried_with_linear_backoff(self) -> None:
        """Test that transient failures are retried after 2s then 4s."""
        sleep = RecordingSleep()
        supervisor = Supervisor(Deadline(None), sleep=sleep)
        func = Flaky(2)

        result = await supervisor.call("read", func, policy=RetryPolicy(max_attempts=3))

        assert result == "ok"
        assert func.calls == 3
        assert sleep.waits == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self) -> None:
        """Test that the last transient error is raised after max attempts."""
        supervisor = Supervisor(Deadline(None), sleep=RecordingSleep())
        func = Flaky(5)

        with pytest.raises(RemoteOperationError) as exc_info:
            await supervisor.call("read", func, policy=RetryPolicy(max_attempts=3))

        assert func.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.record.kind == ErrorKind.TRANSIENT
        assert isinstance(exc_info.value.__cause__, TransientRemoteError)

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self) -> None:
        """Test that permanent failures fail on the first attempt."""
        sleep = RecordingSleep()
        supervisor = Supervisor(Deadline(None), sleep=sleep)
        func = Flaky(1, PermanentRemoteError("access denied"))

        with pytest.raises(RemoteOperationError) as exc_info:
            await supervisor.call("grant", func, policy=RetryPolicy(max_attempts=3))

        assert func.calls == 1
        assert sleep.waits == []
        assert exc_info.value.record.kind == ErrorKind.PERMANENT

    @pytest.mark.asyncio
    async def test_default_policy_is_single_attempt(self) -> None:
        """Test that calls without a policy are not retried."""
        supervisor = Supervisor(Deadline(None), sleep=RecordingSleep())
        func = Flaky(1)

        with pytest.raises(RemoteOperationError):
            await supervisor.call("grant", func)

        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_azure_throttling_retried(self) -> None:
        """Test that an azure-core 429 is classified transient and retried."""
        error = HttpResponseError(message="Too many requests")
        error.status_code = 429
        supervisor = Supervisor(Deadline(None), sleep=RecordingSleep())
        func = Flaky(1, error)

        assert await supervisor.call("list", func, policy=RetryPolicy(max_attempts=2)) == "ok"
        assert func.calls == 2

    @pytest.mark.asyncio
    async def test_no_retry_past_deadline(self) -> None:
        """Test that no backoff starts when it would outlast the deadline."""
        clock = FakeClock()
        deadline = Deadline(3, clock=clock)
        sleep = RecordingSleep(clock)
        supervisor = Supervisor(deadline, sleep=sleep)
        func = Flaky(5)

        with pytest.raises(RemoteOperationError) as exc_info:
            await supervisor.call("read", func, policy=RetryPolicy(max_attempts=3))

        # first wait (2s) fits in the 3s budget, the second (4s) does not
        assert sleep.waits == [2.0]
        assert func.calls == 2
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_custom_classifier(self) -> None:
        """Test that the injected classifier decides retryability."""
        def everything_transient(exc: BaseException) -> ErrorRecord:
            return ErrorRecord(ErrorKind.TRANSIENT, str(exc))

        supervisor = Supervisor(Deadline(None), classifier=everything_transient, sleep=RecordingSleep())
        func = Flaky(1, ValueError("odd"))

        assert await supervisor.call("x", func, policy=RetryPolicy(max_attempts=2)) == "ok"

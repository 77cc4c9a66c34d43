"""Retry and deadline supervision for remote calls.

Every remote call made by a reconciler goes through Supervisor.call():

- The blocking collaborator call runs in the default executor so the
  event loop stays free for other tenants.
- Failures are normalized with the classifier into an ErrorRecord.
- Only transient errors are retried, with backoff from the RetryPolicy.
- No retry sleep is started once the run deadline has passed.

Cancellation is cooperative: reconcilers call Deadline.check() at the
top of each item. An in-flight call is always allowed to finish.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import ErrorRecord, RemoteOperationError, TimeoutExceeded, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorRecord]
Clock = Callable[[], float]
Sleeper = Callable[[float], Any]


class Deadline:
    """Monotonic wall-clock budget for one run.

    A Deadline with budget None never expires.
    """

    def __init__(self, budget_seconds: float | None, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._budget = budget_seconds
        self._start = clock()

    @property
    def budget_seconds(self) -> float | None:
        return self._budget

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._start

    @property
    def remaining_seconds(self) -> float | None:
        if self._budget is None:
            return None
        return max(0.0, self._budget - self.elapsed_seconds)

    @property
    def expired(self) -> bool:
        return self._budget is not None and self.elapsed_seconds >= self._budget

    def check(self) -> None:
        """Raise TimeoutExceeded once the budget is spent."""
        if self.expired:
            raise TimeoutExceeded(
                f"Run deadline of {self._budget}s reached after {self.elapsed_seconds:.1f}s"
            )


class BackoffStrategy(str, Enum):
    """How the wait between attempts grows."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with backoff.

    LINEAR waits base * attempt seconds (2s, 4s, ...).
    EXPONENTIAL waits base * 2**(attempt - 1) plus up to 20% jitter.
    """

    max_attempts: int = 3
    backoff_seconds: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.LINEAR

    def wait_seconds(self, attempt: int) -> float:
        """Backoff after the given failed attempt (1-based)."""
        if self.strategy == BackoffStrategy.LINEAR:
            return self.backoff_seconds * attempt
        backoff = self.backoff_seconds * (2 ** (attempt - 1))
        return backoff + random.uniform(0, backoff * 0.2)

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, backoff_seconds=0.0)


class Supervisor:
    """Wraps remote calls with retry, backoff and deadline awareness."""

    def __init__(
        self,
        deadline: Deadline,
        *,
        classifier: Classifier = classify_error,
        sleep: Sleeper = asyncio.sleep,
        tenant_id: str = "",
    ) -> None:
        self._deadline = deadline
        self._classifier = classifier
        self._sleep = sleep
        self._tenant_id = tenant_id

    @property
    def deadline(self) -> Deadline:
        return self._deadline

    async def call(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        policy: RetryPolicy | None = None,
        **kwargs: Any,
    ) -> T:
        """Invoke a blocking remote call under the retry policy.

        Args:
            operation: Human-readable name for logging and error reports.
            func: Blocking collaborator method.
            *args: Positional arguments for func.
            policy: Retry policy; defaults to a single attempt.
            **kwargs: Keyword arguments for func.

        Returns:
            Whatever func returns.

        Raises:
            RemoteOperationError: When the call fails permanently, exhausts
                its attempts, or the deadline passes before a retry.
        """
        policy = policy or RetryPolicy.no_retry()
        loop = asyncio.get_running_loop()
        bound = functools.partial(func, *args, **kwargs)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await loop.run_in_executor(None, bound)
            except Exception as e:
                record = self._classifier(e)
                if not record.is_transient or attempt >= policy.max_attempts:
                    raise RemoteOperationError(operation, record, attempt) from e

                wait_time = policy.wait_seconds(attempt)
                remaining = self._deadline.remaining_seconds
                if self._deadline.expired or (remaining is not None and wait_time >= remaining):
                    logger.warning(
                        "Deadline reached, not retrying",
                        extra={
                            "tenant_id": self._tenant_id,
                            "operation": operation,
                            "attempt": attempt,
                            "error": record.message,
                        },
                    )
                    raise RemoteOperationError(operation, record, attempt) from e

            logger.warning(
                "Remote call failed, retrying",
                extra={
                    "tenant_id": self._tenant_id,
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "wait_seconds": wait_time,
                    "error": record.message,
                },
            )
            await self._sleep(wait_time)

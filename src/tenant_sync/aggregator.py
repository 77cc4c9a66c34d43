"""Per-run outcome accumulation.

A ResultAggregator belongs to exactly one run and is not thread-safe.
add_outcome() is its only mutator; summarize() freezes the counts into a
ReconciliationResult. Failed items always keep their reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger(__name__)

UNKNOWN_FAILURE_REASON = "unknown error"


class Outcome(str, Enum):
    """Final state of one reconciled item."""

    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemFailure:
    """A failed item and why it failed."""

    item: str
    reason: str


@dataclass
class ReconciliationResult:
    """Summary of one reconciliation run.

    Attributes:
        tenant_id: Tenant the run reconciled
        operation: "rules" or "grants"
        created / updated / removed / skipped / failed: Outcome counts
        failures: One entry per failed item, in processing order
        total: Items the run intended to process (None if never known)
        timed_out: The run deadline cut processing short
        error: Top-level failure that aborted the run before any item
        message: Human-readable summary line
    """

    tenant_id: str
    operation: str
    created: int = 0
    updated: int = 0
    removed: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[ItemFailure] = field(default_factory=list)
    total: int | None = None
    timed_out: bool = False
    error: str | None = None
    message: str = ""
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def attempted(self) -> int:
        """Items that reached a final outcome this run."""
        return self.created + self.updated + self.removed + self.skipped + self.failed

    @property
    def not_attempted(self) -> int:
        """Items left for the next run (deadline or abort)."""
        if self.total is None:
            return 0
        return max(0, self.total - self.attempted)

    @property
    def changed(self) -> int:
        return self.created + self.updated + self.removed

    @property
    def success(self) -> bool:
        """True when every intended item converged."""
        return self.error is None and self.failed == 0 and not self.timed_out

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class ResultAggregator:
    """Accumulates item outcomes for a single run."""

    def __init__(self, tenant_id: str, operation: str) -> None:
        self._tenant_id = tenant_id
        self._operation = operation
        self._start_time = datetime.now(UTC)
        self._counts: dict[Outcome, int] = {outcome: 0 for outcome in Outcome}
        self._failures: list[ItemFailure] = []

    def add_outcome(self, item: str, outcome: Outcome, reason: str | None = None) -> None:
        """Record the outcome of one item.

        Args:
            item: Item label (rule name, mailbox identity).
            outcome: Final state of the item.
            reason: Why the item failed or was skipped. Required in spirit
                for FAILED; a placeholder is stored when missing.
        """
        self._counts[outcome] += 1
        if outcome == Outcome.FAILED:
            self._failures.append(ItemFailure(item=item, reason=reason or UNKNOWN_FAILURE_REASON))

    def count(self, outcome: Outcome) -> int:
        return self._counts[outcome]

    @property
    def recorded(self) -> int:
        """Number of outcomes recorded so far."""
        return sum(self._counts.values())

    def summarize(
        self,
        *,
        total: int | None = None,
        timed_out: bool = False,
        error: str | None = None,
    ) -> ReconciliationResult:
        """Build the run result and its summary message.

        Args:
            total: Items the run intended to process.
            timed_out: Whether the deadline ended the run early.
            error: Top-level failure that aborted the run.
        """
        result = ReconciliationResult(
            tenant_id=self._tenant_id,
            operation=self._operation,
            created=self._counts[Outcome.CREATED],
            updated=self._counts[Outcome.UPDATED],
            removed=self._counts[Outcome.REMOVED],
            skipped=self._counts[Outcome.SKIPPED],
            failed=self._counts[Outcome.FAILED],
            failures=list(self._failures),
            total=total,
            timed_out=timed_out,
            error=error,
            start_time=self._start_time,
            end_time=datetime.now(UTC),
        )
        result.message = format_message(result)
        return result


def format_message(result: ReconciliationResult) -> str:
    """Render the one-line summary for a result."""
    head = f"{result.operation} for {result.tenant_id}"
    if result.error is not None:
        return f"{head}: aborted: {result.error}"

    counts = (
        f"{result.created} created, {result.updated} updated, {result.removed} removed, "
        f"{result.skipped} skipped, {result.failed} failed"
    )
    message = f"{head}: {counts}"
    if result.total is not None:
        message += f" ({result.attempted}/{result.total} attempted)"
    if result.timed_out:
        message += f"; deadline reached, {result.not_attempted} left for next run"
    return message


def log_result(result: ReconciliationResult) -> None:
    """Log a run result with structured counts."""
    extra = {
        "tenant_id": result.tenant_id,
        "operation": result.operation,
        "created_count": result.created,
        "updated_count": result.updated,
        "removed_count": result.removed,
        "skipped_count": result.skipped,
        "failed_count": result.failed,
        "total": result.total,
        "timed_out": result.timed_out,
        "duration_seconds": result.duration_seconds,
    }
    if result.error is not None:
        extra["error"] = result.error
        logger.error("Reconciliation aborted", extra=extra)
    elif result.failed or result.timed_out:
        logger.warning(result.message, extra=extra)
    else:
        logger.info(result.message, extra=extra)

"""Disclaimer rule reconciliation.

Keeps a tenant's transport rules in line with its display-name roster:

1. List every rule under the shared name prefix ONCE per run. The same
   snapshot serves the exception-rule decision and the shard plan, so a
   freshly created exception rule can never be missed by a stale second
   query.
2. Ensure the singleton exception rule exists at priority 0. A missing
   rule is created DISABLED and is never enabled by this code; an existing
   rule gets its match fields refreshed and its enabled flag left alone.
3. Allocate the roster into fixed-capacity shards, plan against the
   existing shard rules and apply the plan. Shard i gets priority i + 1 so
   the exception rule always short-circuits first.

Failure policy is best effort: one failed shard is recorded and the run
moves on to the next.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .aggregator import Outcome, ReconciliationResult, ResultAggregator, log_result
from .batching import allocate, normalize_desired
from .collaborators import RemoteDirectoryService, RemoteRuleObject, RuleSpec
from .config import DEFAULT_EXCEPTION_HEADER_NAME, DEFAULT_EXCEPTION_HEADER_VALUE, SyncConfig
from .errors import ErrorKind, FatalListingError, RemoteOperationError, TimeoutExceeded
from .planner import Plan, PlanAction, PlanEntry, build_plan, is_shard_name
from .supervisor import BackoffStrategy, RetryPolicy, Supervisor

logger = logging.getLogger(__name__)

EXCEPTION_PRIORITY = 0


class ExceptionAction(str, Enum):
    """What happened to the exception rule."""

    CREATED_DISABLED = "created-disabled"
    UPDATED = "updated"


@dataclass(frozen=True)
class RuleSnapshot:
    """Consistent view of the tenant's rules taken at the top of a run.

    Attributes:
        exceptions: Rules named like the exception rule (normally 0 or 1)
        shards: Rules under the shard prefix, exception rule excluded
    """

    exceptions: tuple[RemoteRuleObject, ...] = ()
    shards: tuple[RemoteRuleObject, ...] = ()

    @property
    def exception(self) -> RemoteRuleObject | None:
        """The exception rule to keep: lowest priority, then lowest id."""
        if not self.exceptions:
            return None
        return min(self.exceptions, key=lambda o: (o.priority, o.object_id))

    @property
    def duplicate_exceptions(self) -> list[RemoteRuleObject]:
        keep = self.exception
        return [o for o in self.exceptions if keep is not None and o.object_id != keep.object_id]


@dataclass
class RuleSyncReport:
    """Outcome of a full rule run."""

    result: ReconciliationResult
    exception_action: ExceptionAction | None = None
    plan: Plan = field(default_factory=Plan)


class RuleReconciler:
    """Reconciles disclaimer rule shards and the exception rule for one tenant."""

    def __init__(
        self,
        config: SyncConfig,
        directory: RemoteDirectoryService,
        supervisor: Supervisor,
        *,
        disclaimer: Any | None = None,
        header_match: tuple[str, str] = (DEFAULT_EXCEPTION_HEADER_NAME, DEFAULT_EXCEPTION_HEADER_VALUE),
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Validated run configuration.
            directory: Remote rule store for the tenant.
            supervisor: Retry/deadline supervisor shared by the run.
            disclaimer: Payload written to every shard.
            header_match: (header, value) condition of the exception rule.
        """
        self._config = config
        self._directory = directory
        self._supervisor = supervisor
        self._disclaimer = disclaimer
        self._header_match = header_match
        self._policy = RetryPolicy(
            max_attempts=config.mutation_attempts,
            backoff_seconds=config.mutation_backoff_base_seconds,
            strategy=BackoffStrategy.EXPONENTIAL,
        )

    @property
    def listing_pattern(self) -> str:
        """Wildcard pattern covering both shard names and the exception rule."""
        common = os.path.commonprefix([self._config.rule_prefix, self._config.exception_rule_name])
        return f"{common}*"

    async def fetch_snapshot(self) -> RuleSnapshot:
        """List the tenant's rules once and split them into exception and shards.

        Rules matched by the listing pattern that are neither the exception
        rule nor under the shard prefix belong to someone else and are
        left out of the snapshot.

        Raises:
            FatalListingError: If the listing cannot be obtained.
        """
        try:
            listing = await self._supervisor.call(
                "list rules",
                self._directory.list,
                self.listing_pattern,
                policy=self._policy,
            )
        except RemoteOperationError as e:
            raise FatalListingError("rules", e.record) from e

        exceptions: list[RemoteRuleObject] = []
        shards: list[RemoteRuleObject] = []
        for obj in listing or []:
            if obj.name == self._config.exception_rule_name:
                exceptions.append(obj)
            elif is_shard_name(obj.name, self._config.rule_prefix):
                shards.append(obj)

        logger.info(
            "Fetched rule snapshot",
            extra={
                "tenant_id": self._config.tenant_id,
                "pattern": self.listing_pattern,
                "listed": len(listing or []),
                "shards": len(shards),
                "exception_present": bool(exceptions),
            },
        )
        return RuleSnapshot(exceptions=tuple(exceptions), shards=tuple(shards))

    def plan(self, desired_names: Iterable[str | None], snapshot: RuleSnapshot) -> Plan:
        """Compute the shard plan for a roster against a snapshot."""
        desired = normalize_desired(desired_names)
        shards = allocate(desired, self._config.batch_capacity)
        return build_plan(
            shards,
            snapshot.shards,
            prefix=self._config.rule_prefix,
            disclaimer=self._disclaimer,
        )

    async def run(self, desired_names: Iterable[str | None]) -> RuleSyncReport:
        """Run a full rule reconciliation: snapshot, exception rule, shards."""
        aggregator = ResultAggregator(self._config.tenant_id, "rules")

        try:
            snapshot = await self.fetch_snapshot()
        except FatalListingError as e:
            logger.error(
                "Rule listing failed, aborting run",
                extra={"tenant_id": self._config.tenant_id, "error": str(e)},
            )
            return RuleSyncReport(result=aggregator.summarize(error=str(e)))

        exception_action = await self._reconcile_exception_into(snapshot, aggregator)
        plan = self.plan(desired_names, snapshot)
        timed_out = await self._apply_plan(plan, aggregator)

        total = len(plan) + 1 + len(snapshot.duplicate_exceptions)
        result = aggregator.summarize(total=total, timed_out=timed_out)
        log_result(result)
        return RuleSyncReport(result=result, exception_action=exception_action, plan=plan)

    async def reconcile_rules(
        self,
        desired_names: Iterable[str | None],
        snapshot: RuleSnapshot | None = None,
    ) -> ReconciliationResult:
        """Reconcile shard rules only.

        Args:
            desired_names: Display names that must be covered.
            snapshot: Snapshot already fetched this run; listed when omitted.
        """
        aggregator = ResultAggregator(self._config.tenant_id, "rules")
        if snapshot is None:
            try:
                snapshot = await self.fetch_snapshot()
            except FatalListingError as e:
                return aggregator.summarize(error=str(e))

        plan = self.plan(desired_names, snapshot)
        timed_out = await self._apply_plan(plan, aggregator)
        result = aggregator.summarize(total=len(plan), timed_out=timed_out)
        log_result(result)
        return result

    async def reconcile_exception(self, snapshot: RuleSnapshot) -> ExceptionAction:
        """Ensure the exception rule exists, using the run's snapshot.

        Never issues a second listing. A missing rule is created disabled;
        an existing rule has only its priority and header match refreshed.
        A rule that vanished between the listing and the update is created
        disabled like a missing one.

        Raises:
            RemoteOperationError: If the create or update fails.
        """
        existing = snapshot.exception
        name = self._config.exception_rule_name

        if existing is not None:
            # enabled stays None so the remote flag is never touched
            spec = RuleSpec(name=name, priority=EXCEPTION_PRIORITY, header_match=self._header_match)
            try:
                if not self._config.dry_run:
                    await self._supervisor.call(
                        f"update {name}",
                        self._directory.update,
                        existing.object_id,
                        spec,
                        policy=self._policy,
                    )
            except RemoteOperationError as e:
                if e.record.kind != ErrorKind.NOT_FOUND:
                    raise
                logger.warning(
                    "Exception rule vanished before update, creating instead",
                    extra={"tenant_id": self._config.tenant_id, "rule": name, "object_id": existing.object_id},
                )
            else:
                logger.info(
                    "Exception rule updated",
                    extra={
                        "tenant_id": self._config.tenant_id,
                        "rule": name,
                        "enabled": existing.enabled,
                        "dry_run": self._config.dry_run,
                    },
                )
                return ExceptionAction.UPDATED

        spec = RuleSpec(
            name=name,
            priority=EXCEPTION_PRIORITY,
            header_match=self._header_match,
            enabled=False,
        )
        if not self._config.dry_run:
            await self._supervisor.call(
                f"create {name}", self._directory.create, spec, policy=self._policy
            )
        logger.info(
            "Exception rule created disabled",
            extra={"tenant_id": self._config.tenant_id, "rule": name, "dry_run": self._config.dry_run},
        )
        return ExceptionAction.CREATED_DISABLED

    async def _reconcile_exception_into(
        self, snapshot: RuleSnapshot, aggregator: ResultAggregator
    ) -> ExceptionAction | None:
        name = self._config.exception_rule_name

        try:
            action = await self.reconcile_exception(snapshot)
        except RemoteOperationError as e:
            logger.error(
                "Exception rule reconciliation failed",
                extra={"tenant_id": self._config.tenant_id, "rule": name, "error": str(e.record)},
            )
            aggregator.add_outcome(name, Outcome.FAILED, str(e.record))
            return None

        if self._config.dry_run:
            aggregator.add_outcome(name, Outcome.SKIPPED, f"dry-run: would {action.value}")
        elif action == ExceptionAction.CREATED_DISABLED:
            aggregator.add_outcome(name, Outcome.CREATED)
        else:
            aggregator.add_outcome(name, Outcome.UPDATED)

        for duplicate in snapshot.duplicate_exceptions:
            await self._delete(duplicate, f"{name} (duplicate {duplicate.object_id})", aggregator)

        return action

    async def _apply_plan(self, plan: Plan, aggregator: ResultAggregator) -> bool:
        """Apply plan entries in order.

        Returns:
            True if the deadline stopped the loop before the plan finished.
        """
        for entry in plan:
            try:
                self._supervisor.deadline.check()
            except TimeoutExceeded as e:
                logger.warning(
                    "Run deadline reached, leaving remaining shards for next run",
                    extra={"tenant_id": self._config.tenant_id, "next_index": entry.index, "error": str(e)},
                )
                return True

            if entry.action == PlanAction.DELETE:
                assert entry.current is not None
                await self._delete(entry.current, entry.label, aggregator)
            elif entry.is_noop:
                logger.debug(
                    "Shard unchanged",
                    extra={"tenant_id": self._config.tenant_id, "rule": entry.label},
                )
                aggregator.add_outcome(entry.label, Outcome.SKIPPED, "unchanged")
            elif entry.action == PlanAction.UPDATE:
                await self._update(entry, aggregator)
            else:
                await self._create(entry, aggregator)

        return False

    async def _create(self, entry: PlanEntry, aggregator: ResultAggregator) -> None:
        assert entry.payload is not None
        if self._config.dry_run:
            aggregator.add_outcome(entry.label, Outcome.SKIPPED, "dry-run: would create")
            return

        try:
            await self._supervisor.call(
                f"create {entry.label}", self._directory.create, entry.payload, policy=self._policy
            )
        except RemoteOperationError as e:
            self._record_failure(entry.label, PlanAction.CREATE, e, aggregator)
            return

        logger.info(
            "Shard created",
            extra={
                "tenant_id": self._config.tenant_id,
                "rule": entry.label,
                "priority": entry.payload.priority,
                "members": len(entry.payload.member_words),
            },
        )
        aggregator.add_outcome(entry.label, Outcome.CREATED)

    async def _update(self, entry: PlanEntry, aggregator: ResultAggregator) -> None:
        assert entry.payload is not None and entry.current is not None
        if self._config.dry_run:
            aggregator.add_outcome(entry.label, Outcome.SKIPPED, "dry-run: would update")
            return

        try:
            await self._supervisor.call(
                f"update {entry.label}",
                self._directory.update,
                entry.current.object_id,
                entry.payload,
                policy=self._policy,
            )
        except RemoteOperationError as e:
            if e.record.kind == ErrorKind.NOT_FOUND:
                # Removed since the snapshot was taken; recreate it in place
                logger.warning(
                    "Shard vanished before update, creating instead",
                    extra={"tenant_id": self._config.tenant_id, "rule": entry.label},
                )
                await self._create(entry, aggregator)
                return
            self._record_failure(entry.label, PlanAction.UPDATE, e, aggregator)
            return

        logger.info(
            "Shard updated",
            extra={
                "tenant_id": self._config.tenant_id,
                "rule": entry.label,
                "previous_name": entry.current.name,
                "priority": entry.payload.priority,
                "members": len(entry.payload.member_words),
            },
        )
        aggregator.add_outcome(entry.label, Outcome.UPDATED)

    async def _delete(self, obj: RemoteRuleObject, label: str, aggregator: ResultAggregator) -> None:
        if self._config.dry_run:
            aggregator.add_outcome(label, Outcome.SKIPPED, "dry-run: would delete")
            return

        try:
            await self._supervisor.call(
                f"delete {label}", self._directory.delete, obj.object_id, policy=self._policy
            )
        except RemoteOperationError as e:
            if e.record.kind != ErrorKind.NOT_FOUND:
                self._record_failure(label, PlanAction.DELETE, e, aggregator)
                return
            # Already gone: the desired state holds

        logger.info(
            "Rule removed",
            extra={"tenant_id": self._config.tenant_id, "rule": label, "object_id": obj.object_id},
        )
        aggregator.add_outcome(label, Outcome.REMOVED)

    def _record_failure(
        self,
        label: str,
        action: PlanAction,
        error: RemoteOperationError,
        aggregator: ResultAggregator,
    ) -> None:
        logger.error(
            "Shard mutation failed",
            extra={
                "tenant_id": self._config.tenant_id,
                "rule": label,
                "action": action.value,
                "error_kind": error.record.kind.value,
                "attempts": error.attempts,
                "error": error.record.message,
            },
        )
        aggregator.add_outcome(label, Outcome.FAILED, f"{action.value}: {error.record}")


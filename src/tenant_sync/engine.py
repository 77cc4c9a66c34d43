"""Per-tenant run orchestration.

One TenantSyncEngine per tenant, one Deadline per run. Within a run the
rule and grant reconciliations execute sequentially because the remote
APIs are throttled per tenant. Parallelism only happens across tenants
(sync_tenants), and tenants never share mutable state.

Concurrent runs for the SAME tenant are not excluded here; the scheduler
must keep runs single-flight per tenant.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .collaborators import MailboxInventoryService, RemoteDirectoryService
from .config import DEFAULT_EXCEPTION_HEADER_NAME, DEFAULT_EXCEPTION_HEADER_VALUE, SyncConfig
from .errors import classify_error
from .models import GrantRequest, TenantSpec
from .permissions import PermissionReconciler, PermissionSyncReport
from .rules import RuleReconciler, RuleSyncReport
from .supervisor import Classifier, Clock, Deadline, Sleeper, Supervisor

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL_TENANTS = 4


@dataclass
class TenantReport:
    """Everything one tenant run produced."""

    tenant_id: str
    rules: RuleSyncReport | None = None
    grants: PermissionSyncReport | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        if self.error is not None:
            return False
        return all(
            part.result.success for part in (self.rules, self.grants) if part is not None
        )

    @property
    def messages(self) -> list[str]:
        lines = [part.result.message for part in (self.rules, self.grants) if part is not None]
        if self.error is not None:
            lines.append(f"{self.tenant_id}: {self.error}")
        return lines


@dataclass
class TenantJob:
    """Inputs for one tenant in a multi-tenant fan-out."""

    config: SyncConfig
    spec: TenantSpec
    directory: RemoteDirectoryService | None = None
    inventory: MailboxInventoryService | None = None
    tenant_filter: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


class TenantSyncEngine:
    """Runs rule and grant reconciliation for one tenant."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        directory: RemoteDirectoryService | None = None,
        inventory: MailboxInventoryService | None = None,
        classifier: Classifier = classify_error,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Validated configuration for this tenant.
            directory: Rule store; rule reconciliation is skipped without it.
            inventory: Mailbox store; grant reconciliation is skipped without it.
            classifier: Error classifier of the collaborators.
            clock: Monotonic clock used for the run deadline.
            sleep: Coroutine used for retry backoff.
        """
        self._config = config
        self._directory = directory
        self._inventory = inventory
        self._classifier = classifier
        self._clock = clock
        self._sleep = sleep

    @property
    def config(self) -> SyncConfig:
        return self._config

    def new_supervisor(self) -> Supervisor:
        """Fresh supervisor with a fresh deadline, one per run."""
        deadline = Deadline(self._config.effective_deadline_seconds, clock=self._clock)
        return Supervisor(
            deadline,
            classifier=self._classifier,
            sleep=self._sleep,
            tenant_id=self._config.tenant_id,
        )

    async def run(
        self,
        *,
        roster: Iterable[str | None] | None = None,
        grant: GrantRequest | None = None,
        disclaimer: Any | None = None,
        header_match: tuple[str, str] = (DEFAULT_EXCEPTION_HEADER_NAME, DEFAULT_EXCEPTION_HEADER_VALUE),
        tenant_filter: str | None = None,
    ) -> TenantReport:
        """Execute one reconciliation run.

        Args:
            roster: Display names the disclaimer rules must cover.
            grant: Delegated access every qualifying mailbox must grant.
            disclaimer: Payload written to every rule shard.
            header_match: Exception rule header condition.
            tenant_filter: Server-side mailbox listing filter.
        """
        supervisor = self.new_supervisor()
        report = TenantReport(tenant_id=self._config.tenant_id)

        logger.info(
            "Starting tenant run",
            extra={
                "tenant_id": self._config.tenant_id,
                "rules": roster is not None and self._directory is not None,
                "grants": grant is not None and self._inventory is not None,
                "deadline_seconds": self._config.effective_deadline_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        if roster is not None and self._directory is not None:
            rules = RuleReconciler(
                self._config,
                self._directory,
                supervisor,
                disclaimer=disclaimer,
                header_match=header_match,
            )
            report.rules = await rules.run(roster)

        if grant is not None and self._inventory is not None:
            permissions = PermissionReconciler(self._config, self._inventory, supervisor)
            report.grants = await permissions.apply(grant, tenant_filter=tenant_filter)

        return report

    async def run_spec(self, spec: TenantSpec, tenant_filter: str | None = None) -> TenantReport:
        """Execute a run described by a tenant spec."""
        return await self.run(
            roster=spec.roster if spec.disclaimer is not None else None,
            grant=spec.grant,
            disclaimer=spec.disclaimer_payload,
            header_match=spec.exception.header_match,
            tenant_filter=tenant_filter,
        )


async def sync_tenants(
    jobs: Sequence[TenantJob],
    max_parallel: int = DEFAULT_MAX_PARALLEL_TENANTS,
) -> list[TenantReport]:
    """Run several tenants concurrently, each with its own engine.

    A tenant that blows up is reported with an error; other tenants are
    unaffected. Reports are returned in job order.
    """
    if max_parallel < 1:
        raise ValueError(f"max_parallel must be positive: {max_parallel}")

    semaphore = asyncio.Semaphore(max_parallel)

    async def run_one(job: TenantJob) -> TenantReport:
        async with semaphore:
            engine = TenantSyncEngine(
                job.config,
                directory=job.directory,
                inventory=job.inventory,
                **job.options,
            )
            try:
                return await engine.run_spec(job.spec, tenant_filter=job.tenant_filter)
            except Exception as e:
                logger.exception(
                    "Tenant run failed unexpectedly",
                    extra={"tenant_id": job.config.tenant_id, "error": str(e)},
                )
                return TenantReport(tenant_id=job.config.tenant_id, error=str(e))

    return list(await asyncio.gather(*(run_one(job) for job in jobs)))

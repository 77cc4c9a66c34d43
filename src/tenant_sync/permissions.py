"""Delegated mailbox permission reconciliation.

Per mailbox, within a single sequential run:

    Pending -> CheckingExisting -> Skip
                                -> Granting -> Success | Failed

- The existing-permission read is retried on transient errors with linear
  backoff (step * attempt seconds); a read that still fails marks the
  mailbox Failed.
- Grants are not retried. SendAs goes through its own remote operation;
  it and the mailbox-level grant are attempted independently.
- The run deadline is checked at the top of every mailbox. Mailboxes not
  reached are counted as not attempted and picked up by the next run.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .aggregator import Outcome, ReconciliationResult, ResultAggregator, log_result
from .collaborators import (
    SEND_AS_CLASS_RIGHTS,
    AccessRight,
    Mailbox,
    MailboxInventoryService,
    PermissionEntry,
)
from .config import SyncConfig
from .errors import FatalListingError, RemoteOperationError, TimeoutExceeded
from .models import GrantRequest
from .supervisor import BackoffStrategy, RetryPolicy, Supervisor

logger = logging.getLogger(__name__)


class GrantState(str, Enum):
    """Per-mailbox reconciliation states."""

    PENDING = "pending"
    CHECKING_EXISTING = "checking-existing"
    SKIP = "skip"
    GRANTING = "granting"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PermissionSyncReport:
    """Outcome of a grant run.

    Attributes:
        result: Aggregated counts and failure reasons
        states: Final state per mailbox; unreached mailboxes stay PENDING
    """

    result: ReconciliationResult
    states: dict[str, GrantState] = field(default_factory=dict)

    @property
    def pending(self) -> list[str]:
        return [m for m, s in self.states.items() if s == GrantState.PENDING]


def _split_rights(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, Sequence):
        parts: list[str] = []
        for item in value:
            parts.extend(_split_rights(item))
        return tuple(parts)
    return (str(value),)


def _entry_from_mapping(record: Mapping[str, Any], grantee: str) -> PermissionEntry:
    who = record.get("User") or record.get("Trustee") or record.get("grantee") or grantee
    rights = record.get("AccessRights", record.get("access_rights", record.get("rights")))
    return PermissionEntry(
        grantee=str(who),
        access_rights=_split_rights(rights),
        deny=bool(record.get("Deny", record.get("deny", False))),
        inherited=bool(record.get("IsInherited", record.get("inherited", False))),
    )


def normalize_grants(raw: Any, grantee: str) -> list[PermissionEntry]:
    """Normalize an existing-permission read into a list of entries.

    The inventory may answer with nothing, one record or many records, and
    a record may be a PermissionEntry, a mapping (PowerShell-style keys
    User/Trustee, AccessRights, Deny, IsInherited) or a bare rights string.
    Every shape comes out as a list of zero or more PermissionEntry.
    """
    if raw is None:
        return []
    if isinstance(raw, PermissionEntry):
        return [raw]
    if isinstance(raw, Mapping):
        return [_entry_from_mapping(raw, grantee)]
    if isinstance(raw, (str, AccessRight)):
        return [PermissionEntry(grantee=grantee, access_rights=_split_rights(str(raw)))]
    if isinstance(raw, Sequence):
        entries: list[PermissionEntry] = []
        for record in raw:
            entries.extend(normalize_grants(record, grantee))
        return entries
    raise TypeError(f"Unsupported permission record: {type(raw).__name__}")


def granted_rights(entries: Sequence[PermissionEntry], grantee: str) -> set[AccessRight]:
    """Rights explicitly allowed to `grantee` by the given entries.

    Deny and inherited entries do not count; unmanaged rights are ignored.
    """
    rights: set[AccessRight] = set()
    for entry in entries:
        if entry.deny or entry.inherited:
            continue
        if entry.grantee and entry.grantee.lower() != grantee.lower():
            continue
        for name in entry.access_rights:
            right = AccessRight.parse(name)
            if right is not None:
                rights.add(right)
    return rights


class PermissionReconciler:
    """Applies one grant request to every qualifying mailbox of a tenant."""

    def __init__(
        self,
        config: SyncConfig,
        inventory: MailboxInventoryService,
        supervisor: Supervisor,
    ) -> None:
        self._config = config
        self._inventory = inventory
        self._supervisor = supervisor
        self._read_policy = RetryPolicy(
            max_attempts=config.read_attempts,
            backoff_seconds=config.read_backoff_step_seconds,
            strategy=BackoffStrategy.LINEAR,
        )

    def qualifying(self, mailboxes: Sequence[Mailbox]) -> list[Mailbox]:
        """Apply the inclusion predicate, dedupe by identity, order by identity."""
        mailbox_filter = self._config.mailbox_filter
        selected: dict[str, Mailbox] = {}
        for mailbox in mailboxes:
            if mailbox_filter.matches(mailbox.recipient_type, mailbox.alias):
                selected.setdefault(mailbox.identity.lower(), mailbox)
        return [selected[key] for key in sorted(selected)]

    async def reconcile_grants(
        self,
        grantee: str,
        rights: Sequence[AccessRight | str],
        automap: bool = True,
        tenant_filter: str | None = None,
    ) -> PermissionSyncReport:
        """Grant `rights` to `grantee` on every qualifying mailbox.

        Args:
            grantee: Email address receiving the delegated access.
            rights: Requested rights (FullAccess, SendAs, SendOnBehalf, ReadPermission).
            automap: Whether Outlook should auto-mount FullAccess mailboxes.
            tenant_filter: Server-side filter passed to the mailbox listing.

        Raises:
            pydantic.ValidationError: If grantee or rights are malformed.
        """
        request = GrantRequest(grantee=grantee, rights=list(rights), automap=automap)
        return await self.apply(request, tenant_filter=tenant_filter)

    async def apply(
        self, request: GrantRequest, tenant_filter: str | None = None
    ) -> PermissionSyncReport:
        """Run the grant reconciliation for a validated request."""
        aggregator = ResultAggregator(self._config.tenant_id, "grants")

        try:
            listing = await self._supervisor.call(
                "list mailboxes",
                self._inventory.list_mailboxes,
                tenant_filter,
                policy=self._read_policy,
            )
        except RemoteOperationError as e:
            fatal = FatalListingError("mailboxes", e.record)
            result = aggregator.summarize(error=str(fatal))
            log_result(result)
            return PermissionSyncReport(result=result)

        mailboxes = self.qualifying(listing or [])
        states = {m.identity: GrantState.PENDING for m in mailboxes}

        logger.info(
            "Reconciling mailbox grants",
            extra={
                "tenant_id": self._config.tenant_id,
                "grantee": request.grantee,
                "rights": [r.value for r in request.rights],
                "listed": len(listing or []),
                "qualifying": len(mailboxes),
            },
        )

        timed_out = False
        try:
            for mailbox in mailboxes:
                self._supervisor.deadline.check()
                states[mailbox.identity] = await self._reconcile_mailbox(mailbox, request, aggregator)
        except TimeoutExceeded as e:
            timed_out = True
            logger.warning(
                "Run deadline reached, leaving remaining mailboxes for next run",
                extra={
                    "tenant_id": self._config.tenant_id,
                    "remaining_mailboxes": len(mailboxes) - aggregator.recorded,
                    "error": str(e),
                },
            )

        result = aggregator.summarize(total=len(mailboxes), timed_out=timed_out)
        log_result(result)
        return PermissionSyncReport(result=result, states=states)

    async def _reconcile_mailbox(
        self, mailbox: Mailbox, request: GrantRequest, aggregator: ResultAggregator
    ) -> GrantState:
        identity = mailbox.identity
        log_extra = {"tenant_id": self._config.tenant_id, "mailbox": identity, "grantee": request.grantee}

        logger.debug("Checking existing permissions", extra={**log_extra, "state": GrantState.CHECKING_EXISTING.value})
        try:
            raw = await self._supervisor.call(
                f"read permissions on {identity}",
                self._inventory.list_grants,
                identity,
                request.grantee,
                policy=self._read_policy,
            )
            present = granted_rights(normalize_grants(raw, request.grantee), request.grantee)
        except RemoteOperationError as e:
            logger.error(
                "Permission read failed",
                extra={**log_extra, "attempts": e.attempts, "error": str(e.record)},
            )
            aggregator.add_outcome(identity, Outcome.FAILED, f"read permissions: {e.record}")
            return GrantState.FAILED
        except TypeError as e:
            logger.error("Unreadable permission records", extra={**log_extra, "error": str(e)})
            aggregator.add_outcome(identity, Outcome.FAILED, f"read permissions: {e}")
            return GrantState.FAILED

        missing = [r for r in request.rights if r not in present]
        if not missing:
            logger.debug("Mailbox already compliant", extra={**log_extra, "state": GrantState.SKIP.value})
            aggregator.add_outcome(identity, Outcome.SKIPPED, "already compliant")
            return GrantState.SKIP

        if self._config.dry_run:
            names = ", ".join(r.value for r in missing)
            aggregator.add_outcome(identity, Outcome.SKIPPED, f"dry-run: would grant {names}")
            return GrantState.SKIP

        logger.debug("Granting", extra={**log_extra, "state": GrantState.GRANTING.value})
        errors: list[str] = []

        mailbox_rights = [r for r in missing if r not in SEND_AS_CLASS_RIGHTS]
        if mailbox_rights:
            try:
                await self._supervisor.call(
                    f"grant {'/'.join(r.value for r in mailbox_rights)} on {identity}",
                    self._inventory.grant,
                    identity,
                    request.grantee,
                    mailbox_rights,
                    request.automap,
                )
            except RemoteOperationError as e:
                errors.append(f"grant {'/'.join(r.value for r in mailbox_rights)}: {e.record}")

        if any(r in SEND_AS_CLASS_RIGHTS for r in missing):
            try:
                await self._supervisor.call(
                    f"grant SendAs on {identity}",
                    self._inventory.grant_send_as,
                    identity,
                    request.grantee,
                )
            except RemoteOperationError as e:
                errors.append(f"grant SendAs: {e.record}")

        if errors:
            reason = "; ".join(errors)
            logger.error("Grant failed", extra={**log_extra, "error": reason})
            aggregator.add_outcome(identity, Outcome.FAILED, reason)
            return GrantState.FAILED

        logger.info(
            "Permissions granted",
            extra={**log_extra, "rights": [r.value for r in missing], "automap": request.automap},
        )
        already = request.right_set & present
        aggregator.add_outcome(identity, Outcome.UPDATED if already else Outcome.CREATED)
        return GrantState.SUCCESS


"""Remote collaborator contracts.

The engine talks to two services it does not own:

- RemoteDirectoryService: enumerate/create/update/delete named transport
  rule objects.
- MailboxInventoryService: enumerate mailboxes, read and apply delegated
  permission grants.

Both are blocking from the engine's point of view. Adapters (Exchange
Online PowerShell, Graph, a test double) implement these protocols and
raise either the taxonomy in errors.py or azure-core exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class AccessRight(str, Enum):
    """Delegated mailbox rights that can be requested."""

    FULL_ACCESS = "FullAccess"
    SEND_AS = "SendAs"
    SEND_ON_BEHALF = "SendOnBehalf"
    READ_PERMISSION = "ReadPermission"

    @classmethod
    def parse(cls, value: str) -> AccessRight | None:
        """Parse a right name case-insensitively.

        Returns None for rights this engine does not manage
        (e.g. ChangeOwner, DeleteItem).
        """
        key = value.strip().lower().replace("-", "").replace("_", "")
        return _RIGHT_ALIASES.get(key)


_RIGHT_ALIASES: dict[str, AccessRight] = {
    "fullaccess": AccessRight.FULL_ACCESS,
    "sendas": AccessRight.SEND_AS,
    "sendonbehalf": AccessRight.SEND_ON_BEHALF,
    "sendonbehalfof": AccessRight.SEND_ON_BEHALF,
    "readpermission": AccessRight.READ_PERMISSION,
}

# Rights applied through the recipient-permission operation rather than
# the mailbox-permission operation
SEND_AS_CLASS_RIGHTS = frozenset({AccessRight.SEND_AS})


@dataclass(frozen=True)
class RuleSpec:
    """Desired state written to a rule object.

    Fields left as None are not sent to the remote service. In particular
    `enabled` is only ever set on create; updates never touch it.
    """

    name: str
    priority: int
    member_words: tuple[str, ...] = ()
    disclaimer: Any | None = None
    header_match: tuple[str, str] | None = None
    enabled: bool | None = None


@dataclass(frozen=True)
class RemoteRuleObject:
    """A rule object as returned by the directory listing.

    Attributes:
        object_id: Stable remote identity (survives renames)
        name: Display name, prefix plus 1-based sequence number for shards
        priority: Evaluation order, lower first
        member_words: Words matched against the sender display name
        disclaimer: Opaque disclaimer payload, identical across shards
        header_match: (header name, value) condition for the exception rule
        enabled: Whether the rule is active
    """

    object_id: str
    name: str
    priority: int
    member_words: tuple[str, ...] = ()
    disclaimer: Any | None = None
    header_match: tuple[str, str] | None = None
    enabled: bool = True


class RemoteDirectoryService(Protocol):
    """Transport rule store for one tenant."""

    def list(self, name_pattern: str) -> list[RemoteRuleObject]:
        """Return every rule whose name matches the wildcard pattern."""
        ...

    def create(self, spec: RuleSpec) -> RemoteRuleObject:
        ...

    def update(self, object_id: str, spec: RuleSpec) -> RemoteRuleObject:
        ...

    def delete(self, object_id: str) -> None:
        ...


@dataclass(frozen=True)
class Mailbox:
    """A mailbox from the tenant inventory."""

    identity: str
    alias: str
    recipient_type: str = "UserMailbox"
    display_name: str = ""


@dataclass(frozen=True)
class PermissionEntry:
    """One existing permission record for a grantee on a mailbox.

    `access_rights` may hold rights this engine does not manage; they are
    ignored when checking compliance.
    """

    grantee: str
    access_rights: tuple[str, ...] = field(default_factory=tuple)
    deny: bool = False
    inherited: bool = False


class MailboxInventoryService(Protocol):
    """Mailbox and delegated permission store for one tenant."""

    def list_mailboxes(self, tenant_filter: str | None = None) -> list[Mailbox]:
        """Return mailboxes, optionally narrowed by a server-side filter."""
        ...

    def list_grants(self, mailbox: str, grantee: str) -> Any:
        """Return existing permissions of `grantee` on `mailbox`.

        The shape is not guaranteed: None, a single record or a sequence
        of records. Callers normalize with permissions.normalize_grants().
        """
        ...

    def grant(
        self,
        mailbox: str,
        grantee: str,
        rights: list[AccessRight],
        automap: bool,
    ) -> None:
        """Grant mailbox-level rights (FullAccess, ReadPermission, SendOnBehalf)."""
        ...

    def grant_send_as(self, mailbox: str, grantee: str) -> None:
        """Grant the SendAs recipient permission."""
        ...

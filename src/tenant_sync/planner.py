"""Diff planner: desired shards x current rule objects -> ordered plan.

DESIGN:
- Index-aligned: the i-th desired shard is matched with the i-th existing
  shard object (existing objects ordered by their numeric name suffix).
- Identity reuse: a matched pair becomes an Update that renames and
  repopulates the existing object in place, so remote object identity is
  preserved and no create/delete churn shows up in the audit log.
- Surplus existing objects become Deletes, surplus shards become Creates.
- Objects without a parsable suffix sort last and are overwritten or
  removed like any other surplus object.

The planner is pure: it never talks to the remote service.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .batching import Shard
from .collaborators import RemoteRuleObject, RuleSpec

_SUFFIX_PATTERN = re.compile(r"(\d+)\s*$")


class PlanAction(str, Enum):
    """Operations the rule reconciler can apply."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class PlanEntry:
    """One step of a plan.

    Attributes:
        index: 0-based shard position
        action: Create, Update or Delete
        payload: Desired rule state (None for Delete)
        current: Existing object being updated or deleted (None for Create)
    """

    index: int
    action: PlanAction
    payload: RuleSpec | None = None
    current: RemoteRuleObject | None = None

    @property
    def is_noop(self) -> bool:
        """True for an Update whose target already holds the desired state."""
        if self.action != PlanAction.UPDATE or self.payload is None or self.current is None:
            return False
        return (
            self.current.name == self.payload.name
            and self.current.priority == self.payload.priority
            and tuple(self.current.member_words) == self.payload.member_words
            and self.current.disclaimer == self.payload.disclaimer
        )

    @property
    def label(self) -> str:
        """Human-readable item name for logs and summaries."""
        if self.payload is not None:
            return self.payload.name
        if self.current is not None:
            return self.current.name
        return f"shard[{self.index}]"


@dataclass
class Plan:
    """Ordered sequence of plan entries."""

    entries: list[PlanEntry] = field(default_factory=list)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def of(self, action: PlanAction) -> list[PlanEntry]:
        """Entries with the given action, in plan order."""
        return [e for e in self.entries if e.action == action]

    @property
    def creates(self) -> int:
        return len(self.of(PlanAction.CREATE))

    @property
    def updates(self) -> int:
        return len(self.of(PlanAction.UPDATE))

    @property
    def deletes(self) -> int:
        return len(self.of(PlanAction.DELETE))

    @property
    def changes(self) -> int:
        """Entries that would issue a remote mutation."""
        return sum(1 for e in self.entries if not e.is_noop)


def shard_name(prefix: str, sequence_number: int) -> str:
    """Remote name of a shard: prefix plus 1-based sequence number."""
    return f"{prefix} {sequence_number}"


def is_shard_name(name: str, prefix: str) -> bool:
    """Whether a rule name belongs to the shard family of prefix.

    The prefix must be followed by whitespace, digits only, or nothing, so
    "Disclaimer 2" is a shard of "Disclaimer" while "Disclaimers VIP" is not.
    """
    if not name.startswith(prefix):
        return False
    rest = name[len(prefix) :]
    return rest == "" or rest[0].isspace() or rest.isdigit()


def parse_sequence_suffix(name: str) -> int | None:
    """Extract the trailing sequence number from a rule name.

    Returns:
        The number, or None when the name has no numeric suffix.
    """
    match = _SUFFIX_PATTERN.search(name)
    if match is None:
        return None
    return int(match.group(1))


def order_existing(objects: Sequence[RemoteRuleObject]) -> list[RemoteRuleObject]:
    """Order existing shard objects for index alignment.

    Numbered objects come first by sequence number; unnumbered stragglers
    last. Ties (duplicate numbers) fall back to name then object id so the
    order is deterministic.
    """

    def sort_key(obj: RemoteRuleObject) -> tuple[int, int, str, str]:
        suffix = parse_sequence_suffix(obj.name)
        if suffix is None:
            return (1, 0, obj.name, obj.object_id)
        return (0, suffix, obj.name, obj.object_id)

    return sorted(objects, key=sort_key)


def build_plan(
    shards: Sequence[Shard],
    current: Sequence[RemoteRuleObject],
    *,
    prefix: str,
    disclaimer: Any | None = None,
) -> Plan:
    """Compute the plan that makes `current` match `shards`.

    Args:
        shards: Allocated desired shards, index order.
        current: Existing shard objects (exception rule excluded).
        prefix: Shard name prefix.
        disclaimer: Payload written to every shard.

    Returns:
        Plan with one entry per index in 0..max(len(shards), len(current)) - 1.
    """
    existing = order_existing(current)
    plan = Plan()

    for i in range(max(len(shards), len(existing))):
        shard = shards[i] if i < len(shards) else None
        obj = existing[i] if i < len(existing) else None

        if shard is None:
            plan.entries.append(PlanEntry(index=i, action=PlanAction.DELETE, current=obj))
            continue

        payload = RuleSpec(
            name=shard_name(prefix, shard.sequence_number),
            priority=shard.priority,
            member_words=shard.members,
            disclaimer=disclaimer,
        )
        if obj is None:
            plan.entries.append(PlanEntry(index=i, action=PlanAction.CREATE, payload=payload))
        else:
            plan.entries.append(
                PlanEntry(index=i, action=PlanAction.UPDATE, payload=payload, current=obj)
            )

    return plan

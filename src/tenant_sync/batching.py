"""Desired-set normalization and fixed-capacity shard allocation.

The remote rule store caps the number of match words per rule, so the
desired set of display names is split across numbered rule shards. The
allocation must be a pure function of the roster: the same names always
land in the same shard, whatever order the roster was read in.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Shard:
    """One capacity-bounded slice of the desired set.

    Attributes:
        index: 0-based position; the remote sequence number is index + 1
        members: Display names in this shard, in desired-set order
    """

    index: int
    members: tuple[str, ...]

    @property
    def sequence_number(self) -> int:
        return self.index + 1

    @property
    def priority(self) -> int:
        # Priority 0 belongs to the exception rule
        return self.index + 1


def normalize_desired(items: Iterable[str | None]) -> list[str]:
    """Deduplicate and order the desired set.

    Blank entries are dropped and surrounding whitespace is trimmed. The
    result is sorted lexicographically so batch assignment is stable
    across runs over an unchanged roster.
    """
    unique = {item.strip() for item in items if item and item.strip()}
    return sorted(unique)


def allocate(desired: list[str], capacity: int) -> list[Shard]:
    """Partition an ordered desired sequence into shards.

    Shard i holds desired[i*capacity : (i+1)*capacity].

    Args:
        desired: Normalized desired sequence (see normalize_desired).
        capacity: Maximum members per shard.

    Raises:
        ValueError: If capacity is not positive.
    """
    if capacity < 1:
        raise ValueError(f"capacity must be positive: {capacity}")

    shards = [
        Shard(index=i, members=tuple(desired[start : start + capacity]))
        for i, start in enumerate(range(0, len(desired), capacity))
    ]

    logger.debug(
        "Allocated shards",
        extra={"desired_count": len(desired), "capacity": capacity, "shard_count": len(shards)},
    )
    return shards

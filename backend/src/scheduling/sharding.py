"""
Deterministic shard partitioning.

Units are split into blocks first: each serial group is one block placed
at its first member's declaration position, every independent unit is a
block of one. Shard ``i`` of ``T`` then owns the unit offsets
``[from_i, to_i)`` of an even contiguous split, and a block belongs to the
shard whose range contains the block's first offset. The same units and
shard total always yield the same assignment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from testorch.errors import ConfigurationError
from testorch.units.models import TestUnit

logger = structlog.get_logger(__name__)


class Shard(BaseModel):
    """One disjoint slice of the unit set."""

    model_config = ConfigDict(frozen=True)

    shard_index: int = Field(ge=1)
    """1-based shard index."""

    shard_total: int = Field(ge=1)
    """Total number of shards."""

    unit_ids: tuple[str, ...] = ()
    """Unit ids assigned to this shard, in declaration order."""

    @model_validator(mode="after")
    def validate_index(self) -> Shard:
        """Ensure the index lies within the total."""
        if self.shard_index > self.shard_total:
            raise ValueError("shard_index cannot exceed shard_total")
        return self

    @property
    def is_empty(self) -> bool:
        """Check whether no units were assigned."""
        return not self.unit_ids

    def __len__(self) -> int:
        return len(self.unit_ids)


@dataclass(frozen=True, slots=True)
class UnitBlock:
    """Indivisible run of units: a serial group or a single unit."""

    group_id: str | None
    units: tuple[TestUnit, ...]

    @property
    def size(self) -> int:
        return len(self.units)


def build_blocks(units: Sequence[TestUnit]) -> list[UnitBlock]:
    """
    Group units into indivisible blocks, preserving declaration order.

    Members of a serial group are gathered into the block created at the
    group's first member, in their declared order.
    """
    blocks: list[UnitBlock] = []
    group_members: dict[str, list[TestUnit]] = {}
    order: list[tuple[str | None, TestUnit | None]] = []

    for unit in units:
        if unit.group_id is None:
            order.append((None, unit))
            continue
        if unit.group_id not in group_members:
            group_members[unit.group_id] = []
            order.append((unit.group_id, None))
        group_members[unit.group_id].append(unit)

    for group_id, unit in order:
        if group_id is None and unit is not None:
            blocks.append(UnitBlock(group_id=None, units=(unit,)))
        elif group_id is not None:
            blocks.append(UnitBlock(group_id=group_id, units=tuple(group_members[group_id])))

    return blocks


def shard_range(total: int, shard_position: int, shard_total: int) -> tuple[int, int]:
    """
    Unit offset range ``[from, to)`` owned by a 0-based shard position.

    The first ``total % shard_total`` shards get one extra unit.
    """
    size = total // shard_total
    extra = total - size * shard_total
    start = size * shard_position + min(extra, shard_position)
    end = start + size + (1 if shard_position < extra else 0)
    return start, end


def partition(units: Sequence[TestUnit], shard_total: int) -> list[Shard]:
    """
    Split units into ``shard_total`` deterministic shards.

    Args:
        units: All collected units, in declaration order
        shard_total: Number of shards, at least 1

    Returns:
        Shards ordered by index; some may be empty

    Raises:
        ConfigurationError: If shard_total is below 1
    """
    if shard_total < 1:
        raise ConfigurationError("shard_total must be at least 1")

    blocks = build_blocks(units)
    total = sum(block.size for block in blocks)
    ranges = [shard_range(total, i, shard_total) for i in range(shard_total)]
    assigned: list[list[str]] = [[] for _ in range(shard_total)]

    offset = 0
    position = 0
    for block in blocks:
        while position < shard_total - 1 and offset >= ranges[position][1]:
            position += 1
        assigned[position].extend(unit.id for unit in block.units)
        offset += block.size

    shards = [
        Shard(shard_index=i + 1, shard_total=shard_total, unit_ids=tuple(ids))
        for i, ids in enumerate(assigned)
    ]

    logger.debug(
        "Partitioned units",
        units=total,
        blocks=len(blocks),
        shard_total=shard_total,
        sizes=[len(s) for s in shards],
    )
    return shards


def select_shard(
    units: Sequence[TestUnit],
    shard_index: int,
    shard_total: int,
) -> list[TestUnit]:
    """
    Units of one 1-based shard, in declaration order.

    Raises:
        ConfigurationError: If the index is out of range
    """
    if shard_total < 1 or not 1 <= shard_index <= shard_total:
        raise ConfigurationError(
            f"Shard {shard_index}/{shard_total} is out of range"
        )
    shard = partition(units, shard_total)[shard_index - 1]
    by_id = {unit.id: unit for unit in units}
    return [by_id[unit_id] for unit_id in shard.unit_ids]

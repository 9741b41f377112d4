"""
Run scheduling: shard partitioning and the run coordinator.
"""

from testorch.scheduling.coordinator import RunCoordinator, UnitPhase
from testorch.scheduling.sharding import Shard, partition, select_shard

__all__ = [
    "RunCoordinator",
    "Shard",
    "UnitPhase",
    "partition",
    "select_shard",
]

"""
Test units and their collection.
"""

from testorch.units.collector import UnitCollector, resolve_work
from testorch.units.models import (
    AttemptInfo,
    TestUnit,
    UnitAnnotation,
    UnitWork,
    WorkResult,
)

__all__ = [
    "AttemptInfo",
    "TestUnit",
    "UnitAnnotation",
    "UnitCollector",
    "UnitWork",
    "WorkResult",
    "resolve_work",
]

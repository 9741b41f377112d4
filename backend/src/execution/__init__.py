"""
Attempt execution, retry decisions and outcome classification.
"""

from testorch.execution.classifier import classify, is_blocking
from testorch.execution.executor import (
    AttemptExecutor,
    invert_expected_failure,
    normalize_work_result,
)
from testorch.execution.models import (
    AttemptResult,
    AttemptStatus,
    RetryDecision,
    TerminalOutcome,
    TerminalStatus,
)
from testorch.execution.retry import RetryPolicy

__all__ = [
    "AttemptExecutor",
    "AttemptResult",
    "AttemptStatus",
    "RetryDecision",
    "RetryPolicy",
    "TerminalOutcome",
    "TerminalStatus",
    "classify",
    "invert_expected_failure",
    "is_blocking",
    "normalize_work_result",
]

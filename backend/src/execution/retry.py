"""
Retry policy with escalating timeouts and exponential backoff.

The policy is a pure function of an attempt history and its own
parameters: the same history always yields the same decision, so reruns
of a suite are reproducible.

Attempt ``n`` (0-based) gets ``base_timeout * (n + 1)`` seconds. The wait
before attempt ``n`` is ``2 ** (n - 1) * backoff_unit`` seconds, capped at
``backoff_ceiling``: with a 1s unit that is 1s, 2s, 4s, ... before the
first, second, third retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from testorch.errors import ConfigurationError
from testorch.execution.models import AttemptResult, AttemptStatus, RetryDecision

if TYPE_CHECKING:
    from testorch.concurrency.config import RunConfig


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Decides whether a failed unit is retried, and with which budgets."""

    backoff_unit_seconds: float = 1.0
    """Backoff before the first retry; doubles for each further retry."""

    backoff_ceiling_seconds: float = 30.0
    """Upper bound on a single backoff delay."""

    def __post_init__(self) -> None:
        if self.backoff_unit_seconds < 0:
            raise ConfigurationError("backoff_unit_seconds must be non-negative")
        if self.backoff_ceiling_seconds < 0:
            raise ConfigurationError("backoff_ceiling_seconds must be non-negative")

    @classmethod
    def from_config(cls, config: RunConfig) -> RetryPolicy:
        """Build the policy from run configuration."""
        return cls(
            backoff_unit_seconds=config.backoff_unit_seconds,
            backoff_ceiling_seconds=config.backoff_ceiling_seconds,
        )

    @staticmethod
    def timeout_for(attempt_index: int, base_timeout: float) -> float:
        """Timeout budget for the given attempt."""
        if attempt_index < 0:
            raise ValueError("attempt_index must be non-negative")
        return base_timeout * (attempt_index + 1)

    def backoff_for(self, attempt_index: int) -> float:
        """Delay to wait before starting the given attempt."""
        if attempt_index <= 0:
            return 0.0
        return min(
            (2 ** (attempt_index - 1)) * self.backoff_unit_seconds,
            self.backoff_ceiling_seconds,
        )

    def decide(
        self,
        history: Sequence[AttemptResult],
        max_retries: int,
        base_timeout: float,
    ) -> RetryDecision:
        """
        Decide on the next attempt from the attempts made so far.

        Args:
            history: Attempt results of one unit (or serial group), oldest first
            max_retries: Retry ceiling; 0 disables retries
            base_timeout: Attempt-0 timeout budget in seconds

        Returns:
            The retry decision for attempt ``len(history)``
        """
        if not history:
            raise ValueError("Cannot decide on a retry without any attempts")
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")

        next_index = len(history)
        last = history[-1]
        should_retry = (
            last.status != AttemptStatus.SUCCESS
            # aborted attempts mean the run is shutting down
            and last.status != AttemptStatus.ABORTED
            and len(history) <= max_retries
        )

        if not should_retry:
            return RetryDecision(
                should_retry=False,
                next_timeout_seconds=self.timeout_for(next_index, base_timeout),
                backoff_delay_seconds=0.0,
                requires_cleanup=False,
            )

        return RetryDecision(
            should_retry=True,
            next_timeout_seconds=self.timeout_for(next_index, base_timeout),
            backoff_delay_seconds=self.backoff_for(next_index),
            requires_cleanup=next_index > 0,
        )

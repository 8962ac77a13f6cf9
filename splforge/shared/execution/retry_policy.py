"""
Retry Policies
==============
Static per-error-kind retry configuration consumed by the
Retry/Escalation Controller.

A kind without an entry is non-retryable.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from splforge.shared.execution.execution_result import ErrorKind


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration for one error kind."""

    max_retries: int
    base_delay: float  # seconds
    backoff_multiplier: float = 2.0
    jitter: bool = False
    escalate_fee: bool = False
    fee_multiplier: float = 1.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.backoff_multiplier < 1.0 or self.fee_multiplier < 1.0:
            raise ValueError("multipliers must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Back-off before the next attempt, without jitter."""
        return self.base_delay * (self.backoff_multiplier ** max(attempt - 1, 0))


_ATOMIC_ESCALATION = RetryPolicy(
    max_retries=3,
    base_delay=1.0,
    backoff_multiplier=1.5,
    escalate_fee=True,
    fee_multiplier=1.5,
)

DEFAULT_RETRY_POLICIES: Mapping[ErrorKind, RetryPolicy] = MappingProxyType({
    ErrorKind.NETWORK_CONGESTION: RetryPolicy(
        max_retries=5, base_delay=2.0, backoff_multiplier=2.0, jitter=True,
    ),
    ErrorKind.TRANSPORT_ERROR: RetryPolicy(
        max_retries=4, base_delay=1.5, backoff_multiplier=2.0, jitter=True,
    ),
    ErrorKind.BUNDLE_REJECTED: _ATOMIC_ESCALATION,
    ErrorKind.NO_ATOMIC_SLOT: _ATOMIC_ESCALATION,
    ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE: RetryPolicy(
        max_retries=2,
        base_delay=1.0,
        backoff_multiplier=1.5,
        escalate_fee=True,
        fee_multiplier=1.5,
    ),
})


def policy_for(
    kind: ErrorKind,
    policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None,
) -> Optional[RetryPolicy]:
    table = DEFAULT_RETRY_POLICIES if policies is None else policies
    return table.get(kind)

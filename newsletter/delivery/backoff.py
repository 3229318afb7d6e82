"""Retry policy for transient delivery failures.

The delay is a pure function of the attempt count.  Workers do not sleep
on it: a failed task gets ``execute_after = now + delay`` and is simply
not selected again before then.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


def retry_delay(attempt: int, base_s: float, max_s: float) -> timedelta:
    """Exponential backoff: ``base_s * 2 ** (attempt - 1)``, capped at *max_s*.

    *attempt* is the number of attempts made so far (1 after the first).
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    seconds = min(max_s, base_s * (2 ** min(attempt - 1, 32)))
    return timedelta(seconds=seconds)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_s: float = 1.0
    max_s: float = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def is_exhausted(self, n_attempts: int) -> bool:
        return n_attempts >= self.max_attempts

    def delay(self, n_attempts: int) -> timedelta:
        return retry_delay(n_attempts, self.base_s, self.max_s)

"""Bounded retry policy shared by acquisition sessions and the attempt tracker."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget plus a clamped exponential backoff.

    ``backoff(n) = min(max_delay, base_delay * 2 ** min(n - 1, exponent_cap))``
    for the *n*-th consecutive failure (1-indexed).  All delays are seconds.
    """

    max_attempts: int = 1
    base_delay: float = 300.0
    max_delay: float = 3600.0
    exponent_cap: int = 4

    def backoff(self, failures: int) -> float:
        exponent = min(max(failures, 1) - 1, self.exponent_cap)
        return min(self.max_delay, self.base_delay * (2**exponent))

    def can_retry(self, attempt_number: int) -> bool:
        """True while *attempt_number* (1-indexed) leaves budget for another try."""
        return attempt_number < self.max_attempts

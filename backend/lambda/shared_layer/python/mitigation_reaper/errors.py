"""mitigation_reaper.errors — Exception types raised by the reaper modules."""

from __future__ import annotations

from typing import Optional


class ReaperError(RuntimeError):
    """Base class for reaper failures scoped to a single candidate or device."""


class RetryExhaustedError(ReaperError):
    """A transient ledger or engine failure outlived its bounded retries.

    Callers treat this as "status unknown" and skip the candidate for the
    current sweep only.
    """

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")


class InvariantViolationError(ReaperError):
    """The engine reported state that must never exist, e.g. two runs for one identity."""

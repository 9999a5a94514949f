"""mitigation_reaper.retry — Bounded retry helper shared by ledger and engine calls.

Only transient I/O failures are retried. Condition failures, dedup faults
and validation errors are returned to the caller on the first attempt.
"""

from __future__ import annotations

import time
from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .config import logger
from .errors import RetryExhaustedError

T = TypeVar("T")

BACKOFF_INCREMENTAL = "incremental"
BACKOFF_MULTIPLICATIVE = "multiplicative"

_NON_TRANSIENT_CODES = {
    "AccessDeniedException",
    "ConditionalCheckFailedException",
    "OperationNotPermittedFault",
    "ResourceNotFoundException",
    "UnknownResourceFault",
    "ValidationException",
    "WorkflowExecutionAlreadyStartedFault",
}


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, BotoCoreError):
        return True
    if isinstance(exc, ClientError):
        return _error_code(exc) not in _NON_TRANSIENT_CODES
    return False


def _retry_backoff_seconds(attempt_number: int, base_delay_seconds: float, backoff: str) -> float:
    if backoff == BACKOFF_MULTIPLICATIVE:
        return base_delay_seconds * (2 ** max(0, attempt_number - 1))
    return base_delay_seconds * max(1, attempt_number)


def call_with_retries(
    fn: Callable[[], T],
    *,
    operation: str,
    max_attempts: int,
    base_delay_seconds: float,
    backoff: str = BACKOFF_INCREMENTAL,
    is_transient: Callable[[BaseException], bool] = _is_transient,
) -> T:
    """Call ``fn`` up to ``max_attempts`` times, sleeping between transient failures.

    Non-transient exceptions propagate unchanged from the attempt that raised
    them. When every attempt fails transiently, ``RetryExhaustedError`` is
    raised chained to the last failure.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exc: Any = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_exc = exc
            logger.warning(
                "[WARNING] %s attempt %d/%d failed: %s",
                operation,
                attempt,
                max_attempts,
                exc,
            )
            if attempt < max_attempts:
                time.sleep(_retry_backoff_seconds(attempt, base_delay_seconds, backoff))

    raise RetryExhaustedError(operation, max_attempts, last_exc) from last_exc

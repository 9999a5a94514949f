"""mitigation_reaper.classifier — Decide whether a candidate's ledger state has diverged from SWF."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import GRACE_MINUTES, PROBE_MIN_AGE_SECONDS, logger
from .errors import InvariantViolationError, RetryExhaustedError
from .models import WorkflowCandidate, WorkflowStatus
from .orchestration import probe_execution

__all__ = ["Classification", "DivergenceState", "classify"]


class DivergenceState:
    NO_RUN_HANDLE = "NO_RUN_HANDLE"
    RUN_OPEN = "RUN_OPEN"
    RUN_CLOSED_RECENT = "RUN_CLOSED_RECENT"
    RUN_CLOSED_STALE = "RUN_CLOSED_STALE"
    STATUS_UNKNOWN = "STATUS_UNKNOWN"
    LEDGER_TERMINAL = "LEDGER_TERMINAL"


@dataclass(frozen=True)
class Classification:
    state: str
    reap: bool
    reason: str
    close_timestamp_millis: Optional[int] = None


def _grace_millis() -> int:
    return GRACE_MINUTES * 60 * 1000


def classify(candidate: WorkflowCandidate, now_millis: int) -> Classification:
    """Classify one candidate. Never raises; probe failures become STATUS_UNKNOWN."""
    age_millis = now_millis - candidate.request_timestamp

    if candidate.workflow_status in WorkflowStatus.UNSUCCESSFUL_TERMINAL:
        return Classification(
            DivergenceState.LEDGER_TERMINAL,
            True,
            f"ledger status {candidate.workflow_status} awaiting corrective pass",
        )

    if not candidate.run_handle:
        if age_millis > _grace_millis():
            return Classification(
                DivergenceState.NO_RUN_HANDLE,
                True,
                f"no run id recorded {age_millis // 1000}s after request",
            )
        return Classification(DivergenceState.NO_RUN_HANDLE, False, "request may not have started yet")

    if age_millis <= PROBE_MIN_AGE_SECONDS * 1000:
        return Classification(DivergenceState.RUN_OPEN, False, "request too recent to have closed")

    try:
        status = probe_execution(
            candidate.device_name,
            candidate.workflow_id,
            candidate.run_handle,
            candidate.request_timestamp,
        )
    except RetryExhaustedError as exc:
        logger.warning("[WARNING] Status unknown for %s: %s", candidate.key, exc)
        return Classification(DivergenceState.STATUS_UNKNOWN, False, "probe retries exhausted")
    except InvariantViolationError as exc:
        logger.error("[ERROR] Invariant violation for %s: %s", candidate.key, exc)
        return Classification(DivergenceState.STATUS_UNKNOWN, False, f"invariant violation: {exc}")
    except Exception as exc:
        logger.warning("[WARNING] Probe failed for %s: %s", candidate.key, exc)
        return Classification(DivergenceState.STATUS_UNKNOWN, False, f"probe failed: {exc}")

    if not status.closed:
        return Classification(DivergenceState.RUN_OPEN, False, "execution open")

    if status.found and status.close_timestamp_millis is not None:
        since_millis = now_millis - status.close_timestamp_millis
        reason = f"execution closed {since_millis // 1000}s ago ({status.close_status or 'UNKNOWN'})"
    else:
        since_millis = age_millis
        reason = f"no execution found for run id, request {age_millis // 1000}s old"

    if since_millis > _grace_millis():
        return Classification(DivergenceState.RUN_CLOSED_STALE, True, reason, status.close_timestamp_millis)
    return Classification(DivergenceState.RUN_CLOSED_RECENT, False, reason, status.close_timestamp_millis)

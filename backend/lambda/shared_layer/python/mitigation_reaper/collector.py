"""mitigation_reaper.collector — Enumerate ledger rows that still claim an active workflow.

Devices are scanned one after another. A failure while paging one device is
logged and ends that device's scan for this sweep; the remaining devices are
still scanned.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .config import COMPLETED_MITIGATION_STATUSES, REAP_MAX_AGE_SECONDS, logger
from .ledger import list_active_candidates, list_location_states
from .models import LocationRepairState, WorkflowCandidate
from .serialization import _now_millis

__all__ = ["collect_candidates"]


def _with_discovered_locations(
    candidate: WorkflowCandidate,
    location_cache: Optional[Dict[str, Dict[str, LocationRepairState]]] = None,
) -> WorkflowCandidate:
    """Fill in the locations still owed work when the request row lists none.

    The rows read are kept in ``location_cache`` under the candidate key so the
    repair step does not query the instances table a second time.
    """
    if candidate.affected_locations:
        return candidate
    states = list_location_states(candidate.device_name, candidate.workflow_id)
    if location_cache is not None:
        location_cache[candidate.key] = states
    unsettled = tuple(
        sorted(
            location
            for location, state in states.items()
            if not state.is_settled(COMPLETED_MITIGATION_STATUSES)
        )
    )
    return replace(candidate, affected_locations=unsettled)


def collect_candidates(
    devices: Iterable[str],
    *,
    running_only: bool = False,
    summary: Optional[Counter] = None,
    now_millis: Optional[int] = None,
    location_cache: Optional[Dict[str, Dict[str, LocationRepairState]]] = None,
) -> List[WorkflowCandidate]:
    summary = summary if summary is not None else Counter()
    now = now_millis if now_millis is not None else _now_millis()
    max_age_millis = REAP_MAX_AGE_SECONDS * 1000
    candidates: List[WorkflowCandidate] = []

    for device_name in devices:
        summary["devices_scanned"] += 1
        found = 0
        try:
            for candidate in list_active_candidates(device_name, running_only=running_only):
                if now - candidate.request_timestamp > max_age_millis:
                    summary["expired"] += 1
                    logger.error(
                        "[ERROR] Request %s is older than %ss and will not be reaped",
                        candidate.key,
                        REAP_MAX_AGE_SECONDS,
                    )
                    continue
                try:
                    candidate = _with_discovered_locations(candidate, location_cache)
                except Exception as exc:
                    summary["location_lookup_failures"] += 1
                    logger.warning("[WARNING] Location lookup failed for %s: %s", candidate.key, exc)
                    continue
                candidates.append(candidate)
                found += 1
        except Exception as exc:
            summary["device_failures"] += 1
            logger.warning(
                "[WARNING] Candidate scan aborted for device %s after %d candidate(s): %s",
                device_name,
                found,
                exc,
            )
            continue
        logger.info("[INFO] Device %s: %d candidate(s)", device_name, found)

    summary["candidates"] += len(candidates)
    return candidates

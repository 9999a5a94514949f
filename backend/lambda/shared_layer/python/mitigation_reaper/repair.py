"""mitigation_reaper.repair — Correct ledger state for candidates the classifier marked for reaping.

Two strategies are available:

- direct: the sweep writes the ledger itself. Unsettled locations are set to
  COMPLETED, then the request row is flipped to FAILED with a condition on the
  status the sweep observed. Losing that condition means another writer
  resolved the row first.
- delegated: the sweep starts a corrective SWF workflow with a deterministic
  id and hands it the full repair task. SWF refuses a second open execution
  under the same id, which is what keeps repairs from overlapping.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .config import COMPLETED_MITIGATION_STATUSES, logger
from .errors import ReaperError
from .ledger import UpdateResult, list_location_states, mark_request_failed, set_location_completed
from .models import LocationRepairState, RepairTask, SchedulingStatus, WorkflowCandidate
from .orchestration import StartResult, start_corrective_workflow

__all__ = [
    "RepairOutcome",
    "build_repair_task",
    "filter_locations_to_repair",
    "repair_delegated",
    "repair_direct",
]

_REPAIR_ERRORS = (ReaperError, ClientError, BotoCoreError)


class RepairOutcome:
    REPAIRED = "REPAIRED"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    DELEGATED = "DELEGATED"
    DEDUPLICATED = "DEDUPLICATED"
    DRY_RUN = "DRY_RUN"
    FAILED = "FAILED"


def _needs_repair(state: Optional[LocationRepairState], completed_statuses) -> bool:
    return state is None or not state.is_settled(completed_statuses)


def filter_locations_to_repair(
    locations: Iterable[str],
    states: Mapping[str, LocationRepairState],
    completed_statuses=None,
) -> Dict[str, Optional[LocationRepairState]]:
    """Return the locations that still need a corrective pass, in input order.

    A location qualifies when any one of these holds: the ledger has no row
    for it, its active-mitigations flag is absent or false, it is not yet
    COMPLETED, or its mitigation status is not a terminal success.
    """
    completed = COMPLETED_MITIGATION_STATUSES if completed_statuses is None else completed_statuses
    selected: Dict[str, Optional[LocationRepairState]] = {}
    for location in locations:
        if location in selected:
            continue
        state = states.get(location)
        if _needs_repair(state, completed):
            selected[location] = state
    return selected


def build_repair_task(
    candidate: WorkflowCandidate,
    states: Mapping[str, LocationRepairState],
) -> RepairTask:
    locations = candidate.affected_locations or tuple(sorted(states))
    return RepairTask(
        candidate=candidate,
        location_states=filter_locations_to_repair(locations, states),
        metadata=candidate.metadata,
    )


def _read_location_states(candidate: WorkflowCandidate) -> Optional[Dict[str, LocationRepairState]]:
    try:
        return list_location_states(candidate.device_name, candidate.workflow_id)
    except _REPAIR_ERRORS as exc:
        logger.error("[ERROR] Could not read locations for %s: %s", candidate.key, exc)
        return None


def repair_direct(
    candidate: WorkflowCandidate,
    *,
    dry_run: bool = False,
    states: Optional[Mapping[str, LocationRepairState]] = None,
) -> str:
    """Complete the unsettled locations, then flip the request row to FAILED.

    ``states`` are the location rows already read this sweep; when omitted they
    are read from the instances table.
    """
    if states is None:
        states = _read_location_states(candidate)
        if states is None:
            return RepairOutcome.FAILED

    targets: List[str] = [
        location
        for location, state in sorted(states.items())
        if state.scheduling_status != SchedulingStatus.COMPLETED
    ]
    if dry_run:
        logger.info(
            "[INFO] Dry run: would complete %s and mark %s FAILED",
            targets,
            candidate.key,
        )
        return RepairOutcome.DRY_RUN

    failed_locations: List[str] = []
    for location in targets:
        try:
            set_location_completed(candidate.device_name, candidate.workflow_id, location)
        except _REPAIR_ERRORS as exc:
            failed_locations.append(location)
            logger.error("[ERROR] Could not complete %s at %s: %s", candidate.key, location, exc)
    if failed_locations:
        logger.warning(
            "[WARNING] Leaving %s status unchanged; %d location write(s) failed",
            candidate.key,
            len(failed_locations),
        )
        return RepairOutcome.FAILED

    try:
        result = mark_request_failed(candidate)
    except _REPAIR_ERRORS as exc:
        logger.error("[ERROR] Could not mark %s FAILED: %s", candidate.key, exc)
        return RepairOutcome.FAILED

    if result == UpdateResult.CONDITION_FAILED:
        logger.info(
            "[INFO] %s no longer %s; resolved by another writer",
            candidate.key,
            candidate.workflow_status,
        )
        return RepairOutcome.ALREADY_RESOLVED

    logger.info(
        "[SUCCESS] Reaped %s: %d location(s) completed, status %s -> FAILED",
        candidate.key,
        len(targets),
        candidate.workflow_status,
    )
    return RepairOutcome.REPAIRED


def repair_delegated(
    candidate: WorkflowCandidate,
    *,
    dry_run: bool = False,
    states: Optional[Mapping[str, LocationRepairState]] = None,
) -> str:
    if states is None:
        states = _read_location_states(candidate)
        if states is None:
            return RepairOutcome.FAILED

    task = build_repair_task(candidate, states)
    if dry_run:
        logger.info(
            "[INFO] Dry run: would start corrective workflow for %s with locations %s",
            candidate.key,
            list(task.location_states),
        )
        return RepairOutcome.DRY_RUN

    try:
        result = start_corrective_workflow(task)
    except _REPAIR_ERRORS as exc:
        logger.error("[ERROR] Could not start corrective workflow for %s: %s", candidate.key, exc)
        return RepairOutcome.FAILED

    if result == StartResult.ALREADY_RUNNING:
        return RepairOutcome.DEDUPLICATED
    return RepairOutcome.DELEGATED

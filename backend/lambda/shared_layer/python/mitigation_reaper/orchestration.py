"""mitigation_reaper.orchestration — SWF execution status probing and corrective workflow starts.

Each mitigation request runs as one SWF execution whose workflow id is
``<DeviceName>_<WorkflowId>``; the ledger records its run id. Corrective
workflows use ``<DeviceName>_<WorkflowId>_Reaper`` so SWF's single-open-execution
rule keeps two repairs of the same request from running at once.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .aws_clients import _get_swf
from .config import (
    ENGINE_WORKFLOW_ID_SEPARATOR,
    REAPER_DECISION_TIMEOUT_SECONDS,
    REAPER_TASK_LIST,
    REAPER_WORKFLOW_SUFFIX,
    REAPER_WORKFLOW_TIMEOUT_SECONDS,
    REAPER_WORKFLOW_TYPE_NAME,
    REAPER_WORKFLOW_TYPE_VERSION,
    SWF_DOMAIN,
    SWF_QUERY_MAX_ATTEMPTS,
    SWF_RETRY_BASE_SECONDS,
    logger,
)
from .errors import InvariantViolationError
from .models import RepairTask
from .retry import BACKOFF_INCREMENTAL, call_with_retries
from .serialization import _millis_to_datetime

__all__ = [
    "ExecutionStatus",
    "StartResult",
    "engine_workflow_id",
    "is_execution_closed",
    "probe_execution",
    "reaper_workflow_id",
    "start_corrective_workflow",
]

# SWF rounds start timestamps; look slightly earlier than the recorded request time.
_START_TIME_SLACK = dt.timedelta(minutes=1)
_PAGE_SIZE = 100


class StartResult:
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


@dataclass(frozen=True)
class ExecutionStatus:
    closed: bool
    close_timestamp_millis: Optional[int] = None
    close_status: Optional[str] = None
    # False when SWF holds no execution with the recorded run id.
    found: bool = True


def engine_workflow_id(device_name: str, workflow_id: str) -> str:
    return f"{device_name}{ENGINE_WORKFLOW_ID_SEPARATOR}{workflow_id}"


def reaper_workflow_id(device_name: str, workflow_id: str) -> str:
    return ENGINE_WORKFLOW_ID_SEPARATOR.join([device_name, str(workflow_id), REAPER_WORKFLOW_SUFFIX])


def _to_millis(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        return int(value.timestamp() * 1000)
    return int(float(value) * 1000)


def _list_executions(operation: str, workflow_id: str, oldest: dt.datetime) -> List[Dict[str, Any]]:
    swf = _get_swf()
    list_fn = getattr(swf, operation)
    infos: List[Dict[str, Any]] = []
    next_token = None
    while True:
        kwargs: Dict[str, Any] = {
            "domain": SWF_DOMAIN,
            "startTimeFilter": {"oldestDate": oldest},
            "executionFilter": {"workflowId": workflow_id},
            "maximumPageSize": _PAGE_SIZE,
        }
        if next_token:
            kwargs["nextPageToken"] = next_token
        resp = list_fn(**kwargs)
        infos.extend(resp.get("executionInfos", []))
        next_token = resp.get("nextPageToken")
        if not next_token:
            return infos


def _probe_once(device_name: str, workflow_id: str, run_handle: str, request_timestamp: int) -> ExecutionStatus:
    swf_workflow_id = engine_workflow_id(device_name, workflow_id)
    oldest = _millis_to_datetime(request_timestamp) - _START_TIME_SLACK

    matches: List[Dict[str, Any]] = []
    for operation in ("list_open_workflow_executions", "list_closed_workflow_executions"):
        for info in _list_executions(operation, swf_workflow_id, oldest):
            if (info.get("execution") or {}).get("runId") == run_handle:
                matches.append(info)

    if len(matches) > 1:
        raise InvariantViolationError(
            f"{len(matches)} executions found for workflowId={swf_workflow_id} runId={run_handle}"
        )
    if not matches:
        return ExecutionStatus(closed=True, close_timestamp_millis=None, found=False)

    info = matches[0]
    if info.get("executionStatus") == "OPEN":
        return ExecutionStatus(closed=False)
    return ExecutionStatus(
        closed=True,
        close_timestamp_millis=_to_millis(info.get("closeTimestamp")),
        close_status=info.get("closeStatus"),
    )


def probe_execution(
    device_name: str,
    workflow_id: str,
    run_handle: str,
    request_timestamp: int,
) -> ExecutionStatus:
    """Report whether SWF considers the recorded run open or closed.

    The open and closed listings are retried together as one probe.
    ``RetryExhaustedError`` means the status is unknown; ``InvariantViolationError``
    means SWF returned more than one execution for the run and no answer is trusted.
    """
    if not run_handle:
        raise ValueError("run_handle is required to probe an execution")
    return call_with_retries(
        lambda: _probe_once(device_name, workflow_id, run_handle, request_timestamp),
        operation=f"probe_execution[{engine_workflow_id(device_name, workflow_id)}]",
        max_attempts=SWF_QUERY_MAX_ATTEMPTS,
        base_delay_seconds=SWF_RETRY_BASE_SECONDS,
        backoff=BACKOFF_INCREMENTAL,
    )


def is_execution_closed(device_name: str, workflow_id: str, run_handle: str, request_timestamp: int) -> bool:
    return probe_execution(device_name, workflow_id, run_handle, request_timestamp).closed


def start_corrective_workflow(task: RepairTask) -> str:
    """Start the corrective workflow for ``task``.

    An execution already open under the same corrective id is SWF's dedup and is
    reported as ``StartResult.ALREADY_RUNNING``. Any other failure propagates.
    """
    candidate = task.candidate
    reaper_id = reaper_workflow_id(candidate.device_name, candidate.workflow_id)
    kwargs = {
        "domain": SWF_DOMAIN,
        "workflowId": reaper_id,
        "workflowType": {
            "name": REAPER_WORKFLOW_TYPE_NAME,
            "version": REAPER_WORKFLOW_TYPE_VERSION,
        },
        "taskList": {"name": REAPER_TASK_LIST},
        "input": task.to_json(),
        "executionStartToCloseTimeout": str(REAPER_WORKFLOW_TIMEOUT_SECONDS),
        "taskStartToCloseTimeout": str(REAPER_DECISION_TIMEOUT_SECONDS),
        "childPolicy": "TERMINATE",
    }
    try:
        resp = call_with_retries(
            lambda: _get_swf().start_workflow_execution(**kwargs),
            operation=f"start_workflow_execution[{reaper_id}]",
            max_attempts=SWF_QUERY_MAX_ATTEMPTS,
            base_delay_seconds=SWF_RETRY_BASE_SECONDS,
            backoff=BACKOFF_INCREMENTAL,
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "WorkflowExecutionAlreadyStartedFault":
            logger.info("[INFO] Corrective workflow %s already running", reaper_id)
            return StartResult.ALREADY_RUNNING
        raise

    logger.info("[SUCCESS] Started corrective workflow %s runId=%s", reaper_id, resp.get("runId"))
    return StartResult.STARTED

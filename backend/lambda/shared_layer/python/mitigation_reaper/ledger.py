"""mitigation_reaper.ledger — Paginated reads and conditional writes against the request ledger.

The ledger is two DynamoDB tables: one row per mitigation request keyed by
(DeviceName, WorkflowId), and one row per deployed location keyed by
(DeviceWorkflowId, Location). Reads are strongly consistent so the sweep never
acts on a status the writer has already replaced.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, TypeVar

from botocore.exceptions import ClientError

from .aws_clients import _get_ddb
from .config import (
    ACTIVE_MITIGATIONS_UPDATED_KEY,
    DEVICE_NAME_KEY,
    DEVICE_SCOPE_KEY,
    DEVICE_WORKFLOW_ID_KEY,
    DEVICE_WORKFLOW_ID_SEPARATOR,
    LEDGER_RETRY_BASE_SECONDS,
    LEDGER_UPDATE_MAX_ATTEMPTS,
    LOCATIONS_KEY,
    LOCATION_KEY,
    MITIGATION_INSTANCES_TABLE,
    MITIGATION_NAME_KEY,
    MITIGATION_REQUESTS_TABLE,
    MITIGATION_STATUS_KEY,
    MITIGATION_TEMPLATE_KEY,
    MITIGATION_VERSION_KEY,
    QUERY_PAGE_LIMIT,
    REAPED_FLAG_KEY,
    REQUESTS_STATUS_INDEX,
    REQUEST_DATE_KEY,
    REQUEST_TYPE_KEY,
    RUN_ID_KEY,
    SCHEDULING_STATUS_KEY,
    SERVICE_NAME_KEY,
    WORKFLOW_ID_KEY,
    WORKFLOW_STATUS_KEY,
    logger,
)
from .models import (
    LocationRepairState,
    RequestMetadata,
    SchedulingStatus,
    WorkflowCandidate,
    WorkflowStatus,
)
from .retry import BACKOFF_MULTIPLICATIVE, call_with_retries
from .serialization import _deserialize, _serialize

__all__ = [
    "PagedQuery",
    "UpdateResult",
    "apply_conditional_update",
    "device_workflow_id",
    "list_active_candidates",
    "list_location_states",
    "mark_request_failed",
    "set_location_completed",
]

T = TypeVar("T")


class UpdateResult:
    APPLIED = "applied"
    CONDITION_FAILED = "condition_failed"


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


def _encode_cursor(last_evaluated_key: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(last_evaluated_key, sort_keys=True).encode("utf-8")).decode("ascii")


def _decode_cursor(cursor: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(base64.b64decode(cursor.encode("ascii"), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("Invalid pagination cursor.") from exc
    if not isinstance(decoded, dict) or not decoded:
        raise ValueError("Invalid pagination cursor.")
    return decoded


class PagedQuery(Generic[T]):
    """Lazy, restartable sequence over a DynamoDB query.

    Iterating yields converted items page by page. ``cursor`` is advanced only
    after a page has been fully consumed, so a new ``PagedQuery`` built with
    ``cursor=previous.cursor`` resumes at the first page not yet handed out.
    Items the converter rejects (``ValueError``, ``KeyError``, ``TypeError``)
    are logged and skipped without aborting the page.
    """

    def __init__(
        self,
        params: Dict[str, Any],
        convert: Callable[[Dict[str, Any]], T],
        *,
        cursor: Optional[str] = None,
        operation: str = "ddb.query",
    ):
        self._params = dict(params)
        self._convert = convert
        self._operation = operation
        self._start_key = _decode_cursor(cursor) if cursor else None
        self.cursor = cursor
        self.exhausted = False
        self.pages_read = 0
        self.skipped = 0

    def _query_page(self) -> Dict[str, Any]:
        kwargs = dict(self._params)
        if self._start_key:
            kwargs["ExclusiveStartKey"] = self._start_key
        return call_with_retries(
            lambda: _get_ddb().query(**kwargs),
            operation=self._operation,
            max_attempts=LEDGER_UPDATE_MAX_ATTEMPTS,
            base_delay_seconds=LEDGER_RETRY_BASE_SECONDS,
            backoff=BACKOFF_MULTIPLICATIVE,
        )

    def pages(self) -> Iterator[List[T]]:
        while not self.exhausted:
            resp = self._query_page()
            self.pages_read += 1
            items: List[T] = []
            for raw in resp.get("Items", []):
                try:
                    items.append(self._convert(raw))
                except (ValueError, KeyError, TypeError) as exc:
                    self.skipped += 1
                    logger.warning("[WARNING] %s skipped malformed row: %s", self._operation, exc)
            last_evaluated_key = resp.get("LastEvaluatedKey")
            yield items
            self._start_key = last_evaluated_key
            self.cursor = _encode_cursor(last_evaluated_key) if last_evaluated_key else None
            if not last_evaluated_key:
                self.exhausted = True

    def __iter__(self) -> Iterator[T]:
        for page in self.pages():
            yield from page


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def device_workflow_id(device_name: str, workflow_id: str) -> str:
    return f"{device_name}{DEVICE_WORKFLOW_ID_SEPARATOR}{workflow_id}"


def _request_key(device_name: str, workflow_id: str) -> Dict[str, Any]:
    return {
        DEVICE_NAME_KEY: _serialize(device_name),
        WORKFLOW_ID_KEY: _serialize(int(workflow_id)),
    }


def _instance_key(device_name: str, workflow_id: str, location: str) -> Dict[str, Any]:
    return {
        DEVICE_WORKFLOW_ID_KEY: _serialize(device_workflow_id(device_name, workflow_id)),
        LOCATION_KEY: _serialize(location),
    }


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_flag(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    raise ValueError(f"unrecognized boolean flag {value!r}")


def _parse_locations(value: Any) -> tuple:
    if not value:
        return ()
    if isinstance(value, (set, frozenset)):
        return tuple(sorted(str(v) for v in value))
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value if str(v).strip())
    raise TypeError(f"{LOCATIONS_KEY} must be a list or set, got {type(value).__name__}")


def _candidate_from_item(device_name: str, raw: Dict[str, Any]) -> WorkflowCandidate:
    item = _deserialize(raw)
    workflow_id = item[WORKFLOW_ID_KEY]
    if isinstance(workflow_id, float) or isinstance(workflow_id, bool):
        raise ValueError(f"{WORKFLOW_ID_KEY} must be an integer, got {workflow_id!r}")
    version = item.get(MITIGATION_VERSION_KEY)
    return WorkflowCandidate(
        device_name=str(item.get(DEVICE_NAME_KEY) or device_name),
        workflow_id=str(int(workflow_id)),
        run_handle=_optional_str(item.get(RUN_ID_KEY)),
        request_timestamp=int(item[REQUEST_DATE_KEY]),
        affected_locations=_parse_locations(item.get(LOCATIONS_KEY)),
        workflow_status=str(item.get(WORKFLOW_STATUS_KEY) or WorkflowStatus.RUNNING),
        metadata=RequestMetadata(
            mitigation_name=_optional_str(item.get(MITIGATION_NAME_KEY)),
            mitigation_version=int(version) if version is not None else None,
            mitigation_template=_optional_str(item.get(MITIGATION_TEMPLATE_KEY)),
            device_scope=_optional_str(item.get(DEVICE_SCOPE_KEY)),
            request_type=_optional_str(item.get(REQUEST_TYPE_KEY)),
            service_name=_optional_str(item.get(SERVICE_NAME_KEY)),
        ),
    )


def _location_state_from_item(raw: Dict[str, Any]) -> LocationRepairState:
    item = _deserialize(raw)
    location = _optional_str(item[LOCATION_KEY])
    if not location:
        raise ValueError(f"{LOCATION_KEY} is empty")
    return LocationRepairState(
        location=location,
        scheduling_status=_optional_str(item.get(SCHEDULING_STATUS_KEY)),
        mitigation_status=_optional_str(item.get(MITIGATION_STATUS_KEY)),
        active_mitigations_updated=_parse_flag(item.get(ACTIVE_MITIGATIONS_UPDATED_KEY)),
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def list_active_candidates(
    device_name: str,
    *,
    running_only: bool = False,
    cursor: Optional[str] = None,
) -> PagedQuery[WorkflowCandidate]:
    """Page the requests of ``device_name`` that still claim activity.

    ``running_only`` queries the status index with its range key pinned to
    RUNNING. Otherwise the base table is queried by device and SUCCEEDED rows
    are filtered out; the status index cannot be used there because a filter
    may not name the queried index's key attributes. Rows already marked
    reaped are always excluded.
    """
    names = {
        "#dev": DEVICE_NAME_KEY,
        "#status": WORKFLOW_STATUS_KEY,
        "#reaped": REAPED_FLAG_KEY,
    }
    values: Dict[str, Any] = {
        ":dev": _serialize(device_name),
        ":reaped": _serialize("true"),
    }
    not_reaped = "(attribute_not_exists(#reaped) OR #reaped <> :reaped)"
    params: Dict[str, Any] = {"TableName": MITIGATION_REQUESTS_TABLE}
    if running_only:
        params["IndexName"] = REQUESTS_STATUS_INDEX
        key_condition = "#dev = :dev AND #status = :status"
        values[":status"] = _serialize(WorkflowStatus.RUNNING)
        filter_expression = not_reaped
    else:
        key_condition = "#dev = :dev"
        values[":status"] = _serialize(WorkflowStatus.SUCCEEDED)
        filter_expression = f"#status <> :status AND {not_reaped}"

    params.update(
        {
            "KeyConditionExpression": key_condition,
            "FilterExpression": filter_expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
            "ConsistentRead": True,
            "Limit": QUERY_PAGE_LIMIT,
        }
    )
    return PagedQuery(
        params,
        lambda raw: _candidate_from_item(device_name, raw),
        cursor=cursor,
        operation=f"list_active_candidates[{device_name}]",
    )


def list_location_states(device_name: str, workflow_id: str) -> Dict[str, LocationRepairState]:
    params = {
        "TableName": MITIGATION_INSTANCES_TABLE,
        "KeyConditionExpression": "#dwid = :dwid",
        "ExpressionAttributeNames": {"#dwid": DEVICE_WORKFLOW_ID_KEY},
        "ExpressionAttributeValues": {":dwid": _serialize(device_workflow_id(device_name, workflow_id))},
        "ConsistentRead": True,
        "Limit": QUERY_PAGE_LIMIT,
    }
    states: Dict[str, LocationRepairState] = {}
    query = PagedQuery(
        params,
        _location_state_from_item,
        operation=f"list_location_states[{device_workflow_id(device_name, workflow_id)}]",
    )
    for state in query:
        states[state.location] = state
    return states


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def apply_conditional_update(
    table_name: str,
    key: Dict[str, Any],
    updates: Dict[str, Any],
    expected: Optional[Dict[str, Any]] = None,
) -> str:
    """Set ``updates`` on one row, only if every ``expected`` attribute still holds.

    ``key`` is already in DynamoDB wire form. A lost condition returns
    ``UpdateResult.CONDITION_FAILED`` straight away: a concurrent writer has
    resolved the row and there is nothing to retry. Transient failures are
    retried and end in ``RetryExhaustedError``.
    """
    if not updates:
        raise ValueError("updates cannot be empty")

    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    assignments: List[str] = []
    for attr, value in updates.items():
        names[f"#f_{attr}"] = attr
        values[f":v_{attr}"] = _serialize(value)
        assignments.append(f"#f_{attr} = :v_{attr}")

    kwargs: Dict[str, Any] = {
        "TableName": table_name,
        "Key": key,
        "UpdateExpression": "SET " + ", ".join(assignments),
    }
    if expected:
        conditions: List[str] = []
        for attr, value in expected.items():
            names[f"#f_{attr}"] = attr
            values[f":expected_{attr}"] = _serialize(value)
            conditions.append(f"#f_{attr} = :expected_{attr}")
        kwargs["ConditionExpression"] = " AND ".join(conditions)
    kwargs["ExpressionAttributeNames"] = names
    kwargs["ExpressionAttributeValues"] = values

    try:
        call_with_retries(
            lambda: _get_ddb().update_item(**kwargs),
            operation=f"update_item[{table_name}]",
            max_attempts=LEDGER_UPDATE_MAX_ATTEMPTS,
            base_delay_seconds=LEDGER_RETRY_BASE_SECONDS,
            backoff=BACKOFF_MULTIPLICATIVE,
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            return UpdateResult.CONDITION_FAILED
        raise
    return UpdateResult.APPLIED


def set_location_completed(device_name: str, workflow_id: str, location: str) -> str:
    return apply_conditional_update(
        MITIGATION_INSTANCES_TABLE,
        _instance_key(device_name, workflow_id, location),
        {SCHEDULING_STATUS_KEY: SchedulingStatus.COMPLETED},
    )


def mark_request_failed(candidate: WorkflowCandidate) -> str:
    """Flip the request row to FAILED only if it still holds the status the sweep observed."""
    return apply_conditional_update(
        MITIGATION_REQUESTS_TABLE,
        _request_key(candidate.device_name, candidate.workflow_id),
        {WORKFLOW_STATUS_KEY: WorkflowStatus.FAILED},
        {WORKFLOW_STATUS_KEY: candidate.workflow_status},
    )

"""reaper_fakes.py — In-memory stand-ins for the DynamoDB and SWF clients used by the reaper tests.

Only the request shapes mitigation_reaper sends are understood; anything else
fails loudly so a changed call shows up as a test failure.
"""

from __future__ import annotations

import datetime as dt
import os
import re
import sys
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from mitigation_reaper import config  # noqa: E402

_SER = TypeSerializer()
_DESER = TypeDeserializer()

REQUESTS_TABLE = config.MITIGATION_REQUESTS_TABLE
INSTANCES_TABLE = config.MITIGATION_INSTANCES_TABLE


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _plain(value: Any) -> Any:
    value = _DESER.deserialize(value)
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    return value


def _wire(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _SER.serialize(v) for k, v in row.items() if v is not None}


class _FakeDdb:
    def __init__(self, requests_table: str = REQUESTS_TABLE, instances_table: str = INSTANCES_TABLE):
        self.requests_table = requests_table
        self.instances_table = instances_table
        self.requests: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.instances: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.query_calls: List[Dict[str, Any]] = []
        self.update_calls: List[Dict[str, Any]] = []
        self.query_errors: Dict[str, List[Exception]] = {}
        self.update_errors: List[Exception] = []
        self.before_update: Optional[Callable[[Dict[str, Any]], None]] = None
        self.raw_request_rows: List[Dict[str, Any]] = []

    # -- seeding -------------------------------------------------------------

    def add_request(
        self,
        device: str,
        workflow_id: int,
        *,
        status: str = "RUNNING",
        request_date: int,
        run_id: Optional[str] = None,
        locations: Optional[List[str]] = None,
        reaped: Optional[str] = None,
        **extra: Any,
    ) -> None:
        row = {
            "DeviceName": device,
            "WorkflowId": workflow_id,
            "WorkflowStatus": status,
            "RequestDate": request_date,
            "SWFRunId": run_id,
            "Locations": list(locations) if locations else None,
            "Reaped": reaped,
        }
        row.update(extra)
        self.requests[(device, workflow_id)] = row

    def add_instance(
        self,
        device: str,
        workflow_id: int,
        location: str,
        *,
        scheduling: Optional[str] = "RUNNING",
        mitigation: Optional[str] = None,
        active_updated: Optional[str] = None,
    ) -> None:
        dwid = f"{device}-{workflow_id}"
        self.instances[(dwid, location)] = {
            "DeviceWorkflowId": dwid,
            "Location": location,
            "SchedulingStatus": scheduling,
            "MitigationStatus": mitigation,
            "ActiveMitigationsUpdated": active_updated,
        }

    def request(self, device: str, workflow_id: int) -> Dict[str, Any]:
        return self.requests[(device, workflow_id)]

    def instance(self, device: str, workflow_id: int, location: str) -> Dict[str, Any]:
        return self.instances[(f"{device}-{workflow_id}", location)]

    # -- client surface ------------------------------------------------------

    @staticmethod
    def _reject_key_filter(kwargs: Dict[str, Any], key_attrs: Tuple[str, ...]) -> None:
        """DynamoDB refuses filters that name a key attribute of the table or index queried."""
        names = kwargs.get("ExpressionAttributeNames", {})
        referenced = {names.get(p, p) for p in re.findall(r"#\w+", kwargs.get("FilterExpression", ""))}
        if referenced & set(key_attrs):
            raise ClientError(
                {
                    "Error": {
                        "Code": "ValidationException",
                        "Message": "Filter Expression can only contain non-primary key attributes",
                    }
                },
                "Query",
            )

    def query(self, **kwargs):
        self.query_calls.append(kwargs)
        values = {k: _plain(v) for k, v in kwargs["ExpressionAttributeValues"].items()}
        limit = kwargs.get("Limit") or 1000
        if kwargs["TableName"] == self.requests_table:
            device = values[":dev"]
            errors = self.query_errors.get(device)
            if errors:
                raise errors.pop(0)
            if kwargs.get("IndexName"):
                self._reject_key_filter(kwargs, ("DeviceName", "WorkflowStatus"))
            else:
                self._reject_key_filter(kwargs, ("DeviceName", "WorkflowId"))
            rows = [row for (dev, _), row in sorted(self.requests.items()) if dev == device]
            if "#status = :status" in kwargs["KeyConditionExpression"]:
                rows = [row for row in rows if row["WorkflowStatus"] == values[":status"]]
            key_attrs = ("DeviceName", "WorkflowId")
            keep = lambda row: (  # noqa: E731
                ("#status <> :status" not in kwargs.get("FilterExpression", "")
                 or row["WorkflowStatus"] != values[":status"])
                and row.get("Reaped") != values[":reaped"]
            )
        elif kwargs["TableName"] == self.instances_table:
            self._reject_key_filter(kwargs, ("DeviceWorkflowId", "Location"))
            dwid = values[":dwid"]
            rows = [row for (d, _), row in sorted(self.instances.items()) if d == dwid]
            key_attrs = ("DeviceWorkflowId", "Location")
            keep = lambda row: True  # noqa: E731
        else:
            raise AssertionError(f"unexpected table {kwargs['TableName']}")

        start = 0
        if kwargs.get("ExclusiveStartKey"):
            start_key = {k: _plain(v) for k, v in kwargs["ExclusiveStartKey"].items()}
            positions = [
                idx for idx, row in enumerate(rows)
                if all(row[attr] == start_key[attr] for attr in key_attrs)
            ]
            start = positions[0] + 1
        evaluated = rows[start:start + limit]
        items = [_wire(row) for row in evaluated if keep(row)]
        if kwargs["TableName"] == self.requests_table and start == 0:
            items = list(self.raw_request_rows) + items
        resp: Dict[str, Any] = {"Items": items, "Count": len(items)}
        if start + limit < len(rows):
            last = evaluated[-1]
            resp["LastEvaluatedKey"] = {attr: _SER.serialize(last[attr]) for attr in key_attrs}
        return resp

    def update_item(self, **kwargs):
        self.update_calls.append(kwargs)
        if self.before_update is not None:
            self.before_update(kwargs)
        if self.update_errors:
            raise self.update_errors.pop(0)

        key = {k: _plain(v) for k, v in kwargs["Key"].items()}
        if kwargs["TableName"] == self.requests_table:
            row = self.requests.setdefault(
                (key["DeviceName"], key["WorkflowId"]), dict(key)
            )
        elif kwargs["TableName"] == self.instances_table:
            row = self.instances.setdefault(
                (key["DeviceWorkflowId"], key["Location"]), dict(key)
            )
        else:
            raise AssertionError(f"unexpected table {kwargs['TableName']}")

        names = kwargs["ExpressionAttributeNames"]
        values = {k: _plain(v) for k, v in kwargs["ExpressionAttributeValues"].items()}
        for placeholder, expected in values.items():
            if placeholder.startswith(":expected_"):
                attr = names["#f_" + placeholder[len(":expected_"):]]
                if row.get(attr) != expected:
                    raise client_error("ConditionalCheckFailedException", "UpdateItem")
        for placeholder, value in values.items():
            if placeholder.startswith(":v_"):
                row[names["#f_" + placeholder[len(":v_"):]]] = value
        return {}


class _FakeSwf:
    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.open: Dict[str, List[Dict[str, Any]]] = {}
        self.closed: Dict[str, List[Dict[str, Any]]] = {}
        self.started: Dict[str, Dict[str, Any]] = {}
        self.list_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.start_calls: List[Dict[str, Any]] = []
        self.list_errors: List[Exception] = []
        self.start_errors: List[Exception] = []

    def add_open(self, workflow_id: str, run_id: str) -> None:
        self.open.setdefault(workflow_id, []).append(
            {"execution": {"workflowId": workflow_id, "runId": run_id}, "executionStatus": "OPEN"}
        )

    def add_closed(
        self,
        workflow_id: str,
        run_id: str,
        closed_at: dt.datetime,
        close_status: str = "TERMINATED",
    ) -> None:
        self.closed.setdefault(workflow_id, []).append(
            {
                "execution": {"workflowId": workflow_id, "runId": run_id},
                "executionStatus": "CLOSED",
                "closeStatus": close_status,
                "closeTimestamp": closed_at,
            }
        )

    def _page(self, kind: str, source: Dict[str, List[Dict[str, Any]]], kwargs: Dict[str, Any]):
        self.list_calls.append((kind, kwargs))
        if self.list_errors:
            raise self.list_errors.pop(0)
        infos = source.get(kwargs["executionFilter"]["workflowId"], [])
        start = int(kwargs.get("nextPageToken") or 0)
        resp: Dict[str, Any] = {"executionInfos": infos[start:start + self.page_size]}
        if start + self.page_size < len(infos):
            resp["nextPageToken"] = str(start + self.page_size)
        return resp

    def list_open_workflow_executions(self, **kwargs):
        return self._page("open", self.open, kwargs)

    def list_closed_workflow_executions(self, **kwargs):
        return self._page("closed", self.closed, kwargs)

    def start_workflow_execution(self, **kwargs):
        self.start_calls.append(kwargs)
        if self.start_errors:
            raise self.start_errors.pop(0)
        workflow_id = kwargs["workflowId"]
        if workflow_id in self.started:
            raise client_error("WorkflowExecutionAlreadyStartedFault", "StartWorkflowExecution")
        self.started[workflow_id] = kwargs
        return {"runId": f"reaper-run-{len(self.started)}"}

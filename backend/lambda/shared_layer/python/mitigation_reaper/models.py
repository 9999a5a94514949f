"""mitigation_reaper.models — In-memory records derived from the ledger each sweep.

Nothing here is persisted by the reaper. Every record is rebuilt from ledger
reads at the start of a sweep and discarded at its end.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


class WorkflowStatus:
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    INDETERMINATE = "INDETERMINATE"

    # Terminal but not successful; still owed a corrective pass until reaped.
    UNSUCCESSFUL_TERMINAL = frozenset({FAILED, PARTIAL_SUCCESS, INDETERMINATE})


class SchedulingStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class RequestMetadata:
    """Mitigation details carried through to the corrective workflow untouched."""
    mitigation_name: Optional[str] = None
    mitigation_version: Optional[int] = None
    mitigation_template: Optional[str] = None
    device_scope: Optional[str] = None
    request_type: Optional[str] = None
    service_name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "mitigationName": self.mitigation_name,
            "mitigationVersion": self.mitigation_version,
            "mitigationTemplate": self.mitigation_template,
            "deviceScope": self.device_scope,
            "requestType": self.request_type,
            "serviceName": self.service_name,
        }


@dataclass(frozen=True)
class WorkflowCandidate:
    """One request row whose recorded status still claims an active workflow."""
    device_name: str
    workflow_id: str
    run_handle: Optional[str]
    request_timestamp: int
    affected_locations: Tuple[str, ...] = ()
    workflow_status: str = WorkflowStatus.RUNNING
    metadata: RequestMetadata = field(default_factory=RequestMetadata)

    def __post_init__(self) -> None:
        if not self.device_name:
            raise ValueError("device_name is required")
        if not str(self.workflow_id or "").strip():
            raise ValueError("workflow_id is required")
        if not isinstance(self.request_timestamp, int) or self.request_timestamp <= 0:
            raise ValueError(f"request_timestamp must be a positive epoch millis value, got {self.request_timestamp!r}")

    @property
    def key(self) -> str:
        return f"{self.device_name}/{self.workflow_id}"


@dataclass(frozen=True)
class LocationRepairState:
    location: str
    scheduling_status: Optional[str] = None
    mitigation_status: Optional[str] = None
    # None when the attribute was never written.
    active_mitigations_updated: Optional[bool] = None

    def is_settled(self, completed_mitigation_statuses) -> bool:
        """True once nothing remains to repair at this location."""
        return (
            self.active_mitigations_updated is True
            and self.scheduling_status == SchedulingStatus.COMPLETED
            and self.mitigation_status in completed_mitigation_statuses
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "schedulingStatus": self.scheduling_status,
            "mitigationStatus": self.mitigation_status,
            "activeMitigationsUpdated": self.active_mitigations_updated,
        }


@dataclass(frozen=True)
class RepairTask:
    candidate: WorkflowCandidate
    # A location maps to None when the ledger holds no instance row for it.
    location_states: Dict[str, Optional[LocationRepairState]]
    metadata: RequestMetadata

    def to_payload(self) -> Dict[str, Any]:
        return {
            "deviceName": self.candidate.device_name,
            "workflowId": self.candidate.workflow_id,
            "runId": self.candidate.run_handle,
            "requestDate": self.candidate.request_timestamp,
            "workflowStatus": self.candidate.workflow_status,
            "locations": {
                location: (state.to_payload() if state is not None else None)
                for location, state in self.location_states.items()
            },
            "metadata": self.metadata.to_payload(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), sort_keys=True, default=str)

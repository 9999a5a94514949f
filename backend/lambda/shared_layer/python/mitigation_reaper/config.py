"""mitigation_reaper.config — Environment variables, ledger attribute names, reaper tunables, logging.

Every value is read once at import time. Lambda deployments set them through the
function environment; tests patch the module attributes directly.
"""
from __future__ import annotations

import logging
import os


def _normalize_csv(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty values from scalar/csv env sources."""
    values: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            value = part.strip()
            if not value or value in seen:
                continue
            seen.add(value)
            values.append(value)
    return tuple(values)


__all__ = [
    "ACTIVE_MITIGATIONS_UPDATED_KEY",
    "APP_DOMAIN",
    "COMPLETED_MITIGATION_STATUSES",
    "DEVICE_NAMES",
    "DEVICE_NAME_KEY",
    "DEVICE_SCOPE_KEY",
    "DEVICE_WORKFLOW_ID_KEY",
    "DEVICE_WORKFLOW_ID_SEPARATOR",
    "DYNAMODB_REGION",
    "ENGINE_WORKFLOW_ID_SEPARATOR",
    "GRACE_MINUTES",
    "LEDGER_RETRY_BASE_SECONDS",
    "LEDGER_UPDATE_MAX_ATTEMPTS",
    "LOCATIONS_KEY",
    "LOCATION_KEY",
    "MITIGATION_INSTANCES_TABLE",
    "MITIGATION_NAME_KEY",
    "MITIGATION_REQUESTS_TABLE",
    "MITIGATION_STATUS_KEY",
    "MITIGATION_TEMPLATE_KEY",
    "MITIGATION_VERSION_KEY",
    "PROBE_MIN_AGE_SECONDS",
    "QUERY_PAGE_LIMIT",
    "REAPED_FLAG_KEY",
    "REAPER_DECISION_TIMEOUT_SECONDS",
    "REAPER_DRY_RUN",
    "REAPER_STRATEGY",
    "REAPER_TASK_LIST",
    "REAPER_WORKFLOW_SUFFIX",
    "REAPER_WORKFLOW_TIMEOUT_SECONDS",
    "REAPER_WORKFLOW_TYPE_NAME",
    "REAPER_WORKFLOW_TYPE_VERSION",
    "REAP_MAX_AGE_SECONDS",
    "REQUESTS_STATUS_INDEX",
    "REQUEST_DATE_KEY",
    "REQUEST_TYPE_KEY",
    "RUN_ID_KEY",
    "SCHEDULING_STATUS_KEY",
    "SERVICE_NAME_KEY",
    "SWF_CONNECT_TIMEOUT_SECONDS",
    "SWF_DOMAIN",
    "SWF_QUERY_MAX_ATTEMPTS",
    "SWF_READ_TIMEOUT_SECONDS",
    "SWF_REGION",
    "SWF_RETRY_BASE_SECONDS",
    "VALID_STRATEGIES",
    "WORKFLOW_ID_KEY",
    "WORKFLOW_STATUS_KEY",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

APP_DOMAIN = os.environ.get("APP_DOMAIN", "beta")
MITIGATION_REQUESTS_TABLE = os.environ.get(
    "MITIGATION_REQUESTS_TABLE",
    f"MITIGATION_REQUESTS_{APP_DOMAIN.upper()}",
)
MITIGATION_INSTANCES_TABLE = os.environ.get(
    "MITIGATION_INSTANCES_TABLE",
    f"MITIGATION_INSTANCES_{APP_DOMAIN.upper()}",
)
REQUESTS_STATUS_INDEX = os.environ.get("REQUESTS_STATUS_INDEX", "WorkflowStatus-index")
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "us-west-2")

SWF_REGION = os.environ.get("SWF_REGION", os.environ.get("DYNAMODB_REGION", "us-west-2"))
SWF_DOMAIN = os.environ.get("SWF_DOMAIN", f"MitigationService_{APP_DOMAIN.upper()}")
SWF_CONNECT_TIMEOUT_SECONDS = int(os.environ.get("SWF_CONNECT_TIMEOUT_SECONDS", "10"))
SWF_READ_TIMEOUT_SECONDS = int(os.environ.get("SWF_READ_TIMEOUT_SECONDS", "30"))

REAPER_WORKFLOW_TYPE_NAME = os.environ.get("REAPER_WORKFLOW_TYPE_NAME", "RequestReaperWorkflow.reapRequest")
REAPER_WORKFLOW_TYPE_VERSION = os.environ.get("REAPER_WORKFLOW_TYPE_VERSION", "1.0")
REAPER_TASK_LIST = os.environ.get("REAPER_TASK_LIST", "RequestReaperTaskList")
REAPER_WORKFLOW_TIMEOUT_SECONDS = int(os.environ.get("REAPER_WORKFLOW_TIMEOUT_SECONDS", "3600"))
REAPER_DECISION_TIMEOUT_SECONDS = int(os.environ.get("REAPER_DECISION_TIMEOUT_SECONDS", "60"))
REAPER_WORKFLOW_SUFFIX = "Reaper"

DEVICE_NAMES = _normalize_csv(os.environ.get("DEVICE_NAMES", "POP_ROUTER"))

# Minutes a closed (or never started) workflow is given to finish its own ledger updates.
GRACE_MINUTES = int(os.environ.get("GRACE_MINUTES", "3"))
REAP_MAX_AGE_SECONDS = int(os.environ.get("REAP_MAX_AGE_SECONDS", str(60 * 60 * 24 * 7)))
# Time a new request needs before its SWF execution can exist at all.
PROBE_MIN_AGE_SECONDS = min(
    SWF_CONNECT_TIMEOUT_SECONDS + SWF_READ_TIMEOUT_SECONDS + 10,
    GRACE_MINUTES * 60,
)
QUERY_PAGE_LIMIT = max(10, int(os.environ.get("QUERY_PAGE_LIMIT", "50")))

VALID_STRATEGIES = {"direct", "delegated"}
REAPER_STRATEGY = os.environ.get("REAPER_STRATEGY", "direct").strip().lower()
REAPER_DRY_RUN = os.environ.get("REAPER_DRY_RUN", "false").lower() == "true"

LEDGER_UPDATE_MAX_ATTEMPTS = 3
LEDGER_RETRY_BASE_SECONDS = 0.1
SWF_QUERY_MAX_ATTEMPTS = 3
SWF_RETRY_BASE_SECONDS = 0.1

COMPLETED_MITIGATION_STATUSES = frozenset(
    _normalize_csv(
        os.environ.get(
            "COMPLETED_MITIGATION_STATUSES",
            "DEPLOY_SUCCEEDED,EDIT_SUCCEEDED,DELETE_SUCCEEDED,POST_DEPLOYMENT_CHECKS_PASSED",
        )
    )
)

# ---------------------------------------------------------------------------
# Ledger attribute names
# ---------------------------------------------------------------------------

DEVICE_NAME_KEY = "DeviceName"
WORKFLOW_ID_KEY = "WorkflowId"
WORKFLOW_STATUS_KEY = "WorkflowStatus"
RUN_ID_KEY = "SWFRunId"
REQUEST_DATE_KEY = "RequestDate"
LOCATIONS_KEY = "Locations"
MITIGATION_NAME_KEY = "MitigationName"
MITIGATION_VERSION_KEY = "MitigationVersion"
MITIGATION_TEMPLATE_KEY = "MitigationTemplate"
DEVICE_SCOPE_KEY = "DeviceScope"
REQUEST_TYPE_KEY = "RequestType"
SERVICE_NAME_KEY = "ServiceName"
REAPED_FLAG_KEY = "Reaped"

DEVICE_WORKFLOW_ID_KEY = "DeviceWorkflowId"
LOCATION_KEY = "Location"
SCHEDULING_STATUS_KEY = "SchedulingStatus"
MITIGATION_STATUS_KEY = "MitigationStatus"
ACTIVE_MITIGATIONS_UPDATED_KEY = "ActiveMitigationsUpdated"

DEVICE_WORKFLOW_ID_SEPARATOR = "-"
ENGINE_WORKFLOW_ID_SEPARATOR = "_"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)

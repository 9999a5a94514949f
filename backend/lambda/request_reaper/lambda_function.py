"""request_reaper/lambda_function.py

EventBridge-scheduled Lambda that reconciles the mitigation request ledger with
SWF execution state.

Each invocation runs exactly one sweep (``mitigation_reaper.sweep.run_sweep_once``)
and returns its counters. The sweep catches its own failures, so a bad row or an
unreachable device never fails the invocation.

Optional event overrides (top level or under ``detail``):
    strategy    "direct" | "delegated"
    dry_run     bool
    devices     list of device names

Environment variables:
    REAPER_STRATEGY                default: direct
    REAPER_DRY_RUN                 default: false
    DEVICE_NAMES                   default: POP_ROUTER
    GRACE_MINUTES                  default: 3
    MITIGATION_REQUESTS_TABLE      default: MITIGATION_REQUESTS_<APP_DOMAIN>
    MITIGATION_INSTANCES_TABLE     default: MITIGATION_INSTANCES_<APP_DOMAIN>
    SWF_DOMAIN                     default: MitigationService_<APP_DOMAIN>
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from mitigation_reaper.config import logger
from mitigation_reaper.sweep import run_sweep_once


def _parse_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_devices(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValueError("'devices' must be a list or comma-separated string")
    devices = [str(v).strip() for v in value if str(v).strip()]
    return devices or None


def _overrides(event: Any) -> Dict[str, Any]:
    if not isinstance(event, dict):
        return {}
    detail = event.get("detail")
    source = dict(detail) if isinstance(detail, dict) else {}
    for key in ("strategy", "dry_run", "devices"):
        if key in event:
            source[key] = event[key]
    return source


def lambda_handler(event, context):
    overrides = _overrides(event)
    request_id = getattr(context, "aws_request_id", "") if context is not None else ""
    try:
        devices = _parse_devices(overrides.get("devices"))
    except ValueError as exc:
        logger.warning("[WARNING] Ignoring invalid devices override: %s", exc)
        devices = None

    logger.info("[START] request_reaper invocation %s overrides=%s", request_id, overrides)
    summary = run_sweep_once(
        overrides.get("strategy"),
        dry_run=_parse_bool(overrides.get("dry_run")),
        devices=devices,
    )
    summary["status"] = "error" if summary.get("error") else "ok"
    return summary

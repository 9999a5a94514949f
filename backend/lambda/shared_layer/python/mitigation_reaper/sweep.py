"""mitigation_reaper.sweep — One reconciliation pass over every configured device.

``run_sweep_once`` is the single entry point the scheduled Lambda calls. It
keeps no state between invocations: every pass re-reads the ledger and SWF,
so a pass that dies halfway leaves nothing to clean up.
"""

from __future__ import annotations

import time
from collections import Counter
from typing import Any, Dict, Iterable, Optional

from . import config
from .classifier import classify
from .collector import collect_candidates
from .config import logger
from .repair import repair_delegated, repair_direct
from .serialization import _emit_structured_observability, _now_millis

__all__ = ["run_sweep_once"]

_SUMMARY_KEYS = (
    "devices_scanned",
    "device_failures",
    "candidates",
    "expired",
    "reap_decisions",
    "candidate_errors",
)


def _resolve_strategy(strategy: Optional[str]) -> str:
    resolved = (strategy or config.REAPER_STRATEGY or "").strip().lower()
    if resolved not in config.VALID_STRATEGIES:
        raise ValueError(
            f"Unknown reaper strategy '{strategy or config.REAPER_STRATEGY}'. "
            f"Expected one of {sorted(config.VALID_STRATEGIES)}"
        )
    return resolved


def run_sweep_once(
    strategy: Optional[str] = None,
    *,
    dry_run: Optional[bool] = None,
    devices: Optional[Iterable[str]] = None,
    now_millis: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one sweep and return its counters. Never raises.

    ``now_millis`` pins the clock for every candidate; by default the clock is
    read again before each classification.
    """
    started = time.time()
    summary: Counter = Counter()
    dry_run = config.REAPER_DRY_RUN if dry_run is None else bool(dry_run)
    result: Dict[str, Any] = {"strategy": strategy or config.REAPER_STRATEGY, "dry_run": dry_run}

    try:
        resolved = _resolve_strategy(strategy)
        result["strategy"] = resolved
        device_names = list(devices) if devices is not None else list(config.DEVICE_NAMES)
        logger.info(
            "[START] Reaper sweep strategy=%s dry_run=%s devices=%s",
            resolved,
            dry_run,
            device_names,
        )
        repair = repair_direct if resolved == "direct" else repair_delegated

        location_cache: Dict[str, Any] = {}
        candidates = collect_candidates(
            device_names,
            running_only=(resolved == "direct"),
            summary=summary,
            now_millis=now_millis,
            location_cache=location_cache,
        )
        for candidate in candidates:
            try:
                now = now_millis if now_millis is not None else _now_millis()
                classification = classify(candidate, now)
                summary[f"state_{classification.state.lower()}"] += 1
                if not classification.reap:
                    logger.info("[SKIP] %s %s: %s", candidate.key, classification.state, classification.reason)
                    continue
                summary["reap_decisions"] += 1
                logger.info("[INFO] Reaping %s %s: %s", candidate.key, classification.state, classification.reason)
                outcome = repair(candidate, dry_run=dry_run, states=location_cache.get(candidate.key))
                summary[f"outcome_{outcome.lower()}"] += 1
            except Exception as exc:
                summary["candidate_errors"] += 1
                logger.exception("[ERROR] Unexpected failure reaping %s: %s", candidate.key, exc)
    except Exception as exc:
        summary["sweep_errors"] += 1
        result["error"] = str(exc)
        logger.exception("[ERROR] Reaper sweep aborted: %s", exc)

    for key in _SUMMARY_KEYS:
        result[key] = summary.get(key, 0)
    for key, value in sorted(summary.items()):
        result.setdefault(key, value)
    result["duration_ms"] = int((time.time() - started) * 1000)

    _emit_structured_observability(
        component="request_reaper",
        event="sweep_complete",
        latency_ms=result["duration_ms"],
        error_code="sweep_aborted" if "error" in result else None,
        extra={k: v for k, v in result.items() if k != "duration_ms"},
    )
    logger.info("[END] Reaper sweep: %s", {k: v for k, v in result.items() if v})
    return result

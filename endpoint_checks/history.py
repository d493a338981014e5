from __future__ import annotations

from dataclasses import replace
from typing import Any, Iterable

from endpoint_checks.models import (
    CheckConfig,
    CheckResult,
    CheckState,
    HistoryEntry,
    MonitoringState,
    history_entry_to_dict,
)


def append_history(state: CheckState, result: CheckResult, *, timestamp: str, history_size: int) -> CheckState:
    """
    Returns a copy of `state` with one entry appended, keeping the newest `history_size` entries.
    """
    entry = HistoryEntry(
        timestamp=timestamp,
        status=state.status,
        response_time_ms=result.response_time_ms,
        error=result.error,
    )
    items = list(state.history) + [entry]
    size = max(0, int(history_size))
    items = items[-size:] if size else []
    return replace(state, history=tuple(items))


def compute_uptime_percent(history: Iterable[HistoryEntry]) -> float | None:
    items = list(history)
    if not items:
        return None
    ok_count = sum(1 for h in items if h.status == "healthy")
    return round((ok_count / float(len(items))) * 100.0, 2)


def overall_status(statuses: Iterable[str]) -> str:
    seen = set(statuses)
    if "unhealthy" in seen:
        return "unhealthy"
    if "degraded" in seen:
        return "degraded"
    return "healthy"


def build_status_summary(
    checks: list[CheckConfig],
    state: MonitoringState,
    *,
    include_history: bool = True,
) -> dict[str, Any]:
    rows: list[dict[str, Any]] = []
    for check in checks:
        cs = state.checks.get(check.id) or CheckState(id=check.id)
        row: dict[str, Any] = {
            "id": check.id,
            "name": check.name,
            "url": check.url,
            "tags": list(check.tags),
            "status": cs.status,
            "consecutive_failures": cs.consecutive_failures,
            "last_check": cs.last_check,
            "last_success": cs.last_success,
            "last_error": cs.last_error,
            "response_time_ms": cs.response_time_ms,
            "uptime_percent": compute_uptime_percent(cs.history),
        }
        if include_history:
            row["history"] = [history_entry_to_dict(h) for h in cs.history]
        rows.append(row)

    return {
        "overall": overall_status(r["status"] for r in rows),
        "checks": rows,
        "last_run": state.last_run,
    }

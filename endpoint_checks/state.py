from __future__ import annotations

import json
import logging
from pathlib import Path, PurePosixPath
from typing import Any

from endpoint_checks.models import (
    CHECK_STATUSES,
    CheckState,
    HistoryEntry,
    MonitoringState,
    monitoring_state_to_dict,
)


LOGGER = logging.getLogger("endpoint-monitor")


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    # State files written by older versions used camelCase keys.
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _coerce_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return int(default)


def _coerce_optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except Exception:
        return None


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s else None


def _coerce_status(value: Any) -> str:
    s = str(value or "").strip().lower()
    return s if s in CHECK_STATUSES else "unknown"


def coerce_history(raw: Any) -> tuple[HistoryEntry, ...]:
    """
    Best-effort decode of a persisted history list; invalid entries are dropped.
    """
    if not isinstance(raw, list):
        return ()
    out: list[HistoryEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        ts = _coerce_optional_str(item.get("timestamp"))
        if ts is None:
            continue
        out.append(
            HistoryEntry(
                timestamp=ts,
                status=_coerce_status(item.get("status")),
                response_time_ms=_coerce_optional_int(_pick(item, "response_time_ms", "responseTimeMs")),
                error=_coerce_optional_str(item.get("error")),
            )
        )
    return tuple(out)


def coerce_check_state(raw: Any, *, check_id: str) -> CheckState:
    """
    Normalize a persisted (possibly partial or legacy) per-check record into a CheckState.
    Missing or malformed fields fall back to the zeroed defaults of a never-seen check.
    """
    if not isinstance(raw, dict):
        return CheckState(id=check_id)

    status = _coerce_status(raw.get("status"))
    failures = max(0, _coerce_int(_pick(raw, "consecutive_failures", "consecutiveFailures"), default=0))
    if status == "healthy":
        failures = 0

    return CheckState(
        id=check_id,
        status=status,
        consecutive_failures=failures,
        last_check=_coerce_optional_str(_pick(raw, "last_check", "lastCheck")),
        last_success=_coerce_optional_str(_pick(raw, "last_success", "lastSuccess")),
        last_error=_coerce_optional_str(_pick(raw, "last_error", "lastError")),
        response_time_ms=_coerce_optional_int(_pick(raw, "response_time_ms", "responseTimeMs")),
        history=coerce_history(raw.get("history")),
    )


def coerce_monitoring_state(raw: Any) -> MonitoringState:
    if not isinstance(raw, dict):
        return MonitoringState()

    checks_raw = raw.get("checks")
    checks: dict[str, CheckState] = {}
    if isinstance(checks_raw, dict):
        for check_id, item in checks_raw.items():
            if not isinstance(check_id, str) or not check_id:
                continue
            checks[check_id] = coerce_check_state(item, check_id=check_id)

    return MonitoringState(
        checks=checks,
        last_run=_coerce_optional_str(_pick(raw, "last_run", "lastRun")),
    )


def _write_state_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2), encoding="utf-8")
    tmp.replace(path)


class JsonFileStateStore:
    """
    Keeps each state key as a JSON document under `base_dir`.

    Writes are atomic per key, but concurrent processes sharing a key are
    last-writer-wins; only one tick per key should run at a time.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def path_for(self, key: str) -> Path:
        parts = PurePosixPath(str(key or "").strip()).parts
        if not parts or any(p in {"..", "/"} for p in parts):
            raise ValueError(f"Invalid state key {key!r}")
        return self.base_dir.joinpath(*parts)

    def load(self, key: str) -> MonitoringState:
        try:
            path = self.path_for(key)
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return MonitoringState()
        except Exception as exc:
            LOGGER.warning("Failed to read state key=%s error=%s", key, exc)
            return MonitoringState()
        return coerce_monitoring_state(raw)

    def save(self, key: str, state: MonitoringState) -> None:
        _write_state_atomic(self.path_for(key), monitoring_state_to_dict(state))

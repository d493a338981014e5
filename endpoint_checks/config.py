from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from endpoint_checks.assertions import parse_assertions
from endpoint_checks.models import CheckConfig, StatusCodeAssertion


DEFAULTS: dict[str, Any] = {
    "failure_threshold": 2,
    "timeout_ms": 10_000,
    "history_size": 288,
    "state_key": "endpoint-monitor/state.json",
    "user_agent": "endpoint-monitor/1.0",
    "retry_count": 0,
    "retry_delay_ms": 1_000,
}

_HTTP_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class MonitorSettings:
    # Directory holding JSON state documents (one file per state key).
    state_dir: str = field(default_factory=lambda: _env_str("STATE_DIR", "/data/state"))
    db_path: str = field(default_factory=lambda: _env_str("MONITOR_DB_PATH", "/data/monitor.db"))
    worker_url: str = field(default_factory=lambda: _env_str("WORKER_URL", ""))
    alert_webhook_url: str = field(default_factory=lambda: _env_str("ALERT_WEBHOOK_URL", ""))
    alert_webhook_token: str = field(default_factory=lambda: _env_str("ALERT_WEBHOOK_TOKEN", ""))
    # Incidents, maintenance windows and result metrics live in SQLite when enabled.
    sqlite_enabled: bool = field(default_factory=lambda: _env_bool("MONITOR_SQLITE_ENABLED", True))


def load_config(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")
    return data


def get_defaults(config: dict[str, Any]) -> dict[str, Any]:
    raw = config.get("defaults") or {}
    if not isinstance(raw, dict):
        raise ValueError("defaults must be a mapping")
    merged = dict(DEFAULTS)
    merged.update({k: v for k, v in raw.items() if v is not None})
    return merged


def _positive_int(value: Any, *, where: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{where} must be an integer, got {value!r}")
    try:
        n = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where} must be an integer, got {value!r}") from exc
    if n < minimum:
        raise ValueError(f"{where} must be >= {minimum}, got {n}")
    return n


def parse_check(entry: Any, defaults: dict[str, Any], *, where: str = "check") -> CheckConfig:
    if not isinstance(entry, dict):
        raise ValueError(f"{where} must be a mapping, got {type(entry).__name__}")

    check_id = str(entry.get("id") or "").strip()
    if not check_id:
        raise ValueError(f"{where}.id is required")
    url = str(entry.get("url") or "").strip()
    if not url:
        raise ValueError(f"{where}.url is required")

    method = str(entry.get("method") or "GET").strip().upper()
    if method not in _HTTP_METHODS:
        raise ValueError(f"{where}.method {method!r} is not supported")

    headers_raw = entry.get("headers") or {}
    if not isinstance(headers_raw, dict):
        raise ValueError(f"{where}.headers must be a mapping")

    body = entry.get("body")
    if body is not None and not isinstance(body, str):
        raise ValueError(f"{where}.body must be a string")

    assertions = parse_assertions(entry.get("assertions"), where=f"{where}.assertions")
    if not assertions and entry.get("expected_status") is not None:
        # Older configs only carried an expected status code.
        assertions = (
            StatusCodeAssertion(
                operator="is",
                value=_positive_int(entry["expected_status"], where=f"{where}.expected_status"),
            ),
        )

    tags_raw = entry.get("tags") or []
    if not isinstance(tags_raw, list):
        raise ValueError(f"{where}.tags must be a list")

    group_id = entry.get("group_id")
    enabled = bool(entry.get("enabled", True)) and not bool(entry.get("disabled", False))

    def pick(key: str) -> Any:
        value = entry.get(key)
        return defaults.get(key) if value is None else value

    return CheckConfig(
        id=check_id,
        name=str(entry.get("name") or check_id).strip(),
        url=url,
        method=method,
        headers={str(k): str(v) for k, v in headers_raw.items()},
        body=body,
        # Empty means "use the implicit status_code is 200" at probe time.
        assertions=assertions,
        retry_count=_positive_int(pick("retry_count"), where=f"{where}.retry_count"),
        retry_delay_ms=_positive_int(pick("retry_delay_ms"), where=f"{where}.retry_delay_ms"),
        timeout_ms=_positive_int(pick("timeout_ms"), where=f"{where}.timeout_ms", minimum=1),
        failure_threshold=_positive_int(pick("failure_threshold"), where=f"{where}.failure_threshold", minimum=1),
        tags=tuple(str(t) for t in tags_raw if str(t or "").strip()),
        group_id=(str(group_id).strip() or None) if group_id is not None else None,
        enabled=enabled,
    )


def parse_checks(config: dict[str, Any]) -> list[CheckConfig]:
    checks_cfg = config.get("checks", [])
    if not isinstance(checks_cfg, list) or not checks_cfg:
        raise ValueError("Config must contain a non-empty 'checks' list")

    defaults = get_defaults(config)
    checks: list[CheckConfig] = []
    seen: set[str] = set()
    for idx, entry in enumerate(checks_cfg):
        check = parse_check(entry, defaults, where=f"checks[{idx}]")
        if check.id in seen:
            raise ValueError(f"checks[{idx}].id {check.id!r} is duplicated")
        seen.add(check.id)
        checks.append(check)
    return checks


def load_checks(path: Path, *, include_disabled: bool = False) -> list[CheckConfig]:
    checks = parse_checks(load_config(path))
    if include_disabled:
        return checks
    return [c for c in checks if c.enabled]

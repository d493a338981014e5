from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


CHECK_STATUSES = ("unknown", "healthy", "degraded", "unhealthy")
ALERT_TYPES = ("failure", "recovery")

OPERATORS = ("is", "is_not", "contains", "not_contains", "matches", "less_than")


@dataclass(frozen=True)
class StatusCodeAssertion:
    operator: str
    # int for is/is_not/less_than, text for the string operators.
    value: int | str


@dataclass(frozen=True)
class HeaderAssertion:
    name: str
    operator: str
    value: str


@dataclass(frozen=True)
class BodyAssertion:
    operator: str
    value: str


@dataclass(frozen=True)
class ResponseTimeAssertion:
    operator: str
    value: float


Assertion = Union[StatusCodeAssertion, HeaderAssertion, BodyAssertion, ResponseTimeAssertion]

DEFAULT_ASSERTION = StatusCodeAssertion(operator="is", value=200)


@dataclass(frozen=True)
class CheckConfig:
    id: str
    name: str
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    assertions: tuple[Assertion, ...] = (DEFAULT_ASSERTION,)
    retry_count: int = 0
    retry_delay_ms: int = 1000
    timeout_ms: int = 10_000
    failure_threshold: int = 2
    tags: tuple[str, ...] = ()
    group_id: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class CheckResult:
    id: str
    success: bool
    status_code: int | None
    response_time_ms: int
    error: str | None


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: str
    status: str
    response_time_ms: int | None
    error: str | None


@dataclass(frozen=True)
class CheckState:
    id: str
    status: str = "unknown"
    consecutive_failures: int = 0
    last_check: str | None = None
    last_success: str | None = None
    last_error: str | None = None
    response_time_ms: int | None = None
    history: tuple[HistoryEntry, ...] = ()


@dataclass
class MonitoringState:
    # Owned by the orchestrator for one tick; entries are replaced, never edited.
    checks: dict[str, CheckState] = field(default_factory=dict)
    last_run: str | None = None


@dataclass(frozen=True)
class MaintenanceWindow:
    skip_checks: bool = False
    suppress_alerts: bool = True
    id: int | None = None
    reason: str | None = None
    starts_at_ts: float | None = None
    ends_at_ts: float | None = None


@dataclass(frozen=True)
class AlertPayload:
    type: str
    check: CheckConfig
    check_state: CheckState
    result: CheckResult
    timestamp: str


def history_entry_to_dict(entry: HistoryEntry) -> dict[str, Any]:
    return {
        "timestamp": entry.timestamp,
        "status": entry.status,
        "response_time_ms": entry.response_time_ms,
        "error": entry.error,
    }


def check_state_to_dict(state: CheckState) -> dict[str, Any]:
    return {
        "id": state.id,
        "status": state.status,
        "consecutive_failures": int(state.consecutive_failures),
        "last_check": state.last_check,
        "last_success": state.last_success,
        "last_error": state.last_error,
        "response_time_ms": state.response_time_ms,
        "history": [history_entry_to_dict(h) for h in state.history],
    }


def monitoring_state_to_dict(state: MonitoringState) -> dict[str, Any]:
    return {
        "checks": {check_id: check_state_to_dict(s) for check_id, s in state.checks.items()},
        "last_run": state.last_run,
    }


def assertion_to_dict(assertion: Assertion) -> dict[str, Any]:
    if isinstance(assertion, StatusCodeAssertion):
        return {"type": "status_code", "operator": assertion.operator, "value": assertion.value}
    if isinstance(assertion, HeaderAssertion):
        return {"type": "header", "name": assertion.name, "operator": assertion.operator, "value": assertion.value}
    if isinstance(assertion, BodyAssertion):
        return {"type": "body", "operator": assertion.operator, "value": assertion.value}
    if isinstance(assertion, ResponseTimeAssertion):
        return {"type": "response_time", "operator": assertion.operator, "value": assertion.value}
    raise TypeError(f"Unsupported assertion type: {type(assertion).__name__}")


def check_config_to_dict(check: CheckConfig) -> dict[str, Any]:
    return {
        "id": check.id,
        "name": check.name,
        "url": check.url,
        "method": check.method,
        "headers": dict(check.headers),
        "body": check.body,
        "assertions": [assertion_to_dict(a) for a in check.assertions],
        "retry_count": check.retry_count,
        "retry_delay_ms": check.retry_delay_ms,
        "timeout_ms": check.timeout_ms,
        "failure_threshold": check.failure_threshold,
        "tags": list(check.tags),
        "group_id": check.group_id,
        "enabled": check.enabled,
    }


def check_result_to_dict(result: CheckResult) -> dict[str, Any]:
    return {
        "id": result.id,
        "success": result.success,
        "status_code": result.status_code,
        "response_time_ms": result.response_time_ms,
        "error": result.error,
    }


def alert_payload_to_dict(payload: AlertPayload) -> dict[str, Any]:
    return {
        "type": payload.type,
        "check": check_config_to_dict(payload.check),
        "check_state": check_state_to_dict(payload.check_state),
        "result": check_result_to_dict(payload.result),
        "timestamp": payload.timestamp,
    }

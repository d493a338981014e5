from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

import httpx

from endpoint_checks.alerts import compute_transition, utc_now_iso
from endpoint_checks.history import append_history
from endpoint_checks.models import (
    AlertPayload,
    CheckConfig,
    CheckResult,
    CheckState,
    MaintenanceWindow,
    MonitoringState,
)
from endpoint_checks.runner import resolve_check_url, run_check


LOGGER = logging.getLogger("endpoint-monitor")


class StateStore(Protocol):
    def load(self, key: str) -> MonitoringState: ...

    def save(self, key: str, state: MonitoringState) -> None: ...


class MetricsSink(Protocol):
    def write(
        self,
        check_id: str,
        name: str,
        health_label: str,
        error: str | None,
        elapsed_ms: float | None,
        status_code: int | None,
    ) -> None: ...


class IncidentStore(Protocol):
    def open_incident(self, check_id: str, kind: str, error: str | None) -> object: ...

    def resolve_open_incidents(self, check_id: str) -> object: ...


class MaintenanceLookup(Protocol):
    def active_window_for(self, check_id: str, group_id: str | None) -> MaintenanceWindow | None: ...


class AlertDispatcher(Protocol):
    async def deliver(self, payload: AlertPayload) -> None: ...


class HistoryPruner(Protocol):
    def prune_history(self, before_ts: float) -> object: ...


UrlResolver = Callable[[str], str]
Probe = Callable[..., Awaitable[CheckResult]]


@dataclass(frozen=True)
class OrchestratorConfig:
    checks: list[CheckConfig]
    history_size: int = 288
    state_key: str = "endpoint-monitor/state.json"
    user_agent: str = "endpoint-monitor/1.0"
    # 1 = strictly sequential probes; >1 fans probes out, transitions stay sequential.
    check_concurrency: int = 1
    history_retention_days: float | None = 30.0


@dataclass
class TickReport:
    state: MonitoringState
    results: dict[str, CheckResult] = field(default_factory=dict)
    alerts: list[AlertPayload] = field(default_factory=list)
    suppressed_alerts: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _PlannedCheck:
    check: CheckConfig
    url: str | None
    window: MaintenanceWindow | None
    # Set when the check failed before it could be probed (e.g. URL resolution).
    early_result: CheckResult | None = None


# Locks are per event loop; an entry goes away with its loop.
_TICK_LOCKS: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = weakref.WeakKeyDictionary()


def _tick_lock(state_key: str) -> asyncio.Lock:
    locks = _TICK_LOCKS.setdefault(asyncio.get_running_loop(), {})
    lock = locks.get(state_key)
    if lock is None:
        lock = asyncio.Lock()
        locks[state_key] = lock
    return lock


def _load_state(store: StateStore, key: str) -> MonitoringState:
    try:
        return store.load(key)
    except Exception as exc:
        LOGGER.warning("State load failed; starting from empty state key=%s error=%s", key, exc)
        return MonitoringState()


def _lookup_window(maintenance: MaintenanceLookup | None, check: CheckConfig) -> MaintenanceWindow | None:
    if maintenance is None:
        return None
    try:
        return maintenance.active_window_for(check.id, check.group_id)
    except Exception:
        LOGGER.exception("Maintenance lookup failed id=%s", check.id)
        return None


def _plan(
    checks: list[CheckConfig],
    *,
    maintenance: MaintenanceLookup | None,
    resolve_url: UrlResolver,
    report: TickReport,
) -> list[_PlannedCheck]:
    planned: list[_PlannedCheck] = []
    for check in checks:
        if not check.enabled:
            continue
        window = _lookup_window(maintenance, check)
        if window is not None and window.skip_checks:
            LOGGER.info("Check skipped by maintenance window id=%s window=%s", check.id, window.id)
            report.skipped.append(check.id)
            continue
        try:
            url = resolve_url(check.url)
        except Exception as exc:
            LOGGER.warning("URL resolution failed id=%s error=%s", check.id, exc)
            planned.append(
                _PlannedCheck(
                    check=check,
                    url=None,
                    window=window,
                    early_result=CheckResult(
                        id=check.id,
                        success=False,
                        status_code=None,
                        response_time_ms=0,
                        error=f"url_resolution_error: {type(exc).__name__}: {exc}",
                    ),
                )
            )
            continue
        planned.append(_PlannedCheck(check=check, url=url, window=window))
    return planned


async def _execute(
    planned: list[_PlannedCheck],
    *,
    probe: Probe,
    client: httpx.AsyncClient,
    user_agent: str,
    concurrency: int,
) -> list[CheckResult]:
    async def one(item: _PlannedCheck) -> CheckResult:
        if item.early_result is not None:
            return item.early_result
        try:
            return await probe(item.check, item.url, user_agent, client=client)
        except Exception as exc:
            LOGGER.exception("Probe raised id=%s", item.check.id)
            return CheckResult(
                id=item.check.id,
                success=False,
                status_code=None,
                response_time_ms=0,
                error=f"{type(exc).__name__}: {exc}",
            )

    if concurrency <= 1:
        results: list[CheckResult] = []
        for item in planned:
            results.append(await one(item))
        return results

    semaphore = asyncio.Semaphore(concurrency)

    async def bounded(item: _PlannedCheck) -> CheckResult:
        async with semaphore:
            return await one(item)

    return list(await asyncio.gather(*(bounded(item) for item in planned)))


def _write_metric(metrics: MetricsSink | None, check: CheckConfig, state: CheckState, result: CheckResult) -> None:
    if metrics is None:
        return
    try:
        metrics.write(
            check.id,
            check.name,
            state.status,
            result.error,
            result.response_time_ms,
            result.status_code,
        )
    except Exception:
        LOGGER.exception("Metrics write failed id=%s", check.id)


def _record_incident(incidents: IncidentStore | None, check: CheckConfig, alert_type: str, result: CheckResult) -> None:
    if incidents is None:
        return
    try:
        if alert_type == "failure":
            incidents.open_incident(check.id, "unhealthy", result.error)
        elif alert_type == "recovery":
            incidents.resolve_open_incidents(check.id)
    except Exception:
        LOGGER.exception("Incident update failed id=%s alert_type=%s", check.id, alert_type)


async def _deliver_alert(dispatcher: AlertDispatcher | None, payload: AlertPayload) -> None:
    if dispatcher is None:
        return
    LOGGER.info("Firing alert type=%s id=%s name=%s", payload.type, payload.check.id, payload.check.name)
    try:
        await dispatcher.deliver(payload)
    except Exception:
        LOGGER.exception("Alert delivery failed type=%s id=%s", payload.type, payload.check.id)


def _prune(pruner: HistoryPruner | None, retention_days: float | None, now_ts: float) -> None:
    if pruner is None or not retention_days or retention_days <= 0:
        return
    try:
        pruner.prune_history(now_ts - float(retention_days) * 86400.0)
    except Exception:
        LOGGER.exception("Failed to prune history")


async def run_monitoring_checks(
    config: OrchestratorConfig,
    *,
    state_store: StateStore,
    resolve_url: UrlResolver | None = None,
    metrics: MetricsSink | None = None,
    incidents: IncidentStore | None = None,
    maintenance: MaintenanceLookup | None = None,
    dispatcher: AlertDispatcher | None = None,
    pruner: HistoryPruner | None = None,
    client: httpx.AsyncClient | None = None,
    probe: Probe = run_check,
    now: Callable[[], str] = utc_now_iso,
    clock: Callable[[], float] = time.time,
) -> TickReport:
    """
    Run one monitoring tick: probe every enabled check, fold results into state,
    fire side effects, then persist the whole state once.

    Per-check problems never abort the tick. A failing `state_store.save` does,
    since losing the write would skew the next tick's failure streaks.
    """
    if client is None:
        async with httpx.AsyncClient() as own_client:
            return await run_monitoring_checks(
                config,
                state_store=state_store,
                resolve_url=resolve_url,
                metrics=metrics,
                incidents=incidents,
                maintenance=maintenance,
                dispatcher=dispatcher,
                pruner=pruner,
                client=own_client,
                probe=probe,
                now=now,
                clock=clock,
            )

    resolver = resolve_url or (lambda url: resolve_check_url(url, None))

    async with _tick_lock(config.state_key):
        LOGGER.info("Running checks count=%s", len(config.checks))
        state = _load_state(state_store, config.state_key)
        report = TickReport(state=state)

        planned = _plan(config.checks, maintenance=maintenance, resolve_url=resolver, report=report)
        results = await _execute(
            planned,
            probe=probe,
            client=client,
            user_agent=config.user_agent,
            concurrency=max(1, int(config.check_concurrency)),
        )

        for item, result in zip(planned, results):
            check = item.check
            report.results[check.id] = result
            LOGGER.info(
                "Check complete id=%s name=%s ok=%s elapsed_ms=%s status_code=%s error=%s",
                check.id,
                check.name,
                result.success,
                result.response_time_ms,
                result.status_code,
                result.error,
            )

            stamp = now()
            prior = state.checks.get(check.id) or CheckState(id=check.id)
            transition = compute_transition(prior, result, check.failure_threshold, now=stamp)
            new_state = append_history(
                transition.new_state,
                result,
                timestamp=stamp,
                history_size=config.history_size,
            )
            state.checks[check.id] = new_state

            _write_metric(metrics, check, new_state, result)

            alert_type = transition.alert_type
            if alert_type is None:
                continue

            _record_incident(incidents, check, alert_type, result)

            payload = AlertPayload(
                type=alert_type,
                check=check,
                check_state=new_state,
                result=result,
                timestamp=stamp,
            )
            report.alerts.append(payload)
            if item.window is not None and item.window.suppress_alerts:
                LOGGER.info("Alert suppressed by maintenance window type=%s id=%s", alert_type, check.id)
                report.suppressed_alerts.append(check.id)
                continue
            await _deliver_alert(dispatcher, payload)

        state.last_run = now()
        state_store.save(config.state_key, state)
        LOGGER.info("Checks complete; state saved key=%s", config.state_key)

    _prune(pruner, config.history_retention_days, clock())
    return report

from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx
import pytest

from endpoint_checks.models import (
    AlertPayload,
    CheckConfig,
    CheckResult,
    CheckState,
    MaintenanceWindow,
    MonitoringState,
)
from endpoint_checks.orchestrator import OrchestratorConfig, run_monitoring_checks


class FakeStateStore:
    def __init__(self, initial: MonitoringState | None = None, *, fail_load: bool = False, fail_save: bool = False):
        self.data: dict[str, MonitoringState] = {}
        if initial is not None:
            self.data["k"] = initial
        self.fail_load = fail_load
        self.fail_save = fail_save
        self.saves = 0

    def load(self, key: str) -> MonitoringState:
        if self.fail_load:
            raise RuntimeError("bucket unavailable")
        existing = self.data.get(key)
        if existing is None:
            return MonitoringState()
        return MonitoringState(checks=dict(existing.checks), last_run=existing.last_run)

    def save(self, key: str, state: MonitoringState) -> None:
        if self.fail_save:
            raise OSError("disk full")
        self.saves += 1
        self.data[key] = MonitoringState(checks=dict(state.checks), last_run=state.last_run)


class ScriptedProbe:
    """Returns queued pass/fail outcomes per check id; records calls."""

    def __init__(self, script: dict[str, list[bool]]):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(self, check: CheckConfig, url: str, user_agent: str, *, client) -> CheckResult:
        self.calls.append((check.id, url, user_agent))
        outcomes = self.script.get(check.id) or [True]
        ok = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        return CheckResult(
            id=check.id,
            success=ok,
            status_code=200 if ok else 503,
            response_time_ms=15,
            error=None if ok else "Expected status 200, got 503",
        )


class FakeDispatcher:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.delivered: list[AlertPayload] = []

    async def deliver(self, payload: AlertPayload) -> None:
        self.delivered.append(payload)
        if self.fail:
            raise RuntimeError("webhook down")


class FakeIncidents:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.events: list[tuple[str, str]] = []

    def open_incident(self, check_id: str, kind: str, error: str | None) -> None:
        if self.fail:
            raise RuntimeError("db locked")
        self.events.append(("open", check_id))

    def resolve_open_incidents(self, check_id: str) -> None:
        if self.fail:
            raise RuntimeError("db locked")
        self.events.append(("resolve", check_id))


class FakeMaintenance:
    def __init__(self, windows: dict[str, MaintenanceWindow]):
        self.windows = windows

    def active_window_for(self, check_id: str, group_id: str | None) -> MaintenanceWindow | None:
        return self.windows.get(check_id) or (self.windows.get(f"group:{group_id}") if group_id else None)


class FakeMetrics:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.rows: list[tuple] = []

    def write(self, check_id, name, health_label, error, elapsed_ms, status_code) -> None:
        if self.fail:
            raise RuntimeError("metrics backend down")
        self.rows.append((check_id, name, health_label, error, elapsed_ms, status_code))


class FakePruner:
    def __init__(self):
        self.cutoffs: list[float] = []

    def prune_history(self, before_ts: float) -> None:
        self.cutoffs.append(before_ts)


def _check(check_id: str, **kwargs) -> CheckConfig:
    return CheckConfig(id=check_id, name=check_id.upper(), url=f"https://{check_id}.example.com", **kwargs)


def _config(*checks: CheckConfig, **kwargs) -> OrchestratorConfig:
    return OrchestratorConfig(checks=list(checks), state_key="k", user_agent="ua/1", **kwargs)


@pytest.mark.asyncio
async def test_three_ticks_fail_fail_recover() -> None:
    store = FakeStateStore()
    probe = ScriptedProbe({"api": [False, False, True]})
    dispatcher = FakeDispatcher()
    incidents = FakeIncidents()
    metrics = FakeMetrics()
    cfg = _config(_check("api", failure_threshold=2))

    statuses = []
    alert_types = []
    for _ in range(3):
        report = await run_monitoring_checks(
            cfg,
            state_store=store,
            probe=probe,
            dispatcher=dispatcher,
            incidents=incidents,
            metrics=metrics,
        )
        statuses.append(report.state.checks["api"].status)
        alert_types.append([a.type for a in report.alerts])

    assert statuses == ["degraded", "unhealthy", "healthy"]
    assert alert_types == [[], ["failure"], ["recovery"]]
    assert [p.type for p in dispatcher.delivered] == ["failure", "recovery"]
    assert incidents.events == [("open", "api"), ("resolve", "api")]
    assert [row[2] for row in metrics.rows] == ["degraded", "unhealthy", "healthy"]
    assert store.saves == 3

    persisted = store.data["k"].checks["api"]
    assert persisted.consecutive_failures == 0
    assert len(persisted.history) == 3
    assert store.data["k"].last_run is not None


@pytest.mark.asyncio
async def test_alert_payload_contents() -> None:
    dispatcher = FakeDispatcher()
    check = _check("api", failure_threshold=1)
    await run_monitoring_checks(
        _config(check),
        state_store=FakeStateStore(),
        probe=ScriptedProbe({"api": [False]}),
        dispatcher=dispatcher,
        now=lambda: "2026-01-01T00:00:00+00:00",
    )
    [payload] = dispatcher.delivered
    assert payload.type == "failure"
    assert payload.check == check
    assert payload.check_state.status == "unhealthy"
    assert payload.result.status_code == 503
    assert payload.timestamp == "2026-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_skip_checks_window_leaves_state_untouched() -> None:
    prior = CheckState(id="api", status="degraded", consecutive_failures=1, last_check="old")
    store = FakeStateStore(MonitoringState(checks={"api": prior}))
    probe = ScriptedProbe({"api": [False], "web": [True]})
    maintenance = FakeMaintenance({"api": MaintenanceWindow(skip_checks=True)})

    report = await run_monitoring_checks(
        _config(_check("api"), _check("web")),
        state_store=store,
        probe=probe,
        maintenance=maintenance,
    )

    assert [c[0] for c in probe.calls] == ["web"]
    assert report.skipped == ["api"]
    assert "api" not in report.results
    assert store.data["k"].checks["api"] == prior
    assert store.data["k"].checks["web"].status == "healthy"


@pytest.mark.asyncio
async def test_suppress_alerts_window_still_updates_state_and_incidents() -> None:
    store = FakeStateStore()
    dispatcher = FakeDispatcher()
    incidents = FakeIncidents()
    maintenance = FakeMaintenance({"group:edge": MaintenanceWindow(skip_checks=False, suppress_alerts=True)})

    report = await run_monitoring_checks(
        _config(_check("cdn", failure_threshold=1, group_id="edge")),
        state_store=store,
        probe=ScriptedProbe({"cdn": [False]}),
        dispatcher=dispatcher,
        incidents=incidents,
        maintenance=maintenance,
    )

    assert dispatcher.delivered == []
    assert report.suppressed_alerts == ["cdn"]
    assert [a.type for a in report.alerts] == ["failure"]
    assert incidents.events == [("open", "cdn")]
    assert store.data["k"].checks["cdn"].status == "unhealthy"


@pytest.mark.asyncio
async def test_side_effect_failures_do_not_abort_tick() -> None:
    store = FakeStateStore()
    dispatcher = FakeDispatcher(fail=True)

    report = await run_monitoring_checks(
        _config(_check("a", failure_threshold=1), _check("b", failure_threshold=1)),
        state_store=store,
        probe=ScriptedProbe({"a": [False], "b": [False]}),
        dispatcher=dispatcher,
        incidents=FakeIncidents(fail=True),
        metrics=FakeMetrics(fail=True),
    )

    assert [p.check.id for p in dispatcher.delivered] == ["a", "b"]
    assert set(report.results) == {"a", "b"}
    assert store.saves == 1
    assert store.data["k"].checks["a"].status == "unhealthy"
    assert store.data["k"].checks["b"].status == "unhealthy"


@pytest.mark.asyncio
async def test_load_failure_falls_back_to_empty_state() -> None:
    store = FakeStateStore(fail_load=True)
    report = await run_monitoring_checks(
        _config(_check("api")),
        state_store=store,
        probe=ScriptedProbe({"api": [True]}),
    )
    assert report.state.checks["api"].status == "healthy"
    assert store.saves == 1


@pytest.mark.asyncio
async def test_save_failure_propagates() -> None:
    with pytest.raises(OSError):
        await run_monitoring_checks(
            _config(_check("api")),
            state_store=FakeStateStore(fail_save=True),
            probe=ScriptedProbe({"api": [True]}),
        )


@pytest.mark.asyncio
async def test_disabled_checks_are_not_probed() -> None:
    probe = ScriptedProbe({})
    report = await run_monitoring_checks(
        _config(_check("on"), _check("off", enabled=False)),
        state_store=FakeStateStore(),
        probe=probe,
    )
    assert [c[0] for c in probe.calls] == ["on"]
    assert "off" not in report.state.checks


@pytest.mark.asyncio
async def test_url_resolver_and_user_agent_are_passed_through() -> None:
    probe = ScriptedProbe({})
    check = replace(_check("worker"), url="{{WORKER_URL}}/health")
    await run_monitoring_checks(
        _config(check),
        state_store=FakeStateStore(),
        probe=probe,
        resolve_url=lambda url: url.replace("{{WORKER_URL}}", "https://w.example.com"),
    )
    assert probe.calls == [("worker", "https://w.example.com/health", "ua/1")]


@pytest.mark.asyncio
async def test_url_resolution_failure_is_a_failed_result() -> None:
    def broken(url: str) -> str:
        raise KeyError("WORKER_URL")

    probe = ScriptedProbe({})
    report = await run_monitoring_checks(
        _config(_check("worker", failure_threshold=3)),
        state_store=FakeStateStore(),
        probe=probe,
        resolve_url=broken,
    )
    assert probe.calls == []
    result = report.results["worker"]
    assert result.success is False
    assert "url_resolution_error" in (result.error or "")
    assert report.state.checks["worker"].status == "degraded"


@pytest.mark.asyncio
async def test_concurrent_probes_apply_transitions_in_config_order() -> None:
    checks = [_check(f"c{i}", failure_threshold=1) for i in range(6)]
    dispatcher = FakeDispatcher()
    store = FakeStateStore()

    report = await run_monitoring_checks(
        _config(*checks, check_concurrency=3),
        state_store=store,
        probe=ScriptedProbe({c.id: [False] for c in checks}),
        dispatcher=dispatcher,
    )

    assert [p.check.id for p in dispatcher.delivered] == [c.id for c in checks]
    assert list(report.results) == [c.id for c in checks]
    assert store.saves == 1


@pytest.mark.asyncio
async def test_history_size_and_pruning() -> None:
    store = FakeStateStore()
    pruner = FakePruner()
    cfg = _config(_check("api"), history_size=2, history_retention_days=1)
    for _ in range(3):
        await run_monitoring_checks(
            cfg,
            state_store=store,
            probe=ScriptedProbe({"api": [True]}),
            pruner=pruner,
            clock=lambda: 100_000.0,
        )
    assert len(store.data["k"].checks["api"].history) == 2
    assert pruner.cutoffs == [100_000.0 - 86_400.0] * 3


@pytest.mark.asyncio
async def test_unhealthy_target_does_not_realert_across_ticks() -> None:
    store = FakeStateStore()
    dispatcher = FakeDispatcher()
    cfg = _config(_check("api", failure_threshold=2))
    for _ in range(5):
        await run_monitoring_checks(
            cfg,
            state_store=store,
            probe=ScriptedProbe({"api": [False]}),
            dispatcher=dispatcher,
        )
    assert [p.type for p in dispatcher.delivered] == ["failure"]
    assert store.data["k"].checks["api"].consecutive_failures == 5


@pytest.mark.asyncio
async def test_non_ascii_header_fails_only_its_own_check() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        return httpx.Response(200, text="ok")

    store = FakeStateStore()
    cfg = _config(
        _check("team", headers={"X-Team": "Équipe"}, failure_threshold=1),
        _check("web"),
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        report = await run_monitoring_checks(cfg, state_store=store, client=client)

    assert seen == ["web.example.com"]
    assert report.results["team"].success is False
    assert report.results["team"].error
    assert report.results["web"].success is True
    assert store.saves == 1
    assert store.data["k"].checks["team"].status == "unhealthy"
    assert store.data["k"].checks["web"].status == "healthy"


@pytest.mark.asyncio
async def test_probe_exception_becomes_failed_result() -> None:
    async def exploding(check: CheckConfig, url: str, user_agent: str, *, client) -> CheckResult:
        if check.id == "bad":
            raise RuntimeError("boom")
        return CheckResult(id=check.id, success=True, status_code=200, response_time_ms=1, error=None)

    store = FakeStateStore()
    report = await run_monitoring_checks(
        _config(_check("bad"), _check("good"), check_concurrency=2),
        state_store=store,
        probe=exploding,
    )
    assert report.results["bad"].error == "RuntimeError: boom"
    assert report.results["good"].success is True
    assert store.saves == 1


@pytest.mark.asyncio
async def test_legacy_unhealthy_state_does_not_realert() -> None:
    legacy = CheckState(id="api", status="unhealthy", consecutive_failures=0)
    store = FakeStateStore(MonitoringState(checks={"api": legacy}))
    dispatcher = FakeDispatcher()
    incidents = FakeIncidents()
    cfg = _config(_check("api", failure_threshold=2))
    for _ in range(2):
        await run_monitoring_checks(
            cfg,
            state_store=store,
            probe=ScriptedProbe({"api": [False]}),
            dispatcher=dispatcher,
            incidents=incidents,
        )
    assert dispatcher.delivered == []
    assert incidents.events == []
    assert store.data["k"].checks["api"].status == "unhealthy"


def test_ticks_on_separate_event_loops_share_state_key() -> None:
    store = FakeStateStore()
    cfg = _config(_check("api"))
    for _ in range(2):
        asyncio.run(run_monitoring_checks(cfg, state_store=store, probe=ScriptedProbe({"api": [True]})))
    assert store.saves == 2
    assert store.data["k"].checks["api"].status == "healthy"

from __future__ import annotations

import json
from pathlib import Path

import pytest

from endpoint_checks.models import CheckState, HistoryEntry, MonitoringState
from endpoint_checks.state import JsonFileStateStore, coerce_check_state, coerce_monitoring_state


KEY = "endpoint-monitor/state.json"


def test_load_missing_key_returns_empty_state(tmp_path: Path) -> None:
    state = JsonFileStateStore(tmp_path).load(KEY)
    assert state.checks == {}
    assert state.last_run is None


def test_load_corrupt_json_returns_empty_state(tmp_path: Path) -> None:
    store = JsonFileStateStore(tmp_path)
    p = store.path_for(KEY)
    p.parent.mkdir(parents=True)
    p.write_text("{not json", encoding="utf-8")
    assert store.load(KEY).checks == {}

    p.write_text(json.dumps(["a", "list"]), encoding="utf-8")
    assert store.load(KEY).checks == {}


def test_save_then_load(tmp_path: Path) -> None:
    store = JsonFileStateStore(tmp_path)
    entry = HistoryEntry(timestamp="t1", status="degraded", response_time_ms=12, error="boom")
    state = MonitoringState(
        checks={
            "api": CheckState(
                id="api",
                status="degraded",
                consecutive_failures=1,
                last_check="t1",
                last_error="boom",
                response_time_ms=12,
                history=(entry,),
            )
        },
        last_run="t1",
    )
    store.save(KEY, state)

    assert not store.path_for(KEY).with_name("state.json.tmp").exists()
    loaded = store.load(KEY)
    assert loaded.last_run == "t1"
    assert loaded.checks["api"] == state.checks["api"]


def test_load_legacy_camel_case_state(tmp_path: Path) -> None:
    store = JsonFileStateStore(tmp_path)
    p = store.path_for(KEY)
    p.parent.mkdir(parents=True)
    p.write_text(
        json.dumps(
            {
                "checks": {
                    "api": {
                        "id": "api",
                        "status": "unhealthy",
                        "consecutiveFailures": 3,
                        "lastCheck": "t3",
                        "lastSuccess": None,
                        "lastError": "Timeout after 10000ms",
                        "responseTimeMs": 10001,
                    },
                    "web": {"status": "healthy", "consecutiveFailures": 7},
                },
                "lastRun": "t3",
            }
        ),
        encoding="utf-8",
    )

    state = store.load(KEY)
    assert state.last_run == "t3"
    api = state.checks["api"]
    assert api.status == "unhealthy"
    assert api.consecutive_failures == 3
    assert api.last_error == "Timeout after 10000ms"
    assert api.history == ()
    # healthy always carries a zero streak
    assert state.checks["web"].consecutive_failures == 0


def test_coerce_check_state_drops_bad_history_entries() -> None:
    raw = {
        "status": "healthy",
        "history": [
            {"timestamp": "t1", "status": "healthy", "response_time_ms": 5, "error": None},
            {"status": "healthy"},
            "junk",
            {"timestamp": "t2", "status": "weird", "responseTimeMs": "n/a"},
        ],
    }
    state = coerce_check_state(raw, check_id="x")
    assert [h.timestamp for h in state.history] == ["t1", "t2"]
    assert state.history[1].status == "unknown"
    assert state.history[1].response_time_ms is None


def test_coerce_monitoring_state_ignores_invalid_keys() -> None:
    state = coerce_monitoring_state({"checks": {"": {}, "ok": {}}, "last_run": None})
    assert list(state.checks) == ["ok"]
    assert state.checks["ok"].status == "unknown"


@pytest.mark.parametrize("key", ["", "../escape.json", "a/../../b.json"])
def test_invalid_state_keys_rejected(tmp_path: Path, key: str) -> None:
    store = JsonFileStateStore(tmp_path)
    with pytest.raises(ValueError):
        store.save(key, MonitoringState())
    assert store.load(key).checks == {}

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import httpx

from endpoint_checks.config import MonitorSettings, get_defaults, load_config, parse_checks
from endpoint_checks.history import build_status_summary
from endpoint_checks.orchestrator import OrchestratorConfig, run_monitoring_checks
from endpoint_checks.runner import resolve_check_url
from endpoint_checks.state import JsonFileStateStore
from endpoint_checks.store import SqliteMonitorStore
from endpoint_checks.webhook import LoggingAlertDispatcher, WebhookAlertDispatcher, WebhookConfig


LOGGER = logging.getLogger("endpoint-monitor")


def build_orchestrator_config(config: dict[str, Any]) -> OrchestratorConfig:
    defaults = get_defaults(config)
    retention = config.get("history_retention_days", 30)
    return OrchestratorConfig(
        checks=[c for c in parse_checks(config) if c.enabled],
        history_size=max(0, int(defaults["history_size"])),
        state_key=str(defaults["state_key"]),
        user_agent=str(defaults["user_agent"]),
        check_concurrency=max(1, int(config.get("check_concurrency", 1))),
        history_retention_days=(float(retention) if retention is not None else None),
    )


def _alerting_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = config.get("alerting") or {}
    return raw if isinstance(raw, dict) else {}


async def run_once(config_path: Path, settings: MonitorSettings) -> int:
    config = load_config(config_path)
    orch_cfg = build_orchestrator_config(config)
    worker_url = settings.worker_url or str(config.get("worker_url") or "")

    state_store = JsonFileStateStore(settings.state_dir)
    sqlite_store = SqliteMonitorStore(settings.db_path) if settings.sqlite_enabled else None

    alerting = _alerting_config(config)
    webhook_url = settings.alert_webhook_url or str(alerting.get("webhook_url") or "").strip()
    webhook_token = settings.alert_webhook_token or str(alerting.get("webhook_token") or "").strip()

    async with httpx.AsyncClient() as http_client:
        if webhook_url:
            dispatcher = WebhookAlertDispatcher(
                http_client,
                WebhookConfig(url=webhook_url, token=webhook_token or None),
            )
        else:
            LOGGER.warning("No alert webhook configured; alerts will only be logged")
            dispatcher = LoggingAlertDispatcher()

        try:
            report = await run_monitoring_checks(
                orch_cfg,
                state_store=state_store,
                resolve_url=lambda url: resolve_check_url(url, worker_url),
                metrics=sqlite_store,
                incidents=sqlite_store,
                maintenance=sqlite_store,
                dispatcher=dispatcher,
                pruner=sqlite_store,
                client=http_client,
            )
        except Exception:
            LOGGER.exception(
                "Monitoring tick failed state_dir=%s state_key=%s",
                settings.state_dir,
                orch_cfg.state_key,
            )
            return 1

    failing = [cid for cid, r in report.results.items() if not r.success]
    LOGGER.info(
        "Tick complete checks=%s failing=%s alerts=%s skipped=%s",
        len(report.results),
        len(failing),
        len(report.alerts),
        len(report.skipped),
    )
    return 0


def print_status(config_path: Path, settings: MonitorSettings) -> int:
    config = load_config(config_path)
    orch_cfg = build_orchestrator_config(config)
    state = JsonFileStateStore(settings.state_dir).load(orch_cfg.state_key)
    summary = build_status_summary(orch_cfg.checks, state)
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="HTTP endpoint monitor (one tick per invocation)")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "status"],
        help="run: execute one check tick; status: print the current status summary",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("MONITOR_CONFIG_PATH") or str(Path(__file__).with_name("config.yaml")),
        help="Path to YAML config",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # Request URLs may carry credentials in query strings.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    settings = MonitorSettings()
    if args.command == "status":
        return print_status(Path(args.config), settings)
    return asyncio.run(run_once(Path(args.config), settings))


if __name__ == "__main__":
    raise SystemExit(main())

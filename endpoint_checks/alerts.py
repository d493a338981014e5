from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Mapping

from endpoint_checks.models import CheckResult, CheckState
from endpoint_checks.state import coerce_check_state


@dataclass(frozen=True)
class Transition:
    new_state: CheckState
    alert_type: str | None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def compute_transition(
    state: CheckState | Mapping[str, Any] | None,
    result: CheckResult,
    threshold: int,
    *,
    now: str | None = None,
) -> Transition:
    """
    Fold one check result into the per-check state.

      unknown/healthy/degraded --fail--> degraded, or unhealthy once the streak reaches threshold (alert: failure)
      unhealthy --fail--> unhealthy (no repeat alert)
      any --ok--> healthy (alert: recovery, only when leaving unhealthy)
    """
    prior = state if isinstance(state, CheckState) else coerce_check_state(state, check_id=result.id)
    threshold = max(1, int(threshold))
    now = now or utc_now_iso()

    if result.success:
        return Transition(
            new_state=replace(
                prior,
                status="healthy",
                consecutive_failures=0,
                last_check=now,
                last_success=now,
                last_error=None,
                response_time_ms=result.response_time_ms,
            ),
            alert_type="recovery" if prior.status == "unhealthy" else None,
        )

    fail_streak = int(prior.consecutive_failures) + 1
    if prior.status == "unhealthy":
        # Partial legacy state or a raised threshold must not demote a down target.
        fail_streak = max(fail_streak, threshold)
    status = "unhealthy" if fail_streak >= threshold else "degraded"
    alert_type = "failure" if status == "unhealthy" and prior.status != "unhealthy" else None
    return Transition(
        new_state=replace(
            prior,
            status=status,
            consecutive_failures=fail_streak,
            last_check=now,
            last_error=result.error,
            response_time_ms=result.response_time_ms,
        ),
        alert_type=alert_type,
    )

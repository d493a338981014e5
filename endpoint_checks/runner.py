from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

import httpx

from endpoint_checks.assertions import effective_assertions, evaluate, requires_body
from endpoint_checks.models import CheckConfig, CheckResult


LOGGER = logging.getLogger("endpoint-monitor")

# Body capture ceiling; assertions see at most this many bytes of the response.
MAX_BODY_BYTES = 64 * 1024

WORKER_URL_PLACEHOLDER = "{{WORKER_URL}}"
DEFAULT_WORKER_URL = "http://localhost:8787"

_NO_BODY_METHODS = {"GET", "HEAD"}


def resolve_check_url(url: str, worker_url: str | None) -> str:
    """
    Substitute the {{WORKER_URL}} placeholder. Falls back to a local dev URL when unset.
    """
    base = (worker_url or "").strip().rstrip("/")
    return url.replace(WORKER_URL_PLACEHOLDER, base or DEFAULT_WORKER_URL)


def build_request_headers(check: CheckConfig, user_agent: str) -> httpx.Headers:
    headers = httpx.Headers({"User-Agent": user_agent})
    # httpx.Headers.update replaces case-insensitively, so check headers win.
    headers.update({str(k): str(v) for k, v in (check.headers or {}).items()})
    return headers


async def _read_capped_body(resp: httpx.Response, limit: int) -> str:
    buf = bytearray()
    async for chunk in resp.aiter_bytes():
        remaining = limit - len(buf)
        if remaining <= 0:
            break
        buf.extend(chunk[:remaining])
        if len(buf) >= limit:
            break
    return buf.decode("utf-8", errors="replace")


async def _send(
    client: httpx.AsyncClient,
    check: CheckConfig,
    url: str,
    headers: httpx.Headers,
    *,
    read_body: bool,
) -> tuple[int, httpx.Headers, str | None]:
    method = (check.method or "GET").upper()
    content = None
    if check.body is not None and method not in _NO_BODY_METHODS:
        content = check.body.encode("utf-8")

    timeout_seconds = max(0.001, check.timeout_ms / 1000.0)
    async with client.stream(
        method,
        url,
        headers=headers,
        content=content,
        follow_redirects=True,
        timeout=timeout_seconds,
    ) as resp:
        body = await _read_capped_body(resp, MAX_BODY_BYTES) if read_body else None
        return resp.status_code, resp.headers, body


async def run_check_once(
    check: CheckConfig,
    resolved_url: str,
    user_agent: str,
    *,
    client: httpx.AsyncClient,
) -> CheckResult:
    assertions = effective_assertions(check.assertions)
    timeout_ms = int(check.timeout_ms)

    started = time.perf_counter()
    try:
        # Non-ASCII header values raise here; they must fail this check only.
        headers = build_request_headers(check, user_agent)
        status_code, resp_headers, body = await asyncio.wait_for(
            _send(client, check, resolved_url, headers, read_body=requires_body(assertions)),
            timeout=max(0.001, timeout_ms / 1000.0),
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        return CheckResult(
            id=check.id,
            success=False,
            status_code=None,
            response_time_ms=_elapsed_ms(started),
            error=f"Timeout after {timeout_ms}ms",
        )
    except Exception as exc:
        return CheckResult(
            id=check.id,
            success=False,
            status_code=None,
            response_time_ms=_elapsed_ms(started),
            error=f"{type(exc).__name__}: {exc}",
        )

    elapsed_ms = _elapsed_ms(started)
    failures = evaluate(
        assertions,
        status_code=status_code,
        headers=resp_headers,
        elapsed_ms=elapsed_ms,
        body=body,
    )
    return CheckResult(
        id=check.id,
        success=not failures,
        status_code=status_code,
        response_time_ms=elapsed_ms,
        error="; ".join(failures) if failures else None,
    )


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000.0))


async def run_check(
    check: CheckConfig,
    resolved_url: str,
    user_agent: str,
    *,
    client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CheckResult:
    """
    Probe one check, retrying failed attempts up to `check.retry_count` times.

    Only the last attempt's result is returned. The check itself is never modified.
    """
    if client is None:
        async with httpx.AsyncClient() as own_client:
            return await run_check(check, resolved_url, user_agent, client=own_client, sleep=sleep)

    attempts = 1 + max(0, int(check.retry_count))
    delay_seconds = max(0, int(check.retry_delay_ms)) / 1000.0

    attempt = 1
    result = await run_check_once(check, resolved_url, user_agent, client=client)
    while not result.success and attempt < attempts:
        LOGGER.info(
            "Check attempt failed; retrying id=%s attempt=%s/%s error=%s",
            check.id,
            attempt,
            attempts,
            result.error,
        )
        await sleep(delay_seconds)
        attempt += 1
        result = await run_check_once(check, resolved_url, user_agent, client=client)
    return result

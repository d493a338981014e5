from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

from endpoint_checks.models import (
    DEFAULT_ASSERTION,
    OPERATORS,
    Assertion,
    BodyAssertion,
    HeaderAssertion,
    ResponseTimeAssertion,
    StatusCodeAssertion,
)


_TYPE_ALIASES = {
    "status_code": "status_code",
    "statuscode": "status_code",
    "status": "status_code",
    "header": "header",
    "body": "body",
    "response_time": "response_time",
    "responsetime": "response_time",
}

_OPERATOR_ALIASES = {
    "is": "is",
    "equals": "is",
    "is_not": "is_not",
    "isnot": "is_not",
    "contains": "contains",
    "not_contains": "not_contains",
    "notcontains": "not_contains",
    "matches": "matches",
    "less_than": "less_than",
    "lessthan": "less_than",
}

_INT_OPERATORS = {"is", "is_not", "less_than"}


def _normalize_operator(raw: Any, *, where: str) -> str:
    key = str(raw or "").strip().lower().replace("-", "_")
    op = _OPERATOR_ALIASES.get(key) or _OPERATOR_ALIASES.get(key.replace("_", ""))
    if op is None:
        raise ValueError(f"{where}.operator must be one of {list(OPERATORS)}, got {raw!r}")
    return op


def _strict_int(value: Any, *, where: str) -> int:
    # bool is an int subclass; reject it so `true` never means status 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{where}.value must be an integer, got {value!r}")
    return value


def parse_assertion(raw: Any, *, where: str = "assertion") -> Assertion:
    """
    Build a typed assertion from its config mapping, e.g.
    {"type": "header", "name": "content-type", "operator": "contains", "value": "json"}.
    camelCase spellings (statusCode, notContains, lessThan) are accepted too.
    """
    if not isinstance(raw, Mapping):
        raise ValueError(f"{where} must be a mapping, got {type(raw).__name__}")

    kind_key = str(raw.get("type") or "").strip().lower().replace("-", "_")
    kind = _TYPE_ALIASES.get(kind_key) or _TYPE_ALIASES.get(kind_key.replace("_", ""))
    if kind is None:
        raise ValueError(f"{where}.type must be one of status_code/header/body/response_time, got {raw.get('type')!r}")

    operator = _normalize_operator(raw.get("operator", "is"), where=where)
    if "value" not in raw:
        raise ValueError(f"{where}.value is required")
    value = raw["value"]

    if kind == "status_code":
        if operator in _INT_OPERATORS:
            return StatusCodeAssertion(operator=operator, value=_strict_int(value, where=where))
        return StatusCodeAssertion(operator=operator, value=str(value))

    if kind == "header":
        name = str(raw.get("name") or raw.get("property") or raw.get("header") or "").strip()
        if not name:
            raise ValueError(f"{where}.name is required for header assertions")
        return HeaderAssertion(name=name, operator=operator, value=str(value))

    if kind == "body":
        return BodyAssertion(operator=operator, value=str(value))

    try:
        threshold = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.value must be a number of milliseconds, got {value!r}") from exc
    return ResponseTimeAssertion(operator=operator, value=threshold)


def parse_assertions(items: Any, *, where: str = "assertions") -> tuple[Assertion, ...]:
    if items is None:
        return ()
    if not isinstance(items, list):
        raise ValueError(f"{where} must be a list")
    return tuple(parse_assertion(item, where=f"{where}[{idx}]") for idx, item in enumerate(items))


def effective_assertions(assertions: Iterable[Assertion]) -> tuple[Assertion, ...]:
    items = tuple(assertions or ())
    return items if items else (DEFAULT_ASSERTION,)


def requires_body(assertions: Iterable[Assertion]) -> bool:
    return any(isinstance(a, BodyAssertion) for a in assertions)


def _check_text(label: str, actual: str, operator: str, expected: str) -> str | None:
    if operator == "is":
        if actual != expected:
            return f"Expected {label} to be {expected!r}, got {actual[:200]!r}"
        return None
    if operator == "is_not":
        if actual == expected:
            return f"Expected {label} not to be {expected!r}"
        return None
    if operator == "contains":
        if expected not in actual:
            return f"Expected {label} to contain {expected!r}"
        return None
    if operator == "not_contains":
        if expected in actual:
            return f"Expected {label} not to contain {expected!r}"
        return None
    if operator == "matches":
        try:
            pattern = re.compile(expected)
        except re.error as exc:
            return f"Invalid regex {expected!r} for {label}: {exc}"
        if pattern.search(actual) is None:
            return f"Expected {label} to match {expected!r}"
        return None
    return f"Operator {operator!r} is not supported for {label}"


def _check_status(assertion: StatusCodeAssertion, status_code: int | None) -> str | None:
    if status_code is None:
        return f"Expected status {assertion.operator} {assertion.value}, got no status"
    op = assertion.operator
    expected = assertion.value
    if op in _INT_OPERATORS and isinstance(expected, int):
        if op == "is" and status_code != expected:
            return f"Expected status {expected}, got {status_code}"
        if op == "is_not" and status_code == expected:
            return f"Expected status other than {expected}, got {status_code}"
        if op == "less_than" and not status_code < expected:
            return f"Expected status less than {expected}, got {status_code}"
        return None
    return _check_text("status", str(status_code), op, str(expected))


def _check_header(assertion: HeaderAssertion, headers: Mapping[str, str]) -> str | None:
    label = f"header {assertion.name!r}"
    actual = _lookup_header(headers, assertion.name)
    if actual is None:
        if assertion.operator in {"contains", "not_contains"}:
            return f"Expected {label} to be present"
        actual = ""
    return _check_text(label, actual, assertion.operator, assertion.value)


def _lookup_header(headers: Mapping[str, str], name: str) -> str | None:
    val = headers.get(name)
    if val is not None:
        return str(val)
    wanted = name.lower()
    for key, v in headers.items():
        if str(key).lower() == wanted:
            return str(v)
    return None


def _check_body(assertion: BodyAssertion, body: str | None) -> str | None:
    if body is None:
        return "Body assertion could not be evaluated: response body was not read"
    return _check_text("body", body, assertion.operator, assertion.value)


def _check_response_time(assertion: ResponseTimeAssertion, elapsed_ms: float) -> str | None:
    if assertion.operator != "less_than":
        return f"Operator {assertion.operator!r} is not supported for response time"
    threshold = float(assertion.value)
    if float(elapsed_ms) >= threshold:
        return f"Expected response time below {threshold:g}ms, got {float(elapsed_ms):g}ms"
    return None


def evaluate(
    assertions: Iterable[Assertion],
    *,
    status_code: int | None,
    headers: Mapping[str, str],
    elapsed_ms: float,
    body: str | None,
) -> list[str]:
    """
    Returns one failure reason per violated assertion (empty list means pass).

    Never substitutes a default assertion; callers wanting the implicit
    `status_code is 200` go through `effective_assertions` first.
    """
    failures: list[str] = []
    for assertion in assertions:
        if isinstance(assertion, StatusCodeAssertion):
            reason = _check_status(assertion, status_code)
        elif isinstance(assertion, HeaderAssertion):
            reason = _check_header(assertion, headers)
        elif isinstance(assertion, BodyAssertion):
            reason = _check_body(assertion, body)
        elif isinstance(assertion, ResponseTimeAssertion):
            reason = _check_response_time(assertion, elapsed_ms)
        else:
            raise TypeError(f"Unsupported assertion type: {type(assertion).__name__}")
        if reason:
            failures.append(reason)
    return failures

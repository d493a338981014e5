"""HTTP endpoint monitoring: scheduled probes, debounced alerts and status history.

Each `run` invocation executes one tick over the configured checks. Check state
persists between ticks in a JSON document; incidents, maintenance windows and
per-result metrics optionally live in SQLite.
"""

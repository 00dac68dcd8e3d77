"""
Prometheus collectors for the reply pipeline.

Exposed by the operator API at /metrics; Celery workers that want scraping can
start prometheus_client's own HTTP server.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

MESSAGES_ROUTED_TOTAL = Counter(
    "reply_pipeline_messages_routed_total",
    "Routing decisions by lane and reason",
    ["lane", "reason"],
)
QUEUE_DEPTH = Gauge(
    "reply_pipeline_queue_depth",
    "Pending tasks per lane",
    ["lane"],
)
LOCK_ACQUISITIONS_TOTAL = Counter(
    "reply_pipeline_lock_acquisitions_total",
    "Session lock acquisition outcomes",
    ["result"],
)
LOCK_LOST_TOTAL = Counter(
    "reply_pipeline_lock_lost_total",
    "Results discarded because the worker no longer owned the session lease",
)
EXTERNAL_CALL_SECONDS = Histogram(
    "reply_pipeline_external_call_seconds",
    "Latency of completion service calls",
    ["outcome"],
    buckets=(0.5, 1, 2, 4, 6, 8, 10, 12, 15, 20, 30, 60),
)
CIRCUIT_STATE = Gauge(
    "reply_pipeline_circuit_state",
    "Circuit state per operation (0=closed, 1=half_open, 2=open)",
    ["operation"],
)
RETRIES_TOTAL = Counter(
    "reply_pipeline_retries_total",
    "Retries scheduled by the retry handler",
    ["lane"],
)
DEAD_LETTERS_TOTAL = Counter(
    "reply_pipeline_dead_letters_total",
    "Messages parked as dead letters",
    ["reason"],
)
MESSAGES_PROCESSED_TOTAL = Counter(
    "reply_pipeline_messages_processed_total",
    "Worker outcomes per lane",
    ["lane", "outcome"],
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def set_circuit_state(operation: str, state: str) -> None:
    CIRCUIT_STATE.labels(operation=operation).set(_CIRCUIT_STATE_VALUES.get(str(state), 0))


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = [
    "CIRCUIT_STATE",
    "DEAD_LETTERS_TOTAL",
    "EXTERNAL_CALL_SECONDS",
    "LOCK_ACQUISITIONS_TOTAL",
    "LOCK_LOST_TOTAL",
    "MESSAGES_PROCESSED_TOTAL",
    "MESSAGES_ROUTED_TOTAL",
    "QUEUE_DEPTH",
    "RETRIES_TOTAL",
    "render_latest",
    "set_circuit_state",
]

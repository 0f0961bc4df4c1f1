"""
Prometheus metrics for the chat relay.

Metrics are created lazily by init_metrics() and every track_* helper is a
no-op until then, so library users that never call it pay nothing.

Usage:
    from chat_relay.metrics import start_metrics_server, track_delivered

    start_metrics_server(port=9108)
    track_delivered("chat_message")
"""

import logging
import threading
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

EVENTS_PUBLISHED: Optional[Counter] = None
EVENTS_DELIVERED: Optional[Counter] = None
DUPLICATES_TOTAL: Optional[Counter] = None
DECODE_FAILURES: Optional[Counter] = None
ENCODING_FAILURES: Optional[Counter] = None
OUTBOUND_DROPPED: Optional[Counter] = None
VISIBILITY_FAILURES: Optional[Counter] = None
RECONNECTS_TOTAL: Optional[Counter] = None
SESSION_STATE: Optional[Gauge] = None
OUTBOUND_DEPTH: Optional[Gauge] = None

SESSION_STATE_VALUES = {"disconnected": 0, "connecting": 1, "connected": 2, "draining": 3}

_metrics_initialized = False
_metrics_lock = threading.Lock()


def init_metrics(registry: Optional[CollectorRegistry] = None) -> None:
    """Register relay metrics once per process (thread-safe).

    ``registry`` defaults to the prometheus_client global registry.
    """
    global EVENTS_PUBLISHED, EVENTS_DELIVERED, DUPLICATES_TOTAL, DECODE_FAILURES
    global ENCODING_FAILURES, OUTBOUND_DROPPED, VISIBILITY_FAILURES, RECONNECTS_TOTAL
    global SESSION_STATE, OUTBOUND_DEPTH, _metrics_initialized

    with _metrics_lock:
        if _metrics_initialized:
            return
        kwargs = {"registry": registry} if registry is not None else {}

        EVENTS_PUBLISHED = Counter(
            "chat_relay_events_published_total",
            "Locally originated events handed to the transport",
            labelnames=["kind"], **kwargs,
        )
        EVENTS_DELIVERED = Counter(
            "chat_relay_events_delivered_total",
            "Events fanned out to local consumers (loop-back and remote)",
            labelnames=["kind"], **kwargs,
        )
        DUPLICATES_TOTAL = Counter(
            "chat_relay_duplicates_total",
            "Remote events absorbed by the dedup cache", **kwargs,
        )
        DECODE_FAILURES = Counter(
            "chat_relay_decode_failures_total",
            "Inbound messages dropped because they could not be decoded", **kwargs,
        )
        ENCODING_FAILURES = Counter(
            "chat_relay_encoding_failures_total",
            "Local events dropped because they could not be encoded", **kwargs,
        )
        OUTBOUND_DROPPED = Counter(
            "chat_relay_outbound_dropped_total",
            "Outbound events dropped because the buffer was full", **kwargs,
        )
        VISIBILITY_FAILURES = Counter(
            "chat_relay_visibility_failures_total",
            "Visibility provider errors or timeouts (failed open)", **kwargs,
        )
        RECONNECTS_TOTAL = Counter(
            "chat_relay_reconnects_total",
            "Broker connection attempts after the first", **kwargs,
        )
        SESSION_STATE = Gauge(
            "chat_relay_session_state",
            "Transport session state (0=disconnected 1=connecting 2=connected 3=draining)", **kwargs,
        )
        OUTBOUND_DEPTH = Gauge(
            "chat_relay_outbound_depth",
            "Events waiting in the outbound buffer", **kwargs,
        )

        _metrics_initialized = True
        logger.info("Prometheus metrics initialized")


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> None:
    """Initialize metrics and serve /metrics from a daemon thread."""
    init_metrics()
    try:
        start_http_server(port, addr=addr)
        logger.info(f"Metrics server started on http://{addr}:{port}/metrics")
    except OSError as e:
        logger.error(f"Failed to start metrics server: {e}")


def track_published(kind: str) -> None:
    if EVENTS_PUBLISHED is not None:
        EVENTS_PUBLISHED.labels(kind=kind).inc()


def track_delivered(kind: str) -> None:
    if EVENTS_DELIVERED is not None:
        EVENTS_DELIVERED.labels(kind=kind).inc()


def track_duplicate() -> None:
    if DUPLICATES_TOTAL is not None:
        DUPLICATES_TOTAL.inc()


def track_decode_failure() -> None:
    if DECODE_FAILURES is not None:
        DECODE_FAILURES.inc()


def track_encoding_failure() -> None:
    if ENCODING_FAILURES is not None:
        ENCODING_FAILURES.inc()


def track_outbound_dropped(count: int = 1) -> None:
    if OUTBOUND_DROPPED is not None:
        OUTBOUND_DROPPED.inc(count)


def track_visibility_failure() -> None:
    if VISIBILITY_FAILURES is not None:
        VISIBILITY_FAILURES.inc()


def track_reconnect() -> None:
    if RECONNECTS_TOTAL is not None:
        RECONNECTS_TOTAL.inc()


def set_session_state(state: str) -> None:
    if SESSION_STATE is not None:
        SESSION_STATE.set(SESSION_STATE_VALUES.get(state, 0))


def set_outbound_depth(depth: int) -> None:
    if OUTBOUND_DEPTH is not None:
        OUTBOUND_DEPTH.set(depth)

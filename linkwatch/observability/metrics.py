"""Prometheus metric definitions for linkwatch self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
QUALITY_SCORE_BUCKETS = (10.0, 20.0, 30.0, 40.0, 50.0, 60.0, 75.0, 90.0, 100.0)
STATUS_CHECK_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)

# ---------------------------------------------------------------------------
# Request-level metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "linkwatch_request_duration_seconds",
    "End-to-end request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "linkwatch_requests_total",
    "Total number of requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Connection event / quality metrics (populated by the monitor service)
# ---------------------------------------------------------------------------

CONNECTION_EVENTS_TOTAL = Counter(
    "linkwatch_connection_events_total",
    "Total number of connection events appended to session logs",
    labelnames=["type"],
)

SESSION_QUALITY_SCORE = Histogram(
    "linkwatch_session_quality_score",
    "Session quality score observed after each appended event",
    buckets=QUALITY_SCORE_BUCKETS,
)

SESSIONS_TOTAL = Counter(
    "linkwatch_sessions_total",
    "Total number of sessions by lifecycle stage",
    labelnames=["stage"],
)

# ---------------------------------------------------------------------------
# Alert metrics
# ---------------------------------------------------------------------------

ALERTS_TOTAL = Counter(
    "linkwatch_alerts_total",
    "Total number of alerts created",
    labelnames=["type", "severity"],
)

UNACKNOWLEDGED_ALERTS = Gauge(
    "linkwatch_unacknowledged_alerts",
    "Number of alerts in the active set that are not acknowledged",
)

# ---------------------------------------------------------------------------
# Reconnection monitor metrics
# ---------------------------------------------------------------------------

STATUS_CHECKS_TOTAL = Counter(
    "linkwatch_status_checks_total",
    "Total number of process liveness checks",
    labelnames=["outcome"],
)

STATUS_CHECK_DURATION = Histogram(
    "linkwatch_status_check_duration_seconds",
    "Duration of process liveness checks in seconds",
    buckets=STATUS_CHECK_BUCKETS,
)

RECONNECT_ATTEMPTS_TOTAL = Counter(
    "linkwatch_reconnect_attempts_total",
    "Total number of reconnection attempts",
    labelnames=["outcome"],
)

MONITOR_STATE = Gauge(
    "linkwatch_monitor_state",
    "Current reconnection monitor state (1 for the active state, 0 otherwise)",
    labelnames=["process_id", "state"],
)

# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

APP_INFO = Info(
    "linkwatch",
    "linkwatch build information",
)

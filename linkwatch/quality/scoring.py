"""Connection quality scoring.

Two formulas live here and are deliberately kept apart:

- ``calculate_quality_score`` works on a session's persisted metrics and is the
  value stored in ``ConnectionMetrics.quality_score`` (and used for alerting and
  historical aggregates).
- ``calculate_event_stream_quality`` works on a raw list of events and feeds the
  quality indicator / chart views and the client-side insights.

The two can disagree for the same session; callers depend on each one's values.
"""

import math
from collections.abc import Sequence
from typing import Protocol

from linkwatch.models import (
    ConnectionEvent,
    ConnectionEventType,
    QualityMetrics,
    QualityReport,
    Session,
)

# (inclusive lower bound, label, color)
_QUALITY_BANDS: list[tuple[int, str, str]] = [
    (90, "Excellent", "#28a745"),
    (75, "Good", "#4caf50"),
    (60, "Fair", "#ffc107"),
    (40, "Poor", "#fd7e14"),
    (0, "Critical", "#dc3545"),
]
NO_DATA_LABEL = "N/A"
NO_DATA_COLOR = "#6c757d"

MAX_DISCONNECTION_PENALTY = 30
MAX_DOWNTIME_PENALTY = 40
MAX_LATENCY_PENALTY = 10
RECONNECTION_PENALTY_WEIGHT = 20


class QualityCalculator(Protocol):
    """Capability used by the aggregator, alert engine and service to score quality."""

    def score_session(self, session: Session) -> int: ...

    def score_events(self, events: Sequence[ConnectionEvent]) -> QualityReport: ...


class DefaultQualityCalculator:
    """Binds the two module-level formulas to the QualityCalculator protocol."""

    def score_session(self, session: Session) -> int:
        return calculate_quality_score(session)

    def score_events(self, events: Sequence[ConnectionEvent]) -> QualityReport:
        return calculate_event_stream_quality(events)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round .5 away from zero for positives (builtin round() uses banker's rounding)."""
    factor = 10**ndigits
    return math.floor(value * factor + 0.5) / factor


def session_duration_ms(session: Session) -> int:
    """Elapsed session time in ms, floored at 1 so it is always a safe divisor."""
    elapsed = (session.updated_at - session.created_at).total_seconds() * 1000
    return max(1, int(elapsed))


def downtime_percentage(session: Session) -> float:
    """Share of the session spent disconnected, capped at 100."""
    total = session.connection_metrics.total_disconnection_time
    return min(total / session_duration_ms(session) * 100, 100.0)


def stability_percentage(session: Session) -> int:
    duration = session_duration_ms(session)
    stable_time = max(0, duration - session.connection_metrics.total_disconnection_time)
    return int(round_half_up(_clamp(stable_time / duration * 100, 0, 100)))


def calculate_quality_score(session: Session) -> int:
    """Score a session 0-100 from its persisted connection metrics.

    Starts at 100 and subtracts:
      - 5 points per disconnection, at most 30
      - 0.4 points per percent of time disconnected, at most 40
      - (1 - reconnection success rate) * 20, once any reconnection happened
      - average latency / 100, at most 10
    """
    metrics = session.connection_metrics
    score = 100.0

    score -= min(metrics.disconnection_count * 5, MAX_DISCONNECTION_PENALTY)
    score -= min(downtime_percentage(session) * 0.4, MAX_DOWNTIME_PENALTY)

    if metrics.reconnection_count > 0:
        score -= (1 - metrics.reconnection_success_rate) * RECONNECTION_PENALTY_WEIGHT

    if metrics.average_latency:
        score -= min(metrics.average_latency / 100, MAX_LATENCY_PENALTY)

    return int(round_half_up(_clamp(score, 0, 100)))


def quality_label(score: float) -> str:
    for lower, label, _ in _QUALITY_BANDS:
        if score >= lower:
            return label
    return _QUALITY_BANDS[-1][1]


def quality_color(score: float) -> str:
    for lower, _, color in _QUALITY_BANDS:
        if score >= lower:
            return color
    return _QUALITY_BANDS[-1][2]


def event_stream_metrics(events: Sequence[ConnectionEvent]) -> QualityMetrics:
    """Downtime %, disconnections per minute and reconnect success % of an event list."""
    if not events:
        return QualityMetrics()

    span_ms = (events[-1].timestamp - events[0].timestamp).total_seconds() * 1000
    downtime_ms = sum(e.duration or 0 for e in events)
    disconnected = sum(1 for e in events if e.type == ConnectionEventType.DISCONNECTED)
    reconnected = sum(1 for e in events if e.type == ConnectionEventType.RECONNECTED)

    return QualityMetrics(
        downtime_percent=downtime_ms / span_ms * 100 if span_ms > 0 else 0.0,
        disconnection_frequency=disconnected / (span_ms / 60_000) if span_ms > 0 else 0.0,
        reconnect_success=reconnected / disconnected * 100 if disconnected > 0 else 100.0,
    )


def calculate_event_stream_quality(events: Sequence[ConnectionEvent]) -> QualityReport:
    """Score a raw event stream: 100 - downtime%*0.5 - disconnects/min*10 + reconnect%*0.2."""
    if not events:
        return QualityReport(score=0, label=NO_DATA_LABEL, color=NO_DATA_COLOR)

    metrics = event_stream_metrics(events)
    score = 100.0
    score -= metrics.downtime_percent * 0.5
    score -= metrics.disconnection_frequency * 10
    score += metrics.reconnect_success * 0.2
    final = int(round_half_up(_clamp(score, 0, 100)))

    return QualityReport(score=final, label=quality_label(final), color=quality_color(final), metrics=metrics)

"""Historical connection trends across sessions.

Two independent trend algorithms are provided:

- ``HistoricalTracker`` keeps one stored aggregate per calendar period
  (day/week/month/all) and derives the trend by comparing a newly computed
  average quality score with the previously stored one.
- ``trend_direction`` splits a time-ordered series into thirds and compares
  the first and last third; it drives the rolling-window summaries and the
  insight list.
"""

import logging
import sqlite3
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from linkwatch.models import (
    ConnectionEventType,
    HistoricalMetrics,
    HistoricalPeriod,
    Session,
    TrendDirection,
)
from linkwatch.quality.scoring import (
    calculate_event_stream_quality,
    downtime_percentage,
    round_half_up,
)
from linkwatch.store import get_historical_metrics, list_sessions_since, save_historical_metrics

logger = logging.getLogger(__name__)

ALL_TIME_START = datetime(2000, 1, 1, tzinfo=UTC)
TREND_BAND_PCT = 5.0

PROBLEM_QUALITY_BELOW = 60
PROBLEM_DISCONNECTIONS_AT = 3
PROBLEM_RECONNECTION_BELOW = 0.7

# Rolling windows used by the insight summaries (None = unbounded)
_ROLLING_WINDOWS: dict[HistoricalPeriod, timedelta | None] = {
    HistoricalPeriod.DAY: timedelta(days=1),
    HistoricalPeriod.WEEK: timedelta(days=7),
    HistoricalPeriod.MONTH: timedelta(days=30),
    HistoricalPeriod.ALL: None,
}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def period_start(period: HistoricalPeriod, now: datetime | None = None) -> datetime:
    """Start of the calendar period containing ``now``, in local time.

    Weeks start on Sunday.
    """
    local = (now or datetime.now(UTC)).astimezone()
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    match period:
        case HistoricalPeriod.DAY:
            return midnight
        case HistoricalPeriod.WEEK:
            days_since_sunday = (midnight.weekday() + 1) % 7
            return midnight - timedelta(days=days_since_sunday)
        case HistoricalPeriod.MONTH:
            return midnight.replace(day=1)
        case _:
            return ALL_TIME_START


def average(values: Sequence[float]) -> float:
    """Arithmetic mean rounded to one decimal; 0 for an empty sequence."""
    if not values:
        return 0.0
    return round_half_up(sum(values) / len(values), 1)


def _classify_change(change_pct: float) -> TrendDirection:
    if change_pct > TREND_BAND_PCT:
        return TrendDirection.IMPROVING
    if change_pct < -TREND_BAND_PCT:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def trend_direction(values: Sequence[float]) -> TrendDirection:
    """Compare the mean of the first third of a time-ordered series with the last third."""
    third = len(values) // 3
    if third == 0:
        return TrendDirection.STABLE

    first_avg = sum(values[:third]) / third
    last_avg = sum(values[-third:]) / third
    if first_avg == 0:
        return TrendDirection.IMPROVING if last_avg > 0 else TrendDirection.STABLE

    change_pct = (last_avg - first_avg) / first_avg * 100
    if abs(change_pct) < TREND_BAND_PCT:
        return TrendDirection.STABLE
    return TrendDirection.IMPROVING if change_pct > 0 else TrendDirection.DECLINING


def is_problem_session(session: Session) -> bool:
    metrics = session.connection_metrics
    return (
        metrics.quality_score < PROBLEM_QUALITY_BELOW
        or metrics.disconnection_count >= PROBLEM_DISCONNECTIONS_AT
        or metrics.reconnection_success_rate < PROBLEM_RECONNECTION_BELOW
    )


# ---------------------------------------------------------------------------
# Stored per-period aggregates
# ---------------------------------------------------------------------------


class HistoricalTracker:
    """Recomputes and stores one HistoricalMetrics row per period."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def recompute(
        self,
        period: HistoricalPeriod,
        sessions: Sequence[Session],
        now: datetime | None = None,
    ) -> HistoricalMetrics:
        """Aggregate ``sessions`` (those created since the period start) and store the result."""
        now = now or datetime.now(UTC)
        previous = get_historical_metrics(self._conn, period)

        metrics = HistoricalMetrics(
            period=period,
            start_time=period_start(period, now),
            end_time=now,
            average_quality_score=average([s.connection_metrics.quality_score for s in sessions]),
            average_disconnection_count=average([s.connection_metrics.disconnection_count for s in sessions]),
            average_downtime_percentage=average([downtime_percentage(s) for s in sessions]),
            session_count=len(sessions),
            problem_session_count=sum(1 for s in sessions if is_problem_session(s)),
        )

        if previous is not None and previous.average_quality_score:
            old = previous.average_quality_score
            change = round_half_up((metrics.average_quality_score - old) / old * 100, 1)
            metrics.change_percentage = change
            metrics.trend = _classify_change(change)

        save_historical_metrics(self._conn, metrics)
        return metrics

    def update_all(self, now: datetime | None = None) -> list[HistoricalMetrics]:
        """Recompute every period from the store. A failing period does not stop the others."""
        now = now or datetime.now(UTC)
        results: list[HistoricalMetrics] = []
        for period in HistoricalPeriod:
            try:
                sessions = list_sessions_since(self._conn, period_start(period, now))
                results.append(self.recompute(period, sessions, now))
            except sqlite3.Error:
                logger.exception("Failed to update historical metrics for period %s", period)
        return results

    def get(self, period: HistoricalPeriod) -> HistoricalMetrics | None:
        return get_historical_metrics(self._conn, period)

    def get_all(self) -> dict[HistoricalPeriod, HistoricalMetrics | None]:
        return {period: self.get(period) for period in HistoricalPeriod}


# ---------------------------------------------------------------------------
# Rolling-window summaries and insights
# ---------------------------------------------------------------------------


class HistoryEntry(BaseModel):
    """One session scored with the event-stream formula."""

    id: str
    name: str
    url: str
    created_at: datetime
    quality_score: int
    quality_label: str
    downtime_percent: float
    disconnection_count: int
    reconnect_success: float
    event_counts: dict[str, int]
    duration_ms: int


class PeriodSummary(BaseModel):
    period: HistoricalPeriod
    total_sessions: int
    average_quality_score: float
    average_downtime_percent: float
    disconnection_rate: float  # disconnections per minute
    reconnection_success_rate: float  # %
    quality_distribution: dict[str, int]
    trend_direction: TrendDirection


class Insight(BaseModel):
    type: str
    title: str
    details: str
    trend: TrendDirection | None = None
    url: str | None = None


class SessionComparison(BaseModel):
    quality_difference: int
    downtime_difference: float
    disconnection_difference: int
    reconnection_difference: float
    overall_improvement: bool


def build_history_entries(sessions: Sequence[Session]) -> list[HistoryEntry]:
    """Score each session's event stream. Sessions without events are skipped."""
    entries: list[HistoryEntry] = []
    for session in sessions:
        events = sorted(session.connection_events, key=lambda e: e.timestamp)
        if not events:
            continue
        report = calculate_event_stream_quality(events)
        counts = {t.value: 0 for t in ConnectionEventType}
        for event in events:
            counts[event.type.value] += 1
        metrics = report.metrics
        entries.append(
            HistoryEntry(
                id=session.id,
                name=session.name or "Unnamed Session",
                url=session.url,
                created_at=session.created_at,
                quality_score=report.score,
                quality_label=report.label,
                downtime_percent=metrics.downtime_percent if metrics else 0.0,
                disconnection_count=counts[ConnectionEventType.DISCONNECTED.value],
                reconnect_success=metrics.reconnect_success if metrics else 100.0,
                event_counts=counts,
                duration_ms=int((events[-1].timestamp - events[0].timestamp).total_seconds() * 1000),
            )
        )
    return entries


def _mean(entries: Sequence[HistoryEntry], key: Callable[[HistoryEntry], float]) -> float:
    if not entries:
        return 0.0
    return sum(key(e) for e in entries) / len(entries)


def summarize_period(
    entries: Sequence[HistoryEntry],
    period: HistoricalPeriod,
    now: datetime | None = None,
) -> PeriodSummary | None:
    """Summarize the entries created within the rolling window of ``period``."""
    now = now or datetime.now(UTC)
    window = _ROLLING_WINDOWS[period]
    selected = [e for e in entries if window is None or now - e.created_at < window]
    if not selected:
        return None

    ordered = sorted(selected, key=lambda e: e.created_at)
    distribution = {"excellent": 0, "good": 0, "fair": 0, "poor": 0, "critical": 0}
    for entry in selected:
        label = entry.quality_label.lower()
        if label in distribution:
            distribution[label] += 1

    return PeriodSummary(
        period=period,
        total_sessions=len(selected),
        average_quality_score=_mean(selected, lambda e: e.quality_score),
        average_downtime_percent=_mean(selected, lambda e: e.downtime_percent),
        disconnection_rate=_mean(
            selected,
            lambda e: e.event_counts.get("disconnected", 0) / max(1, e.duration_ms / 60_000),
        ),
        reconnection_success_rate=_mean(selected, lambda e: e.reconnect_success),
        quality_distribution=distribution,
        trend_direction=trend_direction([e.quality_score for e in ordered]),
    )


def compare_sessions(first: HistoryEntry, second: HistoryEntry) -> SessionComparison:
    """Differences of ``second`` relative to ``first``."""
    quality_diff = second.quality_score - first.quality_score
    return SessionComparison(
        quality_difference=quality_diff,
        downtime_difference=second.downtime_percent - first.downtime_percent,
        disconnection_difference=second.disconnection_count - first.disconnection_count,
        reconnection_difference=second.reconnect_success - first.reconnect_success,
        overall_improvement=quality_diff > 0,
    )


def generate_insights(entries: Sequence[HistoryEntry], now: datetime | None = None) -> list[Insight]:
    """Human-readable observations about the last week and about problematic URLs."""
    week = summarize_period(entries, HistoricalPeriod.WEEK, now)
    if week is None:
        return []

    insights = [
        Insight(
            type="quality",
            title=f"Connection quality is {week.trend_direction}",
            details=f"Average quality score is {week.average_quality_score:.1f} over the last week.",
            trend=week.trend_direction,
        )
    ]

    if week.reconnection_success_rate < 80:
        insights.append(
            Insight(
                type="warning",
                title="Low reconnection success rate",
                details=(
                    f"Only {week.reconnection_success_rate:.1f}% of disconnections successfully reconnect."
                ),
                trend=TrendDirection.DECLINING,
            )
        )

    if week.disconnection_rate > 2:
        insights.append(
            Insight(
                type="warning",
                title="High disconnection rate",
                details=(
                    f"Sessions are experiencing an average of {week.disconnection_rate:.1f} "
                    "disconnections per minute."
                ),
                trend=TrendDirection.DECLINING,
            )
        )

    by_url: dict[str, list[HistoryEntry]] = {}
    for entry in entries:
        if entry.url:
            by_url.setdefault(entry.url, []).append(entry)

    worst_url: str | None = None
    worst_score = 100.0
    for url, group in by_url.items():
        if len(group) < 3:
            continue
        avg_quality = _mean(group, lambda e: e.quality_score)
        if avg_quality < worst_score:
            worst_score = avg_quality
            worst_url = url

    if worst_url is not None and worst_score < 70:
        host = urlparse(worst_url).hostname or worst_url
        insights.append(
            Insight(
                type="url",
                title="Problematic website identified",
                details=f"Sessions on {host} have an average quality score of {worst_score:.1f}.",
                url=worst_url,
            )
        )

    return insights


class HistorySnapshot(BaseModel):
    """Everything the trends view needs in one payload."""

    periods: dict[str, PeriodSummary | None] = Field(default_factory=dict)
    insights: list[Insight] = Field(default_factory=list)


def build_snapshot(sessions: Sequence[Session], now: datetime | None = None) -> HistorySnapshot:
    entries = build_history_entries(sessions)
    return HistorySnapshot(
        periods={p.value: summarize_period(entries, p, now) for p in HistoricalPeriod},
        insights=generate_insights(entries, now),
    )

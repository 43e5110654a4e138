"""Per-session connection metrics, updated as events are appended to the log."""

import logging

from linkwatch.models import ConnectionEvent, ConnectionEventType, ConnectionMetrics, Session
from linkwatch.quality.scoring import QualityCalculator, stability_percentage

logger = logging.getLogger(__name__)


def default_metrics(*, completed_normally: bool = False) -> ConnectionMetrics:
    """Metrics of a session that has not seen any trouble yet."""
    return ConnectionMetrics(completed_normally=completed_normally)


def _update_success_rate(metrics: ConnectionMetrics) -> None:
    attempts = metrics.reconnection_count + metrics.failed_reconnection_count
    if attempts > 0:
        metrics.reconnection_success_rate = metrics.reconnection_count / attempts


class MetricsAggregator:
    """Applies connection events to a session's ConnectionMetrics.

    Several fields (stability, average latency, quality) depend on the whole
    event history and on the elapsed session time, so every application ends
    with a recompute of those fields rather than an increment.
    """

    def __init__(self, calculator: QualityCalculator) -> None:
        self._calculator = calculator

    def apply_event(self, session: Session, event: ConnectionEvent) -> ConnectionMetrics:
        """Fold ``event`` into ``session.connection_metrics`` and return them.

        ``event`` must already be the last entry of ``session.connection_events``;
        applying the same event twice double-counts it.
        """
        metrics = session.connection_metrics
        position = len(session.connection_events) - 1
        self._apply_counts(metrics, event, is_first=position <= 0)

        if event.latency is not None:
            self._apply_latency(metrics, session, event.latency)

        self._finalize(session)
        return metrics

    def recompute(self, session: Session) -> ConnectionMetrics:
        """Rebuild metrics from scratch by replaying the full event log."""
        metrics = default_metrics(completed_normally=session.connection_metrics.completed_normally)
        for index, event in enumerate(session.connection_events):
            self._apply_counts(metrics, event, is_first=index == 0)
            if event.latency is not None:
                metrics.max_latency = max(metrics.max_latency, event.latency)

        latencies = [e.latency for e in session.connection_events if e.latency is not None]
        if latencies:
            metrics.average_latency = sum(latencies) / len(latencies)

        session.connection_metrics = metrics
        self._finalize(session)
        return metrics

    @staticmethod
    def _apply_counts(metrics: ConnectionMetrics, event: ConnectionEvent, *, is_first: bool) -> None:
        match event.type:
            case ConnectionEventType.DISCONNECTED:
                metrics.disconnection_count += 1
                if event.duration:
                    metrics.total_disconnection_time += event.duration
            case ConnectionEventType.RECONNECTED:
                metrics.reconnection_count += 1
                _update_success_rate(metrics)
            case ConnectionEventType.FAILED:
                metrics.failed_reconnection_count += 1
                _update_success_rate(metrics)
            case ConnectionEventType.CONNECTED:
                # The session's opening "connected" is not a reconnection.
                if not is_first:
                    metrics.reconnection_count += 1
                    _update_success_rate(metrics)
            case _:
                pass

    @staticmethod
    def _apply_latency(metrics: ConnectionMetrics, session: Session, latency: float) -> None:
        metrics.max_latency = max(metrics.max_latency, latency)
        latencies = [e.latency for e in session.connection_events if e.latency is not None]
        if latencies:
            metrics.average_latency = sum(latencies) / len(latencies)

    def _finalize(self, session: Session) -> None:
        metrics = session.connection_metrics
        metrics.stability_percentage = stability_percentage(session)
        metrics.quality_score = self._calculator.score_session(session)
        logger.debug(
            "Session %s metrics: quality=%d stability=%d%% disconnects=%d",
            session.id,
            metrics.quality_score,
            metrics.stability_percentage,
            metrics.disconnection_count,
        )

"""The monitoring service: one object that owns the store connection and the engines.

The API lifespan creates a single instance per process; tests build their own
instances on ``:memory:`` databases so nothing is shared between them.
"""

import logging
import sqlite3
import uuid
from collections.abc import Sequence
from datetime import datetime

from linkwatch.alerts.engine import AlertEngine, AlertSubscriber
from linkwatch.config import Settings
from linkwatch.history.trends import HistoricalTracker, HistorySnapshot, build_snapshot
from linkwatch.models import (
    AlertThresholds,
    ConnectionAlert,
    ConnectionEvent,
    ConnectionEventType,
    HistoricalMetrics,
    HistoricalPeriod,
    QualityReport,
    Session,
    utcnow,
)
from linkwatch.observability.metrics import (
    CONNECTION_EVENTS_TOTAL,
    SESSION_QUALITY_SCORE,
    SESSIONS_TOTAL,
    UNACKNOWLEDGED_ALERTS,
)
from linkwatch.quality.metrics import MetricsAggregator
from linkwatch.quality.scoring import DefaultQualityCalculator, QualityCalculator
from linkwatch.store import (
    append_event,
    bind_process,
    delete_session,
    find_session_by_process,
    get_initialized_connection,
    get_session,
    list_sessions,
    save_session,
)

logger = logging.getLogger(__name__)

SESSION_STARTED = "Session started"
SESSION_COMPLETED = "Session completed normally"
SESSION_RECOVERED = "Session recovered after page reload"


class MonitorService:
    def __init__(
        self,
        conn: sqlite3.Connection,
        calculator: QualityCalculator | None = None,
        thresholds: AlertThresholds | None = None,
    ) -> None:
        self._conn = conn
        self.calculator = calculator or DefaultQualityCalculator()
        self.aggregator = MetricsAggregator(self.calculator)
        self.alerts = AlertEngine(conn, thresholds)
        self.history = HistoricalTracker(conn)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitorService":
        conn = get_initialized_connection(settings.db_path)
        thresholds = AlertThresholds(
            quality_score=settings.alert_quality_score,
            disconnection_count=settings.alert_disconnection_count,
            reconnection_fail_rate=settings.alert_reconnection_fail_rate,
            downtime_threshold=settings.alert_downtime_threshold,
        )
        return cls(conn, thresholds=thresholds)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        url: str,
        script_path: str = "",
        name: str | None = None,
        process_id: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Session:
        """Create a session whose log opens with a ``connected`` event."""
        now = utcnow()
        session = Session(
            id=uuid.uuid4().hex,
            name=name or f"Recording {now:%Y-%m-%d %H:%M:%S}",
            url=url,
            script_path=script_path,
            process_id=process_id,
            tags=list(tags or []),
            created_at=now,
            updated_at=now,
        )
        opening = ConnectionEvent(timestamp=now, type=ConnectionEventType.CONNECTED, details=SESSION_STARTED)
        session.connection_events.append(opening)
        self.aggregator.apply_event(session, opening)
        save_session(self._conn, session)

        SESSIONS_TOTAL.labels(stage="created").inc()
        CONNECTION_EVENTS_TOTAL.labels(type=opening.type.value).inc()
        logger.info("Created session %s for %s (process %s)", session.id, url, process_id)
        self._refresh_history()
        return session

    def get_session(self, session_id: str) -> Session | None:
        return get_session(self._conn, session_id)

    def list_sessions(self) -> list[Session]:
        return list_sessions(self._conn)

    def find_session_by_process(self, process_id: str) -> Session | None:
        return find_session_by_process(self._conn, process_id)

    def bind_process(self, session_id: str, process_id: str) -> Session | None:
        """Attach a new recorder/replay process to an existing session."""
        if not bind_process(self._conn, session_id, process_id, utcnow()):
            return None
        logger.info("Session %s now bound to process %s", session_id, process_id)
        return get_session(self._conn, session_id)

    def delete_session(self, session_id: str) -> bool:
        deleted = delete_session(self._conn, session_id)
        if deleted:
            logger.info("Deleted session %s", session_id)
            self._update_alert_gauge()
        return deleted

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def record_event(
        self,
        session_id: str,
        event_type: ConnectionEventType,
        details: str | None = None,
        duration: int | None = None,
        latency: float | None = None,
        quality_indicator: float | None = None,
    ) -> Session | None:
        """Append an event to a session's log. Returns None when the session does not exist."""
        session = get_session(self._conn, session_id)
        if session is None:
            logger.warning("Cannot record %s event: session %s not found", event_type, session_id)
            return None
        event = ConnectionEvent(
            timestamp=utcnow(),
            type=event_type,
            duration=duration,
            details=details,
            latency=latency,
            quality_indicator=quality_indicator,
        )
        return self._append(session, event)

    def record_event_for_process(
        self,
        process_id: str,
        event_type: ConnectionEventType,
        details: str | None = None,
        duration: int | None = None,
        latency: float | None = None,
        quality_indicator: float | None = None,
    ) -> Session | None:
        session = find_session_by_process(self._conn, process_id)
        if session is None:
            logger.warning("Cannot record %s event: no session for process %s", event_type, process_id)
            return None
        return self.record_event(session.id, event_type, details, duration, latency, quality_indicator)

    def complete_session(self, session_id: str) -> Session | None:
        """Mark a session as completed normally. Completing twice is a no-op."""
        session = get_session(self._conn, session_id)
        if session is None:
            return None
        if session.completed:
            return session

        session.connection_metrics.completed_normally = True
        event = ConnectionEvent(timestamp=utcnow(), type=ConnectionEventType.CONNECTED, details=SESSION_COMPLETED)
        updated = self._append(session, event)
        if updated is not None:
            SESSIONS_TOTAL.labels(stage="completed").inc()
            logger.info("Session %s completed normally", session_id)
        return updated

    def recover_session(self, process_id: str) -> Session | None:
        session = find_session_by_process(self._conn, process_id)
        if session is None:
            return None
        event = ConnectionEvent(timestamp=utcnow(), type=ConnectionEventType.RECONNECTED, details=SESSION_RECOVERED)
        return self._append(session, event)

    def observe_process_exit(self, process_id: str, exit_code: int) -> Session | None:
        """Fold a recorder's exit code into its session: 0 completes it, anything else fails it."""
        session = find_session_by_process(self._conn, process_id)
        if session is None:
            return None
        if exit_code == 0:
            return self.complete_session(session.id)
        logger.warning("Process %s exited with code %d", process_id, exit_code)
        return self.record_event(
            session.id,
            ConnectionEventType.FAILED,
            f"Process terminated abnormally with code {exit_code}",
        )

    def _append(self, session: Session, event: ConnectionEvent) -> Session | None:
        session.connection_events.append(event)
        session.updated_at = max(utcnow(), event.timestamp)
        self.aggregator.apply_event(session, event)

        if not append_event(self._conn, session.id, event, session.connection_metrics, session.updated_at):
            logger.warning("Session %s disappeared before event could be stored", session.id)
            return None

        CONNECTION_EVENTS_TOTAL.labels(type=event.type.value).inc()
        SESSION_QUALITY_SCORE.observe(session.connection_metrics.quality_score)

        try:
            self.alerts.evaluate(session)
        except sqlite3.Error:
            logger.exception("Alert evaluation failed for session %s", session.id)
        self._update_alert_gauge()
        self._refresh_history()
        return session

    def _refresh_history(self) -> None:
        try:
            self.history.update_all()
        except sqlite3.Error:
            logger.exception("Historical metrics update failed")

    def _update_alert_gauge(self) -> None:
        try:
            UNACKNOWLEDGED_ALERTS.set(self.alerts.unacknowledged_count())
        except sqlite3.Error:
            logger.exception("Failed to count unacknowledged alerts")

    # ------------------------------------------------------------------
    # Quality, alerts, history
    # ------------------------------------------------------------------

    def get_quality_score(self, events: Sequence[ConnectionEvent]) -> QualityReport:
        return self.calculator.score_events(events)

    def get_active_alerts(self, session_id: str | None = None) -> list[ConnectionAlert]:
        return self.alerts.get_active_alerts(session_id)

    def acknowledge_alert(self, alert_id: str) -> ConnectionAlert | None:
        alert = self.alerts.acknowledge(alert_id)
        self._update_alert_gauge()
        return alert

    def dismiss_alert(self, alert_id: str) -> bool:
        dismissed = self.alerts.dismiss(alert_id)
        self._update_alert_gauge()
        return dismissed

    def subscribe_alerts(self, callback: AlertSubscriber) -> None:
        self.alerts.subscribe(callback)

    def get_thresholds(self) -> AlertThresholds:
        return self.alerts.thresholds

    def update_thresholds(self, changes: dict[str, float]) -> AlertThresholds:
        """Apply threshold changes and re-evaluate every stored session against them."""
        updated = self.alerts.update_thresholds(changes, self.list_sessions())
        self._update_alert_gauge()
        return updated

    def evaluate_active_sessions(self) -> int:
        """Re-run alert checks for sessions that have not completed. Returns new alert count."""
        created = 0
        for session in self.list_sessions():
            if session.completed:
                continue
            try:
                created += len(self.alerts.evaluate(session))
            except sqlite3.Error:
                logger.exception("Alert evaluation failed for session %s", session.id)
        self._update_alert_gauge()
        return created

    def get_historical_metrics(self, period: HistoricalPeriod) -> HistoricalMetrics | None:
        return self.history.get(period)

    def get_all_historical_metrics(self) -> dict[HistoricalPeriod, HistoricalMetrics | None]:
        return self.history.get_all()

    def refresh_history(self, now: datetime | None = None) -> list[HistoricalMetrics]:
        return self.history.update_all(now)

    def insights(self, now: datetime | None = None) -> HistorySnapshot:
        return build_snapshot(self.list_sessions(), now)

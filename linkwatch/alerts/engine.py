"""Threshold-based connection alerts: creation, deduplication, acknowledge, dismiss.

Alerts are kept in the SQLite store; the engine itself only holds the current
thresholds and the list of subscribers, so independent engines (one per test,
one per running app) never share state.
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from linkwatch.models import (
    AlertSeverity,
    AlertThresholds,
    AlertType,
    ConnectionAlert,
    Session,
)
from linkwatch.observability.metrics import ALERTS_TOTAL
from linkwatch.quality.scoring import downtime_percentage, round_half_up
from linkwatch.store import (
    delete_alert,
    get_alert,
    get_alerts,
    has_unacknowledged_alert,
    load_thresholds,
    mark_alert_acknowledged,
    save_alert,
    save_thresholds,
)

logger = logging.getLogger(__name__)

# Severity escalation cutoffs are fixed; only the trigger thresholds are configurable.
QUALITY_CRITICAL_BELOW = 40
QUALITY_WARNING_BELOW = 50
DISCONNECTION_CRITICAL_AT = 5
RECONNECTION_ALERT_BELOW = 0.7
RECONNECTION_CRITICAL_BELOW = 0.5
RECONNECTION_MIN_ATTEMPTS = 3
DOWNTIME_ALERT_ABOVE_PCT = 20
DOWNTIME_CRITICAL_ABOVE_PCT = 40
DOWNTIME_MIN_MS = 10_000

ALERT_CREATED = "alert-created"
ALERT_ACKNOWLEDGED = "alert-acknowledged"
ALERT_DISMISSED = "alert-dismissed"

AlertSubscriber = Callable[[str, ConnectionAlert], None]


class AlertEngine:
    """Evaluates session metrics against thresholds and manages the active alert set."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        defaults: AlertThresholds | None = None,
    ) -> None:
        self._conn = conn
        self._defaults = defaults or AlertThresholds()
        self._thresholds = self._load_thresholds()
        self._subscribers: list[AlertSubscriber] = []

    # -- thresholds ---------------------------------------------------------

    def _load_thresholds(self) -> AlertThresholds:
        try:
            saved = load_thresholds(self._conn)
        except sqlite3.Error:
            logger.exception("Failed to load alert thresholds, using defaults")
            return self._defaults.model_copy()
        return AlertThresholds.model_validate({**self._defaults.model_dump(), **saved})

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds.model_copy()

    def update_thresholds(
        self,
        changes: dict[str, float],
        sessions: Iterable[Session] = (),
    ) -> AlertThresholds:
        """Merge ``changes`` into the current thresholds, persist, and re-evaluate ``sessions``."""
        merged = AlertThresholds.model_validate({**self._thresholds.model_dump(), **changes})
        self._thresholds = merged
        try:
            save_thresholds(self._conn, {k: float(v) for k, v in merged.model_dump().items()})
        except sqlite3.Error:
            logger.exception("Failed to persist alert thresholds")

        logger.info("Alert thresholds updated: %s", merged.model_dump())
        for session in sessions:
            self.evaluate(session)
        return self.thresholds

    # -- subscribers --------------------------------------------------------

    def subscribe(self, callback: AlertSubscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: AlertSubscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _notify(self, event_name: str, alert: ConnectionAlert) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event_name, alert)
            except Exception:
                logger.exception("Alert subscriber failed for %s", event_name)

    # -- evaluation ---------------------------------------------------------

    def evaluate(self, session: Session) -> list[ConnectionAlert]:
        """Run the four threshold checks and return the alerts that were newly created."""
        candidates = [
            self._check_quality(session),
            self._check_disconnections(session),
            self._check_reconnections(session),
            self._check_downtime(session),
        ]

        created: list[ConnectionAlert] = []
        for alert in candidates:
            if alert is None:
                continue
            try:
                if has_unacknowledged_alert(self._conn, session.id, alert.type):
                    continue
                save_alert(self._conn, alert)
            except sqlite3.Error:
                logger.exception("Failed to save %s alert for session %s", alert.type, session.id)
                continue

            ALERTS_TOTAL.labels(type=alert.type.value, severity=alert.severity.value).inc()
            logger.info("Alert created: [%s] %s", alert.severity, alert.message)
            created.append(alert)
            self._notify(ALERT_CREATED, alert)
        return created

    def _new_alert(
        self,
        session: Session,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        context: dict[str, object],
    ) -> ConnectionAlert:
        return ConnectionAlert(
            id=uuid.uuid4().hex,
            severity=severity,
            type=alert_type,
            message=message,
            session_id=session.id,
            context={**context, "url": session.url},
        )

    def _check_quality(self, session: Session) -> ConnectionAlert | None:
        score = session.connection_metrics.quality_score
        if score >= self._thresholds.quality_score:
            return None
        if score < QUALITY_CRITICAL_BELOW:
            severity = AlertSeverity.CRITICAL
        elif score < QUALITY_WARNING_BELOW:
            severity = AlertSeverity.WARNING
        else:
            severity = AlertSeverity.INFO
        return self._new_alert(
            session,
            AlertType.QUALITY,
            severity,
            f"Poor connection quality ({score}/100) detected for session {session.name}",
            {"quality_score": score, "threshold": self._thresholds.quality_score},
        )

    def _check_disconnections(self, session: Session) -> ConnectionAlert | None:
        count = session.connection_metrics.disconnection_count
        if count < self._thresholds.disconnection_count:
            return None
        severity = AlertSeverity.CRITICAL if count >= DISCONNECTION_CRITICAL_AT else AlertSeverity.WARNING
        return self._new_alert(
            session,
            AlertType.DISCONNECTION,
            severity,
            f"Excessive disconnections ({count}) detected for session {session.name}",
            {"disconnection_count": count, "threshold": self._thresholds.disconnection_count},
        )

    def _check_reconnections(self, session: Session) -> ConnectionAlert | None:
        metrics = session.connection_metrics
        attempts = metrics.reconnection_count + metrics.failed_reconnection_count
        rate = metrics.reconnection_success_rate
        if attempts < RECONNECTION_MIN_ATTEMPTS or rate >= RECONNECTION_ALERT_BELOW:
            return None
        severity = AlertSeverity.CRITICAL if rate < RECONNECTION_CRITICAL_BELOW else AlertSeverity.WARNING
        return self._new_alert(
            session,
            AlertType.RECONNECTION,
            severity,
            f"Low reconnection success rate ({int(round_half_up(rate * 100))}%) for session {session.name}",
            {
                "reconnection_success_rate": rate,
                "reconnection_count": metrics.reconnection_count,
                "failed_reconnection_count": metrics.failed_reconnection_count,
                "reconnection_fail_rate_threshold": self._thresholds.reconnection_fail_rate,
            },
        )

    def _check_downtime(self, session: Session) -> ConnectionAlert | None:
        total = session.connection_metrics.total_disconnection_time
        pct = downtime_percentage(session)
        if pct <= DOWNTIME_ALERT_ABOVE_PCT or total <= DOWNTIME_MIN_MS:
            return None
        severity = AlertSeverity.CRITICAL if pct > DOWNTIME_CRITICAL_ABOVE_PCT else AlertSeverity.WARNING
        rounded = int(round_half_up(pct))
        return self._new_alert(
            session,
            AlertType.DOWNTIME,
            severity,
            f"Excessive downtime ({rounded}%) detected for session {session.name}",
            {
                "downtime_percentage": rounded,
                "total_downtime": total,
                "downtime_threshold": self._thresholds.downtime_threshold,
            },
        )

    # -- lifecycle of existing alerts ----------------------------------------

    def get_active_alerts(self, session_id: str | None = None) -> list[ConnectionAlert]:
        return get_alerts(self._conn, session_id)

    def acknowledge(self, alert_id: str) -> ConnectionAlert | None:
        """Mark an alert acknowledged. Idempotent; returns None if the alert does not exist."""
        now = datetime.now(UTC)
        changed = mark_alert_acknowledged(self._conn, alert_id, now)
        alert = get_alert(self._conn, alert_id)
        if alert is not None and changed:
            logger.info("Alert %s acknowledged", alert_id)
            self._notify(ALERT_ACKNOWLEDGED, alert)
        return alert

    def dismiss(self, alert_id: str) -> bool:
        """Remove an alert from the active set. Returns False if it was not there."""
        alert = get_alert(self._conn, alert_id)
        if alert is None:
            return False
        delete_alert(self._conn, alert_id)
        logger.info("Alert %s dismissed", alert_id)
        self._notify(ALERT_DISMISSED, alert)
        return True

    def unacknowledged_count(self) -> int:
        return sum(1 for a in get_alerts(self._conn) if not a.acknowledged)

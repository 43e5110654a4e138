"""SQLite-based event log store: connection management, schema init, and CRUD.

All database operations use parameterized queries. Connections are created with
check_same_thread=False so they can be shared by the FastAPI event loop and the
scheduler jobs. The schema is auto-created on first access via CREATE TABLE IF
NOT EXISTS (idempotent). Timestamps are stored as UTC ISO 8601 strings with
microsecond precision so that lexical ordering matches chronological ordering.
"""

import json
import logging
import sqlite3
from datetime import UTC, datetime

from linkwatch.config import get_settings
from linkwatch.models import (
    AlertSeverity,
    AlertType,
    ConnectionAlert,
    ConnectionEvent,
    ConnectionEventType,
    ConnectionMetrics,
    HistoricalMetrics,
    HistoricalPeriod,
    Session,
    TrendDirection,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS sessions (
    id           TEXT PRIMARY KEY,
    name         TEXT NOT NULL,
    url          TEXT NOT NULL,
    script_path  TEXT DEFAULT '',
    process_id   TEXT,
    tags         TEXT DEFAULT '[]',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    metrics      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at);
CREATE INDEX IF NOT EXISTS idx_sessions_process ON sessions(process_id);

CREATE TABLE IF NOT EXISTS connection_events (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id        TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    timestamp         TEXT NOT NULL,
    type              TEXT NOT NULL,
    duration          INTEGER,
    details           TEXT,
    latency           REAL,
    quality_indicator REAL
);
CREATE INDEX IF NOT EXISTS idx_events_session ON connection_events(session_id, timestamp);

CREATE TABLE IF NOT EXISTS alerts (
    id              TEXT PRIMARY KEY,
    session_id      TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    severity        TEXT NOT NULL,
    type            TEXT NOT NULL,
    message         TEXT NOT NULL,
    acknowledged    INTEGER DEFAULT 0,
    acknowledged_at TEXT,
    context         TEXT DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_alerts_session_type ON alerts(session_id, type, acknowledged);

CREATE TABLE IF NOT EXISTS historical_metrics (
    period                      TEXT PRIMARY KEY,
    start_time                  TEXT NOT NULL,
    end_time                    TEXT NOT NULL,
    average_quality_score       REAL NOT NULL,
    average_disconnection_count REAL NOT NULL,
    average_downtime_percentage REAL NOT NULL,
    session_count               INTEGER NOT NULL,
    trend                       TEXT NOT NULL,
    change_percentage           REAL,
    problem_session_count       INTEGER
);

CREATE TABLE IF NOT EXISTS thresholds (
    name  TEXT PRIMARY KEY,
    value REAL NOT NULL
);
"""


def to_iso(dt: datetime) -> str:
    """Normalize an aware datetime to the stored string form."""
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and foreign keys enabled.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.

    Raises:
        ValueError: If the store is not configured (empty db path).
    """
    if db_path is None:
        db_path = get_settings().db_path
    if not db_path:
        msg = "Event store not configured (LINKWATCH_DB_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def get_initialized_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Get a connection with schema already initialized. Convenience wrapper."""
    conn = get_connection(db_path)
    init_schema(conn)
    return conn


# ---------------------------------------------------------------------------
# Sessions and the event log
# ---------------------------------------------------------------------------


def save_session(conn: sqlite3.Connection, session: Session) -> None:
    """Insert a new session together with any events it already carries."""
    with conn:
        conn.execute(
            """INSERT INTO sessions
               (id, name, url, script_path, process_id, tags, created_at, updated_at, metrics)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id,
                session.name,
                session.url,
                session.script_path,
                session.process_id,
                json.dumps(session.tags),
                to_iso(session.created_at),
                to_iso(session.updated_at),
                session.connection_metrics.model_dump_json(),
            ),
        )
        for event in session.connection_events:
            _insert_event(conn, session.id, event)


def append_event(
    conn: sqlite3.Connection,
    session_id: str,
    event: ConnectionEvent,
    metrics: ConnectionMetrics,
    updated_at: datetime,
) -> bool:
    """Append one event and store the recomputed metrics in a single transaction.

    Returns False (and writes nothing) when the session does not exist.
    """
    with conn:
        cursor = conn.execute(
            "UPDATE sessions SET metrics = ?, updated_at = ? WHERE id = ?",
            (metrics.model_dump_json(), to_iso(updated_at), session_id),
        )
        if cursor.rowcount == 0:
            return False
        _insert_event(conn, session_id, event)
    return True


def bind_process(conn: sqlite3.Connection, session_id: str, process_id: str, updated_at: datetime) -> bool:
    """Point a session at the process now driving it. False if the session does not exist."""
    with conn:
        cursor = conn.execute(
            "UPDATE sessions SET process_id = ?, updated_at = ? WHERE id = ?",
            (process_id, to_iso(updated_at), session_id),
        )
    return cursor.rowcount > 0


def _insert_event(conn: sqlite3.Connection, session_id: str, event: ConnectionEvent) -> None:
    conn.execute(
        """INSERT INTO connection_events
           (session_id, timestamp, type, duration, details, latency, quality_indicator)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            session_id,
            to_iso(event.timestamp),
            event.type.value,
            event.duration,
            event.details,
            event.latency,
            event.quality_indicator,
        ),
    )


def get_session(conn: sqlite3.Connection, session_id: str) -> Session | None:
    """Load a session and its ordered event log, or None if it does not exist."""
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if row is None:
        return None
    return _row_to_session(conn, row)


def list_sessions(conn: sqlite3.Connection) -> list[Session]:
    """All sessions, newest first."""
    rows = conn.execute("SELECT * FROM sessions ORDER BY created_at DESC").fetchall()
    return [_row_to_session(conn, r) for r in rows]


def list_sessions_since(conn: sqlite3.Connection, since: datetime) -> list[Session]:
    """Sessions created at or after ``since``, oldest first."""
    rows = conn.execute(
        "SELECT * FROM sessions WHERE created_at >= ? ORDER BY created_at ASC",
        (to_iso(since),),
    ).fetchall()
    return [_row_to_session(conn, r) for r in rows]


def find_session_by_process(conn: sqlite3.Connection, process_id: str) -> Session | None:
    """Most recent session bound to an external process id."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE process_id = ? ORDER BY created_at DESC LIMIT 1",
        (process_id,),
    ).fetchone()
    if row is None:
        return None
    return _row_to_session(conn, row)


def delete_session(conn: sqlite3.Connection, session_id: str) -> bool:
    """Delete a session, its events and its alerts. Returns False if not found."""
    with conn:
        cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        conn.execute("DELETE FROM alerts WHERE session_id = ?", (session_id,))
    return cursor.rowcount > 0


def _get_events(conn: sqlite3.Connection, session_id: str) -> list[ConnectionEvent]:
    rows = conn.execute(
        "SELECT * FROM connection_events WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
        (session_id,),
    ).fetchall()
    return [
        ConnectionEvent(
            timestamp=datetime.fromisoformat(r["timestamp"]),
            type=ConnectionEventType(r["type"]),
            duration=r["duration"],
            details=r["details"],
            latency=r["latency"],
            quality_indicator=r["quality_indicator"],
        )
        for r in rows
    ]


def _row_to_session(conn: sqlite3.Connection, row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        script_path=row["script_path"] or "",
        process_id=row["process_id"],
        tags=json.loads(row["tags"] or "[]"),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        connection_metrics=ConnectionMetrics.model_validate_json(row["metrics"]),
        connection_events=_get_events(conn, row["id"]),
    )


# ---------------------------------------------------------------------------
# Alerts CRUD
# ---------------------------------------------------------------------------


def save_alert(conn: sqlite3.Connection, alert: ConnectionAlert) -> None:
    """Insert a new alert."""
    with conn:
        conn.execute(
            """INSERT INTO alerts
               (id, session_id, timestamp, severity, type, message, acknowledged, acknowledged_at, context)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                alert.id,
                alert.session_id,
                to_iso(alert.timestamp),
                alert.severity.value,
                alert.type.value,
                alert.message,
                int(alert.acknowledged),
                to_iso(alert.acknowledged_at) if alert.acknowledged_at else None,
                json.dumps(alert.context, default=str),
            ),
        )


def get_alert(conn: sqlite3.Connection, alert_id: str) -> ConnectionAlert | None:
    row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
    if row is None:
        return None
    return _row_to_alert(row)


def get_alerts(conn: sqlite3.Connection, session_id: str | None = None) -> list[ConnectionAlert]:
    """All alerts still in the active set (optionally for one session), newest first."""
    if session_id:
        rows = conn.execute(
            "SELECT * FROM alerts WHERE session_id = ? ORDER BY timestamp DESC",
            (session_id,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM alerts ORDER BY timestamp DESC").fetchall()
    return [_row_to_alert(r) for r in rows]


def has_unacknowledged_alert(conn: sqlite3.Connection, session_id: str, alert_type: AlertType) -> bool:
    """Whether an open alert of this (session, type) pair already exists."""
    row = conn.execute(
        "SELECT 1 FROM alerts WHERE session_id = ? AND type = ? AND acknowledged = 0 LIMIT 1",
        (session_id, alert_type.value),
    ).fetchone()
    return row is not None


def mark_alert_acknowledged(conn: sqlite3.Connection, alert_id: str, acknowledged_at: datetime) -> bool:
    """Set the acknowledged flag once. Returns False if already acknowledged or missing."""
    with conn:
        cursor = conn.execute(
            "UPDATE alerts SET acknowledged = 1, acknowledged_at = ? WHERE id = ? AND acknowledged = 0",
            (to_iso(acknowledged_at), alert_id),
        )
    return cursor.rowcount > 0


def delete_alert(conn: sqlite3.Connection, alert_id: str) -> bool:
    with conn:
        cursor = conn.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
    return cursor.rowcount > 0


def _row_to_alert(row: sqlite3.Row) -> ConnectionAlert:
    return ConnectionAlert(
        id=row["id"],
        session_id=row["session_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        severity=AlertSeverity(row["severity"]),
        type=AlertType(row["type"]),
        message=row["message"],
        acknowledged=bool(row["acknowledged"]),
        acknowledged_at=datetime.fromisoformat(row["acknowledged_at"]) if row["acknowledged_at"] else None,
        context=json.loads(row["context"] or "{}"),
    )


# ---------------------------------------------------------------------------
# Historical metrics
# ---------------------------------------------------------------------------


def save_historical_metrics(conn: sqlite3.Connection, metrics: HistoricalMetrics) -> None:
    """Replace the stored aggregate for one period."""
    with conn:
        conn.execute(
            """INSERT OR REPLACE INTO historical_metrics
               (period, start_time, end_time, average_quality_score, average_disconnection_count,
                average_downtime_percentage, session_count, trend, change_percentage, problem_session_count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                metrics.period.value,
                to_iso(metrics.start_time),
                to_iso(metrics.end_time),
                metrics.average_quality_score,
                metrics.average_disconnection_count,
                metrics.average_downtime_percentage,
                metrics.session_count,
                metrics.trend.value,
                metrics.change_percentage,
                metrics.problem_session_count,
            ),
        )


def get_historical_metrics(conn: sqlite3.Connection, period: HistoricalPeriod) -> HistoricalMetrics | None:
    row = conn.execute("SELECT * FROM historical_metrics WHERE period = ?", (period.value,)).fetchone()
    if row is None:
        return None
    return HistoricalMetrics(
        period=HistoricalPeriod(row["period"]),
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=datetime.fromisoformat(row["end_time"]),
        average_quality_score=row["average_quality_score"],
        average_disconnection_count=row["average_disconnection_count"],
        average_downtime_percentage=row["average_downtime_percentage"],
        session_count=row["session_count"],
        trend=TrendDirection(row["trend"]),
        change_percentage=row["change_percentage"],
        problem_session_count=row["problem_session_count"],
    )


# ---------------------------------------------------------------------------
# Threshold overrides
# ---------------------------------------------------------------------------


def save_thresholds(conn: sqlite3.Connection, values: dict[str, float]) -> None:
    with conn:
        conn.executemany(
            "INSERT OR REPLACE INTO thresholds (name, value) VALUES (?, ?)",
            list(values.items()),
        )


def load_thresholds(conn: sqlite3.Connection) -> dict[str, float]:
    rows = conn.execute("SELECT name, value FROM thresholds").fetchall()
    return {r["name"]: r["value"] for r in rows}

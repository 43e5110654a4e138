"""Pydantic models for sessions, connection events, alerts and historical metrics."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class ConnectionEventType(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    WARNING = "warning"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    FAILED = "failed"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(StrEnum):
    QUALITY = "quality"
    DISCONNECTION = "disconnection"
    RECONNECTION = "reconnection"
    DOWNTIME = "downtime"


class HistoricalPeriod(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class TrendDirection(StrEnum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class ConnectionEvent(BaseModel):
    """A single timestamped change in the health of the UI <-> process link."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    type: ConnectionEventType
    duration: int | None = Field(default=None, ge=0)  # ms, for disconnections/reconnections
    details: str | None = None
    latency: float | None = Field(default=None, ge=0)  # ms
    quality_indicator: float | None = Field(default=None, ge=0, le=100)


class ConnectionMetrics(BaseModel):
    """Derived per-session metrics, recomputed after every appended event."""

    disconnection_count: int = 0
    total_disconnection_time: int = 0  # ms
    reconnection_count: int = 0
    failed_reconnection_count: int = 0
    completed_normally: bool = False
    quality_score: int = 100
    average_latency: float = 0.0
    max_latency: float = 0.0
    stability_percentage: int = 100
    reconnection_success_rate: float = 1.0


class Session(BaseModel):
    """A recorded or replayed browsing interaction and its connection history."""

    id: str
    name: str
    url: str
    script_path: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    process_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    connection_metrics: ConnectionMetrics = Field(default_factory=ConnectionMetrics)
    connection_events: list[ConnectionEvent] = Field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.connection_metrics.completed_normally


class ConnectionAlert(BaseModel):
    """A threshold-crossing notification for one session."""

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    severity: AlertSeverity
    type: AlertType
    message: str
    session_id: str
    acknowledged: bool = False
    acknowledged_at: datetime | None = None
    context: dict[str, object] = Field(default_factory=dict)


class HistoricalMetrics(BaseModel):
    """Rolling aggregate over all sessions created since a period start."""

    period: HistoricalPeriod
    start_time: datetime
    end_time: datetime
    average_quality_score: float
    average_disconnection_count: float
    average_downtime_percentage: float
    session_count: int
    trend: TrendDirection = TrendDirection.STABLE
    change_percentage: float | None = None
    problem_session_count: int | None = None


class AlertThresholds(BaseModel):
    """User-configurable alert limits."""

    quality_score: int = Field(default=60, ge=0, le=100)  # minimum acceptable
    disconnection_count: int = Field(default=3, ge=0)  # maximum acceptable
    reconnection_fail_rate: float = Field(default=25.0, ge=0, le=100)  # maximum acceptable, %
    downtime_threshold: int = Field(default=30000, ge=0)  # maximum acceptable, ms


class QualityMetrics(BaseModel):
    """Inputs of the event-stream quality formula."""

    downtime_percent: float = 0.0
    disconnection_frequency: float = 0.0  # disconnections per minute
    reconnect_success: float = 100.0  # %


class QualityReport(BaseModel):
    """Score, label and display color produced from a raw event stream."""

    score: int
    label: str
    color: str
    metrics: QualityMetrics | None = None


class ProcessStatus(BaseModel):
    """Liveness report for a tracked recording/replay process."""

    success: bool = True
    process_id: str
    status: str  # recording | stopped | replaying | replay_stopped | unknown
    is_running: bool
    message: str | None = None

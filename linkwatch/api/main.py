"""FastAPI backend for linkwatch.

Serves the session/event log, alerts, thresholds and historical metrics, and
the ``/api/recording/*`` endpoints the reconnection monitor polls. The
monitoring service and the process manager are built once at startup and
shared across requests through ``app.state``.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from linkwatch.config import get_settings
from linkwatch.history.trends import HistorySnapshot
from linkwatch.models import (
    AlertThresholds,
    ConnectionAlert,
    ConnectionEventType,
    ConnectionMetrics,
    HistoricalMetrics,
    HistoricalPeriod,
    ProcessStatus,
    QualityReport,
    Session,
)
from linkwatch.monitor.reconnect import USER_STOP_DETAILS
from linkwatch.observability.metrics import APP_INFO, REQUEST_DURATION, REQUESTS_TOTAL
from linkwatch.process.manager import LogEntry, ProcessManager, ProcessStartError
from linkwatch.scheduler import get_scheduler, start_scheduler, stop_scheduler
from linkwatch.service import MonitorService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    """Request body for POST /api/sessions."""

    url: str = Field(min_length=1)
    script_path: str = ""
    name: str | None = None
    process_id: str | None = None
    tags: list[str] = Field(default_factory=list)


class EventRequest(BaseModel):
    """Request body for appending a connection event. Unknown types are rejected with 422."""

    type: ConnectionEventType
    details: str | None = None
    duration: int | None = Field(default=None, ge=0)
    latency: float | None = Field(default=None, ge=0)
    quality_indicator: float | None = Field(default=None, ge=0, le=100)


class ThresholdsUpdate(BaseModel):
    """Partial threshold update for PUT /api/thresholds."""

    quality_score: int | None = Field(default=None, ge=0, le=100)
    disconnection_count: int | None = Field(default=None, ge=0)
    reconnection_fail_rate: float | None = Field(default=None, ge=0, le=100)
    downtime_threshold: int | None = Field(default=None, ge=0)


class RecordRequest(BaseModel):
    """Request body for POST /api/recording/record."""

    url: str = Field(min_length=1)
    name: str | None = None
    tags: list[str] = Field(default_factory=list)


class RecordResponse(BaseModel):
    success: bool
    process_id: str
    session_id: str
    script_path: str


class OperationResponse(BaseModel):
    success: bool
    message: str | None = None
    session_id: str | None = None


class ConnectionEventResponse(BaseModel):
    success: bool
    session_id: str
    connection_metrics: ConnectionMetrics


class LogsResponse(BaseModel):
    success: bool
    process_id: str
    logs: list[LogEntry]


class ComponentHealth(BaseModel):
    name: str
    status: str
    detail: str | None = None


class HealthResponse(BaseModel):
    status: str
    components: list[ComponentHealth]


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and start the periodic jobs; tear both down on shutdown."""
    settings = get_settings()
    APP_INFO.info({"version": "0.1.0"})

    service = MonitorService.from_settings(settings)
    processes = ProcessManager(settings.codegen_command, settings.replay_command)
    app.state.service = service
    app.state.processes = processes
    logger.info("linkwatch ready (db=%s)", settings.db_path)

    start_scheduler(service, processes)
    try:
        yield
    finally:
        stop_scheduler()
        await asyncio.to_thread(processes.shutdown)
        service.close()
        logger.info("Shutting down linkwatch")


app = FastAPI(title="linkwatch", lifespan=lifespan)


@app.middleware("http")
async def instrument_requests(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Record duration and outcome per route template."""
    start = time.monotonic()
    status = "error"
    try:
        response = await call_next(request)
        status = "success" if response.status_code < 400 else str(response.status_code)
        return response
    finally:
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        if endpoint != "/metrics":
            REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)
            REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()


def _service(request: Request) -> MonitorService:
    return request.app.state.service


def _processes(request: Request) -> ProcessManager:
    return request.app.state.processes


def _session_or_404(service: MonitorService, session_id: str) -> Session:
    session = service.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    components: list[ComponentHealth] = []

    try:
        count = len(_service(request).list_sessions())
        components.append(ComponentHealth(name="database", status="healthy", detail=f"{count} sessions"))
    except Exception as exc:
        components.append(ComponentHealth(name="database", status="unhealthy", detail=str(exc)))

    scheduler = get_scheduler()
    if scheduler is not None and scheduler.running:
        components.append(ComponentHealth(name="scheduler", status="healthy"))
    else:
        components.append(ComponentHealth(name="scheduler", status="disabled"))

    overall = "unhealthy" if any(c.status == "unhealthy" for c in components) else "healthy"
    return HealthResponse(status=overall, components=components)


# ---------------------------------------------------------------------------
# Sessions and events
# ---------------------------------------------------------------------------


@app.get("/api/sessions", response_model=list[Session])
async def list_sessions(request: Request) -> list[Session]:
    return _service(request).list_sessions()


@app.post("/api/sessions", response_model=Session, status_code=201)
async def create_session(request: Request, body: CreateSessionRequest) -> Session:
    return _service(request).create_session(
        body.url,
        script_path=body.script_path,
        name=body.name,
        process_id=body.process_id,
        tags=body.tags,
    )


@app.get("/api/sessions/{session_id}", response_model=Session)
async def get_session(request: Request, session_id: str) -> Session:
    return _session_or_404(_service(request), session_id)


@app.delete("/api/sessions/{session_id}", response_model=OperationResponse)
async def delete_session(request: Request, session_id: str) -> OperationResponse:
    if not _service(request).delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return OperationResponse(success=True, session_id=session_id)


@app.post("/api/sessions/{session_id}/events", response_model=Session)
async def add_event(request: Request, session_id: str, body: EventRequest) -> Session:
    session = _service(request).record_event(
        session_id,
        body.type,
        details=body.details,
        duration=body.duration,
        latency=body.latency,
        quality_indicator=body.quality_indicator,
    )
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@app.post("/api/sessions/{session_id}/complete", response_model=Session)
async def complete_session(request: Request, session_id: str) -> Session:
    session = _service(request).complete_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@app.get("/api/sessions/{session_id}/quality", response_model=QualityReport)
async def session_quality(request: Request, session_id: str) -> QualityReport:
    service = _service(request)
    session = _session_or_404(service, session_id)
    return service.get_quality_score(sorted(session.connection_events, key=lambda e: e.timestamp))


@app.get("/api/sessions/{session_id}/alerts", response_model=list[ConnectionAlert])
async def session_alerts(request: Request, session_id: str) -> list[ConnectionAlert]:
    service = _service(request)
    _session_or_404(service, session_id)
    return service.get_active_alerts(session_id)


@app.post("/api/sessions/{session_id}/replay", response_model=RecordResponse)
async def replay_session(request: Request, session_id: str) -> RecordResponse:
    """Run a session's recorded script and bind the replay process to the session."""
    service = _service(request)
    session = _session_or_404(service, session_id)
    if not session.script_path or not Path(session.script_path).exists():
        raise HTTPException(status_code=404, detail=f"No recorded script for session {session_id}")
    try:
        process_id = _processes(request).start_replay(session.script_path)
    except ProcessStartError as exc:
        logger.exception("Failed to replay session %s", session_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    service.bind_process(session_id, process_id)
    return RecordResponse(success=True, process_id=process_id, session_id=session_id, script_path=session.script_path)


# ---------------------------------------------------------------------------
# Alerts and thresholds
# ---------------------------------------------------------------------------


@app.get("/api/alerts", response_model=list[ConnectionAlert])
async def list_alerts(request: Request) -> list[ConnectionAlert]:
    return _service(request).get_active_alerts()


@app.post("/api/alerts/{alert_id}/acknowledge", response_model=ConnectionAlert)
async def acknowledge_alert(request: Request, alert_id: str) -> ConnectionAlert:
    alert = _service(request).acknowledge_alert(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return alert


@app.delete("/api/alerts/{alert_id}", response_model=OperationResponse)
async def dismiss_alert(request: Request, alert_id: str) -> OperationResponse:
    if not _service(request).dismiss_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return OperationResponse(success=True)


@app.get("/api/thresholds", response_model=AlertThresholds)
async def get_thresholds(request: Request) -> AlertThresholds:
    return _service(request).get_thresholds()


@app.put("/api/thresholds", response_model=AlertThresholds)
async def update_thresholds(request: Request, body: ThresholdsUpdate) -> AlertThresholds:
    return _service(request).update_thresholds(body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Historical metrics
# ---------------------------------------------------------------------------


@app.get("/api/metrics/history", response_model=dict[str, HistoricalMetrics | None])
async def all_history(request: Request) -> dict[str, HistoricalMetrics | None]:
    return {period.value: metrics for period, metrics in _service(request).get_all_historical_metrics().items()}


@app.get("/api/metrics/history/{period}", response_model=HistoricalMetrics)
async def period_history(request: Request, period: HistoricalPeriod) -> HistoricalMetrics:
    metrics = _service(request).get_historical_metrics(period)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"No historical metrics computed for period {period}")
    return metrics


@app.get("/api/metrics/insights", response_model=HistorySnapshot)
async def insights(request: Request) -> HistorySnapshot:
    return _service(request).insights()


# ---------------------------------------------------------------------------
# Recording processes
# ---------------------------------------------------------------------------


@app.post("/api/recording/record", response_model=RecordResponse)
async def start_recording(request: Request, body: RecordRequest) -> RecordResponse:
    """Launch the codegen recorder and open a session bound to it."""
    settings = get_settings()
    script_path = Path(settings.sessions_dir) / f"recording-{uuid.uuid4().hex[:12]}.spec.js"
    try:
        process_id = _processes(request).start_recording(body.url, script_path)
    except ProcessStartError as exc:
        logger.exception("Failed to start recording for %s", body.url)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    session = _service(request).create_session(
        body.url,
        script_path=str(script_path),
        name=body.name,
        process_id=process_id,
        tags=body.tags,
    )
    return RecordResponse(success=True, process_id=process_id, session_id=session.id, script_path=str(script_path))


@app.post("/api/recording/stop/{process_id}", response_model=OperationResponse)
async def stop_recording(request: Request, process_id: str) -> OperationResponse:
    """User-initiated stop: recorded as a manual disconnect, then the session completes."""
    processes = _processes(request)
    if process_id not in processes:
        raise HTTPException(status_code=404, detail=f"Process {process_id} not found")

    service = _service(request)
    session = service.record_event_for_process(process_id, ConnectionEventType.DISCONNECTED, USER_STOP_DETAILS)
    if session is not None:
        service.complete_session(session.id)
    stopped = await asyncio.to_thread(processes.kill, process_id)
    message = "Recording stopped" if stopped else "Process was not running"
    return OperationResponse(success=True, message=message, session_id=session.id if session else None)


@app.get("/api/recording/status/{process_id}", response_model=ProcessStatus)
async def recording_status(request: Request, process_id: str) -> ProcessStatus:
    processes = _processes(request)
    status = processes.status(process_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Process {process_id} not found")

    exit_code = processes.take_exit(process_id)
    if exit_code is not None:
        _service(request).observe_process_exit(process_id, exit_code)
    return status


@app.get("/api/recording/logs/{process_id}", response_model=LogsResponse)
async def recording_logs(request: Request, process_id: str) -> LogsResponse:
    processes = _processes(request)
    if process_id not in processes:
        raise HTTPException(status_code=404, detail=f"Process {process_id} not found")
    return LogsResponse(success=True, process_id=process_id, logs=processes.get_logs(process_id))


@app.post("/api/recording/connection-event/{process_id}", response_model=ConnectionEventResponse)
async def recording_connection_event(request: Request, process_id: str, body: EventRequest) -> ConnectionEventResponse:
    session = _service(request).record_event_for_process(
        process_id,
        body.type,
        details=body.details,
        duration=body.duration,
        latency=body.latency,
        quality_indicator=body.quality_indicator,
    )
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for process {process_id}")
    return ConnectionEventResponse(success=True, session_id=session.id, connection_metrics=session.connection_metrics)


@app.get("/api/recording/recover/{process_id}", response_model=OperationResponse)
async def recover_recording(request: Request, process_id: str) -> OperationResponse:
    """Re-attach a reloaded page to its still-running session."""
    session = _service(request).recover_session(process_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for process {process_id}")
    running = _processes(request).is_running(process_id)
    message = "Session recovered" if running else "Session recovered but process is not running"
    return OperationResponse(success=True, message=message, session_id=session.id)


@app.post("/api/recording/cleanup/{process_id}", response_model=OperationResponse)
async def cleanup_recording(request: Request, process_id: str) -> OperationResponse:
    removed = await asyncio.to_thread(_processes(request).forget, process_id)
    return OperationResponse(success=removed, message=None if removed else "Process not tracked")

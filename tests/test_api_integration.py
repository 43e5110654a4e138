"""Integration tests for the FastAPI backend.

Uses TestClient against an in-memory store. Recorder processes are either
registered directly on the process manager or short-lived Python children.
"""

import asyncio
import subprocess
import sys
import time
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from linkwatch.process.manager import ProcessManager, ProcessStartError, ProcessType
from linkwatch.service import MonitorService
from linkwatch.store import get_initialized_connection

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client(mock_settings: Any) -> Generator[TestClient]:  # noqa: ARG001 (mock_settings activates patches)
    """TestClient with the lifespan run, so the service and process manager exist on app.state."""
    from linkwatch.api.main import app

    with TestClient(app) as tc:
        yield tc


@pytest.fixture
def processes(client: TestClient) -> ProcessManager:
    return client.app.state.processes  # type: ignore[attr-defined]


def _create(client: TestClient, **overrides: Any) -> dict[str, Any]:
    body = {"url": "https://shop.example.com", "name": "checkout"} | overrides
    resp = client.post("/api/sessions", json=body)
    assert resp.status_code == 201
    return resp.json()


# ---------------------------------------------------------------------------
# Sessions and events
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestSessions:
    def test_create_and_fetch(self, client: TestClient) -> None:
        created = _create(client, tags=["smoke"])

        resp = client.get(f"/api/sessions/{created['id']}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["name"] == "checkout"
        assert body["tags"] == ["smoke"]
        assert body["connection_events"][0]["type"] == "connected"
        assert body["connection_metrics"]["quality_score"] == 100

    def test_list_and_delete(self, client: TestClient) -> None:
        created = _create(client)
        assert len(client.get("/api/sessions").json()) == 1

        assert client.delete(f"/api/sessions/{created['id']}").json()["success"] is True
        assert client.get("/api/sessions").json() == []
        assert client.delete(f"/api/sessions/{created['id']}").status_code == 404

    def test_unknown_session(self, client: TestClient) -> None:
        assert client.get("/api/sessions/missing").status_code == 404
        assert client.post("/api/sessions/missing/events", json={"type": "warning"}).status_code == 404
        assert client.post("/api/sessions/missing/complete").status_code == 404
        assert client.get("/api/sessions/missing/quality").status_code == 404

    def test_empty_url_rejected(self, client: TestClient) -> None:
        assert client.post("/api/sessions", json={"url": ""}).status_code == 422

    def test_append_event(self, client: TestClient) -> None:
        created = _create(client)

        resp = client.post(
            f"/api/sessions/{created['id']}/events",
            json={"type": "disconnected", "details": "wifi dropped", "duration": 1500},
        )

        assert resp.status_code == 200
        metrics = resp.json()["connection_metrics"]
        assert metrics["disconnection_count"] == 1
        assert metrics["total_disconnection_time"] == 1500

    def test_unknown_event_type_rejected(self, client: TestClient) -> None:
        created = _create(client)
        resp = client.post(f"/api/sessions/{created['id']}/events", json={"type": "exploded"})
        assert resp.status_code == 422

    def test_complete(self, client: TestClient) -> None:
        created = _create(client)

        resp = client.post(f"/api/sessions/{created['id']}/complete")

        assert resp.status_code == 200
        assert resp.json()["connection_metrics"]["completed_normally"] is True

    def test_quality(self, client: TestClient) -> None:
        created = _create(client)
        body = client.get(f"/api/sessions/{created['id']}/quality").json()
        assert body["score"] == 100
        assert body["label"] == "Excellent"


# ---------------------------------------------------------------------------
# Alerts and thresholds
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestAlerts:
    def _flaky_session(self, client: TestClient) -> str:
        created = _create(client)
        for _ in range(3):
            client.post(f"/api/sessions/{created['id']}/events", json={"type": "disconnected"})
        return created["id"]

    def test_alert_lifecycle(self, client: TestClient) -> None:
        session_id = self._flaky_session(client)

        alerts = client.get("/api/alerts").json()
        assert [a["type"] for a in alerts] == ["disconnection"]
        assert client.get(f"/api/sessions/{session_id}/alerts").json() == alerts

        alert_id = alerts[0]["id"]
        acked = client.post(f"/api/alerts/{alert_id}/acknowledge")
        assert acked.status_code == 200
        assert acked.json()["acknowledged"] is True

        assert client.delete(f"/api/alerts/{alert_id}").status_code == 200
        assert client.get("/api/alerts").json() == []

    def test_unknown_alert(self, client: TestClient) -> None:
        assert client.post("/api/alerts/nope/acknowledge").status_code == 404
        assert client.delete("/api/alerts/nope").status_code == 404

    def test_thresholds_roundtrip(self, client: TestClient) -> None:
        assert client.get("/api/thresholds").json()["quality_score"] == 60

        resp = client.put("/api/thresholds", json={"disconnection_count": 10})

        assert resp.status_code == 200
        body = resp.json()
        assert body["disconnection_count"] == 10
        assert body["quality_score"] == 60
        assert client.get("/api/thresholds").json()["disconnection_count"] == 10

    def test_invalid_threshold(self, client: TestClient) -> None:
        assert client.put("/api/thresholds", json={"quality_score": 101}).status_code == 422

    def test_threshold_change_raises_alerts(self, client: TestClient) -> None:
        created = _create(client)
        client.post(f"/api/sessions/{created['id']}/events", json={"type": "disconnected"})
        assert client.get("/api/alerts").json() == []

        client.put("/api/thresholds", json={"quality_score": 99})

        assert [a["type"] for a in client.get("/api/alerts").json()] == ["quality"]


# ---------------------------------------------------------------------------
# Historical metrics
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestHistory:
    def test_nothing_computed_yet(self, client: TestClient) -> None:
        assert client.get("/api/metrics/history/day").status_code == 404
        assert client.get("/api/metrics/history").json() == {"day": None, "week": None, "month": None, "all": None}

    def test_computed_after_activity(self, client: TestClient) -> None:
        _create(client)

        resp = client.get("/api/metrics/history/all")

        assert resp.status_code == 200
        body = resp.json()
        assert body["session_count"] == 1
        assert body["trend"] == "stable"

    def test_unknown_period(self, client: TestClient) -> None:
        assert client.get("/api/metrics/history/decade").status_code == 422

    def test_insights(self, client: TestClient) -> None:
        _create(client)
        body = client.get("/api/metrics/insights").json()
        assert set(body["periods"]) == {"day", "week", "month", "all"}
        assert isinstance(body["insights"], list)


# ---------------------------------------------------------------------------
# Recording processes
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestRecording:
    def test_start_recording_opens_a_session(self, client: TestClient) -> None:
        with patch.object(ProcessManager, "start_recording", return_value="proc-1") as start:
            resp = client.post("/api/recording/record", json={"url": "https://shop.example.com"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["process_id"] == "proc-1"
        assert body["script_path"].startswith("sessions-test")
        assert body["script_path"].endswith(".spec.js")
        start.assert_called_once()

        session = client.get(f"/api/sessions/{body['session_id']}").json()
        assert session["process_id"] == "proc-1"

    def test_start_failure(self, client: TestClient) -> None:
        with patch.object(ProcessManager, "start_recording", side_effect=ProcessStartError("npx not found")):
            resp = client.post("/api/recording/record", json={"url": "https://shop.example.com"})

        assert resp.status_code == 500
        assert "npx not found" in resp.json()["detail"]

    def test_status_and_logs(self, client: TestClient, processes: ProcessManager) -> None:
        processes.register("proc-1", ProcessType.REPLAY)

        status = client.get("/api/recording/status/proc-1").json()
        assert status == {
            "success": True,
            "process_id": "proc-1",
            "status": "replay_stopped",
            "is_running": False,
            "message": None,
        }

        logs = client.get("/api/recording/logs/proc-1").json()
        assert logs["logs"][0]["message"] == "Started replay process with ID: proc-1"

    def test_unknown_process(self, client: TestClient) -> None:
        assert client.get("/api/recording/status/nope").status_code == 404
        assert client.get("/api/recording/logs/nope").status_code == 404
        assert client.post("/api/recording/stop/nope").status_code == 404
        assert client.get("/api/recording/recover/nope").status_code == 404
        assert client.post("/api/recording/connection-event/nope", json={"type": "warning"}).status_code == 404

    def test_connection_event_from_monitor(self, client: TestClient) -> None:
        _create(client, process_id="proc-1")

        resp = client.post(
            "/api/recording/connection-event/proc-1",
            json={"type": "reconnected", "details": "Reconnected after 1 attempt(s)", "duration": 10000},
        )

        assert resp.status_code == 200
        assert resp.json()["connection_metrics"]["reconnection_count"] == 1

    def test_stop_completes_the_session(self, client: TestClient, processes: ProcessManager) -> None:
        created = _create(client, process_id="proc-1")
        processes.register("proc-1", ProcessType.RECORDING)

        resp = client.post("/api/recording/stop/proc-1")

        assert resp.status_code == 200
        assert resp.json()["session_id"] == created["id"]
        session = client.get(f"/api/sessions/{created['id']}").json()
        assert session["connection_metrics"]["completed_normally"] is True
        details = [e["details"] for e in session["connection_events"]]
        assert "Recording manually stopped by user" in details

    def test_abnormal_exit_is_recorded_on_status_check(self, client: TestClient, processes: ProcessManager) -> None:
        created = _create(client, process_id="proc-1")
        popen = subprocess.Popen([sys.executable, "-c", "raise SystemExit(2)"], text=True)
        processes.register("proc-1", ProcessType.RECORDING, popen)
        popen.wait(timeout=10)

        status = client.get("/api/recording/status/proc-1").json()
        client.get("/api/recording/status/proc-1")

        assert status["status"] == "stopped"
        events = client.get(f"/api/sessions/{created['id']}").json()["connection_events"]
        failed = [e for e in events if e["type"] == "failed"]
        assert [e["details"] for e in failed] == ["Process terminated abnormally with code 2"]

    def test_recover(self, client: TestClient) -> None:
        created = _create(client, process_id="proc-1")

        resp = client.get("/api/recording/recover/proc-1")

        assert resp.status_code == 200
        assert resp.json()["session_id"] == created["id"]
        assert resp.json()["message"] == "Session recovered but process is not running"

    def test_replay_binds_the_process(self, client: TestClient, processes: ProcessManager, tmp_path: Path) -> None:
        script = tmp_path / "flow.spec.js"
        script.write_text("// recorded")
        created = _create(client, script_path=str(script))

        with patch.object(ProcessManager, "start_replay", return_value="replay-1") as start:
            resp = client.post(f"/api/sessions/{created['id']}/replay")
        processes.register("replay-1", ProcessType.REPLAY)

        assert resp.status_code == 200
        assert resp.json()["process_id"] == "replay-1"
        start.assert_called_once_with(str(script))
        assert client.get(f"/api/sessions/{created['id']}").json()["process_id"] == "replay-1"
        assert client.get("/api/recording/status/replay-1").json()["status"] == "replay_stopped"
        event = client.post("/api/recording/connection-event/replay-1", json={"type": "warning"})
        assert event.json()["session_id"] == created["id"]

    def test_replay_without_script(self, client: TestClient, tmp_path: Path) -> None:
        assert client.post("/api/sessions/missing/replay").status_code == 404
        assert client.post(f"/api/sessions/{_create(client)['id']}/replay").status_code == 404
        gone = _create(client, script_path=str(tmp_path / "deleted.spec.js"))
        assert client.post(f"/api/sessions/{gone['id']}/replay").status_code == 404

    def test_replay_start_failure(self, client: TestClient, tmp_path: Path) -> None:
        script = tmp_path / "flow.spec.js"
        script.write_text("// recorded")
        created = _create(client, script_path=str(script))

        with patch.object(ProcessManager, "start_replay", side_effect=ProcessStartError("npx not found")):
            resp = client.post(f"/api/sessions/{created['id']}/replay")

        assert resp.status_code == 500
        assert client.get(f"/api/sessions/{created['id']}").json()["process_id"] is None

    def test_cleanup(self, client: TestClient, processes: ProcessManager) -> None:
        processes.register("proc-1", ProcessType.RECORDING)

        assert client.post("/api/recording/cleanup/proc-1").json()["success"] is True
        assert client.post("/api/recording/cleanup/proc-1").json()["success"] is False
        assert "proc-1" not in processes


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestInfrastructure:
    def test_health(self, client: TestClient) -> None:
        _create(client)

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        components = {c["name"]: c for c in body["components"]}
        assert components["database"]["detail"] == "1 sessions"
        assert components["scheduler"]["status"] == "disabled"

    def test_metrics_endpoint(self, client: TestClient) -> None:
        client.get("/api/sessions")

        resp = client.get("/metrics")

        assert resp.status_code == 200
        assert "linkwatch_requests_total" in resp.text
        assert 'endpoint="/api/sessions"' in resp.text


@pytest.mark.integration
class TestBlockingWork:
    async def test_stop_does_not_stall_other_requests(self) -> None:
        from linkwatch.api.main import app

        processes = ProcessManager()
        processes.register("p1", ProcessType.RECORDING)
        app.state.service = MonitorService(get_initialized_connection(":memory:"))
        app.state.processes = processes

        def slow_kill(_process_id: str) -> bool:
            time.sleep(1.0)
            return True

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://linkwatch.test") as ac:
            with patch.object(ProcessManager, "kill", side_effect=slow_kill):
                stop = asyncio.create_task(ac.post("/api/recording/stop/p1"))
                await asyncio.sleep(0.1)

                start = time.perf_counter()
                health = await ac.get("/health")
                latency = time.perf_counter() - start

                assert (await stop).status_code == 200

        assert health.status_code == 200
        assert latency < 0.5

"""Integration tests for the backend client with mocked HTTP responses."""

import json

import httpx
import pytest
import respx

from linkwatch.models import ConnectionEventType
from linkwatch.monitor.client import BackendClient, StatusCheckError

BASE = "http://linkwatch.test:4000"


@pytest.mark.integration
class TestCheckStatus:
    @respx.mock
    async def test_running_process(self) -> None:
        respx.get(f"{BASE}/api/recording/status/p1").mock(
            return_value=httpx.Response(
                200, json={"success": True, "process_id": "p1", "status": "recording", "is_running": True}
            )
        )

        async with BackendClient(BASE) as client:
            status = await client.check_status("p1", timeout=1.0)

        assert status.is_running is True
        assert status.status == "recording"

    @respx.mock
    async def test_unknown_process(self) -> None:
        respx.get(f"{BASE}/api/recording/status/ghost").mock(
            return_value=httpx.Response(404, json={"detail": "Process not found"})
        )

        async with BackendClient(BASE) as client:
            with pytest.raises(StatusCheckError, match="404") as exc_info:
                await client.check_status("ghost", timeout=1.0)

        assert exc_info.value.status_code == 404

    @respx.mock
    async def test_timeout(self) -> None:
        respx.get(f"{BASE}/api/recording/status/p1").mock(side_effect=httpx.ReadTimeout("Read timed out"))

        async with BackendClient(BASE) as client:
            with pytest.raises(StatusCheckError, match="timed out"):
                await client.check_status("p1", timeout=0.5)

    @respx.mock
    async def test_backend_unreachable(self) -> None:
        respx.get(f"{BASE}/api/recording/status/p1").mock(side_effect=httpx.ConnectError("Connection refused"))

        async with BackendClient(BASE) as client:
            with pytest.raises(StatusCheckError, match="Connection refused"):
                await client.check_status("p1", timeout=0.5)

    @respx.mock
    async def test_unsuccessful_report(self) -> None:
        respx.get(f"{BASE}/api/recording/status/p1").mock(
            return_value=httpx.Response(
                200,
                json={
                    "success": False,
                    "process_id": "p1",
                    "status": "unknown",
                    "is_running": False,
                    "message": "backend busy",
                },
            )
        )

        async with BackendClient(BASE) as client:
            with pytest.raises(StatusCheckError, match="backend busy"):
                await client.check_status("p1", timeout=1.0)

    @respx.mock
    async def test_malformed_body(self) -> None:
        respx.get(f"{BASE}/api/recording/status/p1").mock(return_value=httpx.Response(200, text="<html>"))

        async with BackendClient(BASE) as client:
            with pytest.raises(StatusCheckError, match="Malformed"):
                await client.check_status("p1", timeout=1.0)


@pytest.mark.integration
class TestFireAndForget:
    @respx.mock
    async def test_record_event_payload(self) -> None:
        route = respx.post(f"{BASE}/api/recording/connection-event/p1").mock(
            return_value=httpx.Response(200, json={"success": True, "session_id": "s1"})
        )

        async with BackendClient(BASE) as client:
            result = await client.record_event("p1", ConnectionEventType.RECONNECTED, "back", duration=1500)

        assert result == {"success": True, "session_id": "s1"}
        body = json.loads(route.calls.last.request.content)
        assert body == {"type": "reconnected", "details": "back", "duration": 1500}

    @respx.mock
    async def test_event_calls_use_event_timeout(self) -> None:
        event = respx.post(f"{BASE}/api/recording/connection-event/p1").mock(
            return_value=httpx.Response(200, json={"success": True})
        )
        recover = respx.get(f"{BASE}/api/recording/recover/p1").mock(
            return_value=httpx.Response(200, json={"success": True})
        )

        async with BackendClient(BASE, timeout=5.0, event_timeout=0.5) as client:
            await client.record_event("p1", ConnectionEventType.WARNING, "flaky")
            await client.recover("p1")

        assert event.calls.last.request.extensions["timeout"]["read"] == 0.5
        assert recover.calls.last.request.extensions["timeout"]["read"] == 0.5

    @respx.mock
    async def test_record_event_failure_returns_none(self) -> None:
        respx.post(f"{BASE}/api/recording/connection-event/p1").mock(return_value=httpx.Response(500))

        async with BackendClient(BASE) as client:
            assert await client.record_event("p1", ConnectionEventType.WARNING, "flaky") is None

    @respx.mock
    async def test_cleanup(self) -> None:
        respx.post(f"{BASE}/api/recording/cleanup/p1").mock(return_value=httpx.Response(200, json={"success": True}))
        respx.post(f"{BASE}/api/recording/cleanup/p2").mock(side_effect=httpx.ConnectError("Connection refused"))

        async with BackendClient(BASE) as client:
            assert await client.cleanup("p1") is True
            assert await client.cleanup("p2") is False

    @respx.mock
    async def test_recover(self) -> None:
        respx.get(f"{BASE}/api/recording/recover/p1").mock(
            return_value=httpx.Response(200, json={"success": True, "session_id": "s1"})
        )
        respx.get(f"{BASE}/api/recording/recover/p2").mock(return_value=httpx.Response(404))

        async with BackendClient(BASE) as client:
            assert await client.recover("p1") == {"success": True, "session_id": "s1"}
            assert await client.recover("p2") is None

"""Async HTTP client for the recording backend's process endpoints."""

import logging
from typing import Any

import httpx

from linkwatch.models import ConnectionEventType, ProcessStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class StatusCheckError(Exception):
    """A liveness check did not produce a usable status (HTTP error, timeout, success=false)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendClient:
    """Thin wrapper over ``httpx.AsyncClient`` for ``/api/recording/*``.

    Only ``check_status`` raises; the fire-and-forget calls (event recording,
    cleanup, recover) log failures and return a neutral value so they never
    interrupt the monitor loop.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        event_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._event_timeout = event_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def check_status(self, process_id: str, timeout: float) -> ProcessStatus:
        try:
            resp = await self._client.get(f"/api/recording/status/{process_id}", timeout=timeout)
            resp.raise_for_status()
            status = ProcessStatus.model_validate(resp.json())
        except httpx.TimeoutException as exc:
            raise StatusCheckError(f"Status check timed out after {timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise StatusCheckError(
                f"Status check failed: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise StatusCheckError(f"Status check failed: {exc}") from exc
        except ValueError as exc:
            raise StatusCheckError(f"Malformed status response: {exc}") from exc

        if not status.success:
            raise StatusCheckError(status.message or "Backend reported an unsuccessful status check")
        return status

    async def record_event(
        self,
        process_id: str,
        event_type: ConnectionEventType,
        details: str | None = None,
        duration: int | None = None,
    ) -> dict[str, Any] | None:
        payload: dict[str, Any] = {"type": event_type.value, "details": details}
        if duration is not None:
            payload["duration"] = duration
        try:
            resp = await self._client.post(
                f"/api/recording/connection-event/{process_id}", json=payload, timeout=self._event_timeout
            )
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError):
            logger.warning("Failed to record %s event for process %s", event_type, process_id, exc_info=True)
            return None

    async def cleanup(self, process_id: str) -> bool:
        try:
            resp = await self._client.post(f"/api/recording/cleanup/{process_id}", timeout=self._event_timeout)
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning("Failed to clean up process %s", process_id, exc_info=True)
            return False
        return True

    async def recover(self, process_id: str) -> dict[str, Any] | None:
        try:
            resp = await self._client.get(f"/api/recording/recover/{process_id}", timeout=self._event_timeout)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError):
            logger.warning("Failed to recover session for process %s", process_id, exc_info=True)
            return None

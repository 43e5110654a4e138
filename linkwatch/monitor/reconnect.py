"""Connection state machine for a single recording/replay process.

The monitor polls the backend for process liveness, counts consecutive
failures, escalates to reconnection attempts and finally to a terminal
``failed`` state. Every state change that matters to the session history is
also reported back to the backend as a connection event.

All mutation happens on one asyncio event loop. ``_reconnecting`` keeps a
second reconnection attempt from starting while one is in progress, and
every status check carries a sequence number so that a late response never
overrides a newer one.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field

from linkwatch.config import Settings
from linkwatch.models import ConnectionEventType, ProcessStatus
from linkwatch.monitor.client import StatusCheckError
from linkwatch.observability.metrics import (
    MONITOR_STATE,
    RECONNECT_ATTEMPTS_TOTAL,
    STATUS_CHECK_DURATION,
    STATUS_CHECKS_TOTAL,
)

logger = logging.getLogger(__name__)

CRASH_DETAILS = "Process crashed or stopped unexpectedly"
NOT_RUNNING_DETAILS = "Process exists but is not running"
USER_STOP_DETAILS = "Recording manually stopped by user"
NETWORK_LOST_DETAILS = "Network connection lost"
NETWORK_RESTORED_DETAILS = "Network connection restored"
UNSTABLE_DETAILS = "Connection unstable"


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    WARNING = "warning"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class MonitorConfig(BaseModel):
    """Timing and escalation limits of the monitor."""

    poll_interval: float = Field(default=2.0, gt=0)  # seconds between liveness checks
    status_timeout: float = Field(default=5.0, gt=0)
    reconnect_timeout: float = Field(default=10.0, gt=0)
    event_timeout: float = Field(default=5.0, gt=0)
    warning_after_failures: int = Field(default=3, ge=1)
    max_poll_failures: int = Field(default=5, ge=1)
    max_reconnect_attempts: int = Field(default=3, ge=1)
    reconnect_delay: float = Field(default=2.0, ge=0)  # pause between failed reconnection attempts

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitorConfig":
        return cls(
            poll_interval=settings.poll_interval_seconds,
            status_timeout=settings.status_timeout_seconds,
            reconnect_timeout=settings.reconnect_timeout_seconds,
            event_timeout=settings.event_timeout_seconds,
            warning_after_failures=settings.warning_after_failures,
            max_poll_failures=settings.max_poll_failures,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            reconnect_delay=settings.poll_interval_seconds,
        )


class MonitorBackend(Protocol):
    """The subset of BackendClient the monitor depends on."""

    async def check_status(self, process_id: str, timeout: float) -> ProcessStatus: ...

    async def record_event(
        self,
        process_id: str,
        event_type: ConnectionEventType,
        details: str | None = None,
        duration: int | None = None,
    ) -> object: ...

    async def cleanup(self, process_id: str) -> bool: ...

    async def recover(self, process_id: str) -> object: ...


StateListener = Callable[[ConnectionState, ConnectionState], None]

_POLLING_STATES = (ConnectionState.CONNECTED, ConnectionState.WARNING, ConnectionState.RECONNECTING)


class ReconnectionMonitor:
    def __init__(
        self,
        process_id: str,
        client: MonitorBackend,
        config: MonitorConfig | None = None,
    ) -> None:
        self.process_id = process_id
        self._client = client
        self._config = config or MonitorConfig()

        self._state = ConnectionState.IDLE
        self._poll_failures = 0
        self._reconnect_attempts = 0
        self._reconnecting = False
        self._last_known_status: str | None = None

        self._issued_seq = 0
        self._applied_seq = 0

        self._poll_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._listeners: list[StateListener] = []

        MONITOR_STATE.labels(process_id=process_id, state=self._state.value).set(1)

    # -- read-only views ----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def poll_failures(self) -> int:
        return self._poll_failures

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # -- listeners ------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        MONITOR_STATE.labels(process_id=self.process_id, state=old_state.value).set(0)
        MONITOR_STATE.labels(process_id=self.process_id, state=new_state.value).set(1)
        logger.info("Process %s: %s -> %s", self.process_id, old_state, new_state)
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception("State listener failed for process %s", self.process_id)

    # -- status checks --------------------------------------------------------

    async def _check(self, timeout: float) -> tuple[int, ProcessStatus | None]:
        self._issued_seq += 1
        seq = self._issued_seq
        start = time.perf_counter()
        try:
            status = await self._client.check_status(self.process_id, timeout)
        except StatusCheckError as exc:
            STATUS_CHECKS_TOTAL.labels(outcome="error").inc()
            logger.debug("Status check #%d for process %s failed: %s", seq, self.process_id, exc)
            return seq, None
        finally:
            STATUS_CHECK_DURATION.observe(time.perf_counter() - start)

        STATUS_CHECKS_TOTAL.labels(outcome="running" if status.is_running else "not_running").inc()
        return seq, status

    def _is_stale(self, seq: int) -> bool:
        if seq < self._applied_seq:
            logger.debug("Dropping stale status check #%d (applied #%d)", seq, self._applied_seq)
            return True
        self._applied_seq = seq
        return False

    async def _emit(
        self,
        event_type: ConnectionEventType,
        details: str,
        duration: int | None = None,
    ) -> None:
        await self._client.record_event(self.process_id, event_type, details, duration)

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> ConnectionState:
        """Initial liveness check; begins polling when the process is running."""
        seq, status = await self._check(self._config.status_timeout)
        if self._is_stale(seq):
            return self._state

        if status is not None and status.is_running:
            self._last_known_status = status.status
            self._set_state(ConnectionState.CONNECTED)
            self._start_polling()
        else:
            self._set_state(ConnectionState.DISCONNECTED)
        return self._state

    async def stop(self) -> None:
        """User-initiated stop, recorded differently from a crash."""
        self._stop_polling()
        self._set_state(ConnectionState.IDLE)
        await self._emit(ConnectionEventType.DISCONNECTED, USER_STOP_DETAILS)

    async def resume(self) -> ConnectionState:
        """Manual restart after reconnection gave up."""
        self._poll_failures = 0
        self._reconnect_attempts = 0
        self._last_known_status = None
        self._set_state(ConnectionState.IDLE)
        return await self.start()

    async def close(self) -> None:
        """Cancel polling and in-flight checks without recording anything."""
        current = asyncio.current_task()
        tasks = [t for t in (self._poll_task, *self._inflight) if t is not None and t is not current]
        self._stop_polling()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- polling --------------------------------------------------------------

    def _start_polling(self) -> None:
        if self.polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"linkwatch-poll-{self.process_id}")

    def _stop_polling(self) -> None:
        current = asyncio.current_task()
        if self._poll_task is not None and self._poll_task is not current:
            self._poll_task.cancel()
        self._poll_task = None
        for task in list(self._inflight):
            if task is not current:
                task.cancel()

    async def _poll_loop(self) -> None:
        while self._state in _POLLING_STATES:
            await asyncio.sleep(self._config.poll_interval)
            if self._reconnecting:
                continue
            # A stalled check must not delay the next tick, so each poll is its own task.
            task = asyncio.create_task(self.poll_once())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def poll_once(self) -> None:
        """One liveness check and the state changes that follow from it."""
        if self._reconnecting or self._state not in (ConnectionState.CONNECTED, ConnectionState.WARNING):
            return

        seq, status = await self._check(self._config.status_timeout)
        if self._is_stale(seq) or self._reconnecting:
            return
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.WARNING):
            return

        if status is None:
            await self._on_poll_failure()
            return

        previous = self._last_known_status
        self._last_known_status = status.status
        self._poll_failures = 0

        if previous == "recording" and status.status == "stopped":
            logger.warning("Process %s stopped while recording", self.process_id)
            self._stop_polling()
            self._set_state(ConnectionState.DISCONNECTED)
            await self._emit(ConnectionEventType.FAILED, CRASH_DETAILS)
            await self._client.cleanup(self.process_id)
            return

        if not status.is_running:
            logger.info("Process %s finished (%s)", self.process_id, status.status)
            self._stop_polling()
            self._set_state(ConnectionState.IDLE)
            return

        if self._state == ConnectionState.WARNING:
            self._set_state(ConnectionState.CONNECTED)

    async def _on_poll_failure(self) -> None:
        self._poll_failures += 1
        failures = self._poll_failures
        if failures == 1:
            logger.warning("Connection issue detected for process %s", self.process_id)

        if failures >= self._config.max_poll_failures:
            await self.attempt_reconnect()
        elif failures >= self._config.warning_after_failures and self._state == ConnectionState.CONNECTED:
            self._set_state(ConnectionState.WARNING)
            await self._emit(ConnectionEventType.WARNING, UNSTABLE_DETAILS)

    # -- reconnection ---------------------------------------------------------

    async def attempt_reconnect(self) -> bool:
        """Try up to ``max_reconnect_attempts`` times to confirm the process is alive again."""
        if self._reconnecting:
            logger.debug("Reconnection already in progress for process %s", self.process_id)
            return False
        if self._state == ConnectionState.FAILED:
            logger.info("Process %s needs a manual resume before reconnecting", self.process_id)
            return False
        self._reconnecting = True
        try:
            return await self._reconnect()
        finally:
            self._reconnecting = False

    async def _reconnect(self) -> bool:
        limit = self._config.max_reconnect_attempts
        timeout_ms = int(self._config.reconnect_timeout * 1000)
        self._set_state(ConnectionState.RECONNECTING)

        while self._reconnect_attempts < limit:
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            await self._emit(ConnectionEventType.RECONNECTING, f"Reconnection attempt {attempt}/{limit}")
            await self._client.recover(self.process_id)
            if self._state != ConnectionState.RECONNECTING:
                return False

            seq, status = await self._check(self._config.reconnect_timeout)
            if self._state != ConnectionState.RECONNECTING:
                # stopped or taken offline meanwhile
                return False
            stale = self._is_stale(seq)

            if not stale and status is not None and status.is_running:
                RECONNECT_ATTEMPTS_TOTAL.labels(outcome="success").inc()
                self._poll_failures = 0
                self._reconnect_attempts = 0
                self._last_known_status = status.status
                self._set_state(ConnectionState.CONNECTED)
                await self._emit(
                    ConnectionEventType.RECONNECTED,
                    f"Reconnected after {attempt} attempt(s)",
                    duration=attempt * timeout_ms,
                )
                self._start_polling()
                return True

            if not stale and status is not None:
                RECONNECT_ATTEMPTS_TOTAL.labels(outcome="not_running").inc()
                self._stop_polling()
                self._set_state(ConnectionState.DISCONNECTED)
                await self._emit(ConnectionEventType.FAILED, NOT_RUNNING_DETAILS)
                await self._client.cleanup(self.process_id)
                return False

            RECONNECT_ATTEMPTS_TOTAL.labels(outcome="failure").inc()
            logger.warning("Reconnection attempt %d/%d failed for process %s", attempt, limit, self.process_id)
            if attempt < limit:
                await asyncio.sleep(self._config.reconnect_delay)
                if self._state != ConnectionState.RECONNECTING:
                    return False

        logger.error("Giving up on process %s after %d reconnection attempts", self.process_id, limit)
        self._stop_polling()
        self._set_state(ConnectionState.FAILED)
        await self._emit(ConnectionEventType.FAILED, f"Maximum reconnection attempts reached ({limit}/{limit})")
        await self._client.cleanup(self.process_id)
        return False

    # -- network events -------------------------------------------------------

    async def on_network_offline(self) -> None:
        if self._state in (ConnectionState.IDLE, ConnectionState.FAILED):
            return
        self._stop_polling()
        self._set_state(ConnectionState.DISCONNECTED)
        await self._emit(ConnectionEventType.DISCONNECTED, NETWORK_LOST_DETAILS)

    async def on_network_online(self) -> bool:
        if self._state in (ConnectionState.IDLE, ConnectionState.FAILED):
            logger.info("Ignoring network restore for process %s in state %s", self.process_id, self._state)
            return False
        if self.polling or self._state != ConnectionState.DISCONNECTED:
            # still polling (or already reconnecting): the next check confirms the link
            logger.debug("Network restored for process %s while %s; not reconnecting", self.process_id, self._state)
            return False
        await self._emit(ConnectionEventType.RECONNECTING, NETWORK_RESTORED_DETAILS)
        return await self.attempt_reconnect()

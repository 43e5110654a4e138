"""In-memory registry of recording and replay child processes."""

import logging
import shlex
import subprocess
import threading
import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import IO

from pydantic import BaseModel, Field

from linkwatch.models import ProcessStatus

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 5.0
DEFAULT_RETENTION = timedelta(hours=1)


class ProcessType(StrEnum):
    RECORDING = "recording"
    REPLAY = "replay"


class ProcessStartError(Exception):
    """The recording/replay CLI could not be launched."""


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    message: str
    type: str = "info"  # info | error | success


class TrackedProcess:
    """A registered process plus its captured output."""

    def __init__(self, process_type: ProcessType, popen: subprocess.Popen[str] | None) -> None:
        self.type = process_type
        self.popen = popen
        self.logs: list[LogEntry] = []
        self.exit_reported = False
        self.stopped_by_user = False

    @property
    def running(self) -> bool:
        return self.popen is not None and self.popen.poll() is None

    @property
    def exit_code(self) -> int | None:
        return None if self.popen is None else self.popen.poll()

    @property
    def last_activity(self) -> datetime | None:
        return self.logs[-1].timestamp if self.logs else None


class ProcessManager:
    """Spawns, tracks, and reaps child processes keyed by an opaque process id.

    Exit codes are not pushed to anyone; callers observe them through
    ``take_exit`` when they check a process' status.
    """

    def __init__(
        self,
        codegen_command: str = "npx playwright codegen",
        replay_command: str = "npx playwright test",
    ) -> None:
        self._codegen_command = shlex.split(codegen_command)
        self._replay_command = shlex.split(replay_command)
        self._processes: dict[str, TrackedProcess] = {}

    # -- registration ---------------------------------------------------------

    def register(
        self,
        process_id: str,
        process_type: ProcessType,
        popen: subprocess.Popen[str] | None = None,
    ) -> None:
        tracked = TrackedProcess(process_type, popen)
        self._processes[process_id] = tracked
        self.add_log(process_id, f"Started {process_type} process with ID: {process_id}")

        if popen is not None and popen.stdout is not None:
            reader = threading.Thread(
                target=self._pump_output,
                args=(process_id, popen.stdout),
                name=f"linkwatch-output-{process_id}",
                daemon=True,
            )
            reader.start()

    def _pump_output(self, process_id: str, stream: IO[str]) -> None:
        for line in stream:
            text = line.strip()
            if text:
                self.add_log(process_id, text)
        tracked = self._processes.get(process_id)
        if tracked is not None and tracked.popen is not None:
            code = tracked.popen.wait()
            self.add_log(process_id, f"Process exited with code {code}", "success" if code == 0 else "error")

    def _spawn(self, process_type: ProcessType, argv: list[str]) -> str:
        process_id = uuid.uuid4().hex
        logger.info("Starting %s process %s: %s", process_type, process_id, shlex.join(argv))
        try:
            popen = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except OSError as exc:
            raise ProcessStartError(f"Failed to start {process_type} process: {exc}") from exc
        self.register(process_id, process_type, popen)
        return process_id

    def start_recording(self, url: str, output_path: str | Path) -> str:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        argv = [*self._codegen_command, "--target", "javascript", "-o", str(output_path), url]
        return self._spawn(ProcessType.RECORDING, argv)

    def start_replay(self, script_path: str | Path) -> str:
        if not Path(script_path).exists():
            raise ProcessStartError(f"Script not found: {script_path}")
        argv = [*self._replay_command, str(script_path)]
        return self._spawn(ProcessType.REPLAY, argv)

    # -- queries --------------------------------------------------------------

    def __contains__(self, process_id: object) -> bool:
        return process_id in self._processes

    def is_running(self, process_id: str) -> bool:
        tracked = self._processes.get(process_id)
        return tracked is not None and tracked.running

    def get_process_type(self, process_id: str) -> ProcessType | None:
        tracked = self._processes.get(process_id)
        return tracked.type if tracked else None

    def add_log(self, process_id: str, message: str, log_type: str = "info") -> None:
        tracked = self._processes.get(process_id)
        if tracked is not None:
            tracked.logs.append(LogEntry(message=message, type=log_type))

    def get_logs(self, process_id: str) -> list[LogEntry]:
        tracked = self._processes.get(process_id)
        return list(tracked.logs) if tracked else []

    def status(self, process_id: str) -> ProcessStatus | None:
        """Liveness report in backend vocabulary; None for an unknown process."""
        tracked = self._processes.get(process_id)
        if tracked is None:
            return None
        running = tracked.running
        if tracked.type == ProcessType.RECORDING:
            status = "recording" if running else "stopped"
        else:
            status = "replaying" if running else "replay_stopped"
        return ProcessStatus(process_id=process_id, status=status, is_running=running)

    def take_exit(self, process_id: str) -> int | None:
        """Exit code of a process that ended on its own, returned only once.

        User-initiated kills are never reported.
        """
        tracked = self._processes.get(process_id)
        if tracked is None or tracked.running or tracked.exit_reported or tracked.stopped_by_user:
            return None
        code = tracked.exit_code
        if code is None:
            return None
        tracked.exit_reported = True
        return code

    # -- teardown -------------------------------------------------------------

    def kill(self, process_id: str) -> bool:
        tracked = self._processes.get(process_id)
        if tracked is None or not tracked.running or tracked.popen is None:
            return False

        tracked.stopped_by_user = True
        tracked.popen.terminate()
        try:
            tracked.popen.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s ignored SIGTERM, killing", process_id)
            tracked.popen.kill()
            tracked.popen.wait()
        self.add_log(process_id, "Process stopped by user")
        logger.info("Stopped process %s", process_id)
        return True

    def forget(self, process_id: str) -> bool:
        """Stop tracking a process (killing it first if still alive)."""
        if process_id not in self._processes:
            return False
        self.kill(process_id)
        del self._processes[process_id]
        return True

    def clean_up(self, max_age: timedelta = DEFAULT_RETENTION, now: datetime | None = None) -> list[str]:
        """Drop finished processes whose last log entry is older than ``max_age``."""
        cutoff = (now or datetime.now(UTC)) - max_age
        removed = [
            pid
            for pid, tracked in self._processes.items()
            if not tracked.running and tracked.last_activity is not None and tracked.last_activity < cutoff
        ]
        for pid in removed:
            del self._processes[pid]
        if removed:
            logger.info("Cleaned up %d finished processes", len(removed))
        return removed

    def shutdown(self) -> None:
        for pid in list(self._processes):
            self.kill(pid)

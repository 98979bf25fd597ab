"""Process supervisor for the external update script.

Launches the script detached from the service's session, turns its output into
:mod:`~spectrabox.update.models` events, and enforces the overall and stall
timeouts.  It never touches tracker state directly; the caller passes an
``emit`` callback (normally :meth:`UpdateStatusTracker.apply`).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from collections.abc import Callable
from pathlib import Path

from .errors import ScriptMissing
from .models import (
    ErrorOutputEvent,
    ExitEvent,
    OutputEvent,
    StreamErrorEvent,
    SupervisorEvent,
    TimeoutEvent,
)

LOGGER = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
POLL_INTERVAL_S = 1.0
TERMINATE_GRACE_S = 5.0
PUMP_DRAIN_TIMEOUT_S = 5.0
UNMATCHED_MESSAGE = "Update in progress..."

# First match wins, so "Download complete" reports the download phase.
PROGRESS_PHRASES: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"download", re.IGNORECASE), 25),
    (re.compile(r"install", re.IGNORECASE), 50),
    (re.compile(r"configur", re.IGNORECASE), 75),
    (re.compile(r"restart", re.IGNORECASE), 90),
    (re.compile(r"\b(complete|completed|finished)\b", re.IGNORECASE), 100),
)
_PERCENT_RE = re.compile(r"\b(\d{1,3})\s*%")

SANDBOX_STEPS: tuple[str, ...] = (
    "Downloading updates...",
    "Installing updates...",
    "Configuring services...",
    "Update complete",
)

EmitFn = Callable[[SupervisorEvent], None]


# ---------------------------------------------------------------------------
# sudo wrapper helpers
# ---------------------------------------------------------------------------


def _sudo_prefix(use_sudo: bool = True) -> list[str]:
    """Return the sudo prefix for the privileged update script."""
    if not use_sudo or os.geteuid() == 0:
        return []
    return ["sudo", "-n"]


# ---------------------------------------------------------------------------
# Log sanitisation / progress inference
# ---------------------------------------------------------------------------


def sanitize_log_line(line: str) -> str:
    """Remove potential credential leaks from log lines."""
    line = re.sub(r"(?i)(psk|password|secret|token|key)\s*[=:]\s*\S+", r"\1=***", line)
    return line[:500]


def parse_output(chunk: str) -> OutputEvent:
    """Map one chunk of script output to an :class:`OutputEvent`."""
    lines = [ln.strip() for ln in chunk.splitlines() if ln.strip()]
    if not lines:
        return OutputEvent(message=UNMATCHED_MESSAGE)
    last = sanitize_log_line(lines[-1])
    for line in reversed(lines):
        for pattern, progress in PROGRESS_PHRASES:
            if pattern.search(line):
                return OutputEvent(message=sanitize_log_line(line), progress=progress)
    for line in reversed(lines):
        match = _PERCENT_RE.search(line)
        if match:
            # Only a clean exit reports 100.
            return OutputEvent(message=last, progress=min(99, int(match.group(1))))
    return OutputEvent(message=UNMATCHED_MESSAGE)


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class UpdateScriptSupervisor:
    """Run the update script once per :meth:`run` call."""

    def __init__(
        self,
        script_path: str | Path,
        *,
        use_sudo: bool = True,
        overall_timeout_s: float = 15 * 60,
        stall_timeout_s: float = 5 * 60,
        sandboxed: bool = False,
        sandbox_delay_s: float = 2.0,
        poll_interval_s: float = POLL_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._script_path = Path(script_path)
        self._use_sudo = use_sudo
        self._overall_timeout_s = overall_timeout_s
        self._stall_timeout_s = stall_timeout_s
        self._sandboxed = sandboxed
        self._sandbox_delay_s = sandbox_delay_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._last_activity = 0.0

    @property
    def script_path(self) -> Path:
        return self._script_path

    @property
    def sandboxed(self) -> bool:
        return self._sandboxed

    def command(self) -> list[str]:
        return [*_sudo_prefix(self._use_sudo), "bash", str(self._script_path)]

    def check_preconditions(self) -> None:
        """Raise :class:`ScriptMissing` unless the script exists and is executable."""
        path = self._script_path
        if not path.is_file():
            raise ScriptMissing(details=f"Update script not found: {path}")
        if not os.access(path, os.X_OK):
            raise ScriptMissing(
                "Update script is not executable",
                details=f"Update script not executable: {path}",
            )

    async def run(self, emit: EmitFn) -> None:
        """Execute the script, emitting events until exactly one terminal event."""
        if self._sandboxed:
            await self._run_sandbox(emit)
            return

        args = self.command()
        LOGGER.info("Launching update script: %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own session so a service restart does not take the script down.
                start_new_session=True,
            )
        except OSError as exc:
            LOGGER.error("Failed to start update script %s: %s", self._script_path, exc)
            emit(StreamErrorEvent(f"Failed to start update script: {exc}"))
            return

        started = self._clock()
        self._last_activity = started
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, emit, is_stderr=False), name="update-stdout"),
            asyncio.create_task(self._pump(proc.stderr, emit, is_stderr=True), name="update-stderr"),
        ]
        waiter = asyncio.create_task(proc.wait(), name="update-wait")
        timeout_event: TimeoutEvent | None = None
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=self._poll_interval_s)
                if waiter in done:
                    break
                timeout_event = self._check_timeouts(started)
                if timeout_event is not None:
                    break
        except asyncio.CancelledError:
            # Service shutting down; the detached script keeps running.
            for task in (*pumps, waiter):
                task.cancel()
            raise

        if timeout_event is not None:
            LOGGER.error("%s; terminating update script", timeout_event.message)
            await self._terminate(proc)
            waiter.cancel()
            await self._drain(pumps)
            emit(timeout_event)
            return

        await self._drain(pumps)
        returncode = proc.returncode if proc.returncode is not None else -1
        LOGGER.info("Update script exited with code %d", returncode)
        emit(ExitEvent(returncode))

    # -- internals -----------------------------------------------------------

    def _check_timeouts(self, started: float) -> TimeoutEvent | None:
        now = self._clock()
        if now - started >= self._overall_timeout_s:
            return TimeoutEvent(
                kind="overall",
                message=(
                    f"Update timed out after {self._overall_timeout_s / 60:.0f} minutes"
                ),
            )
        if now - self._last_activity >= self._stall_timeout_s:
            return TimeoutEvent(
                kind="stall",
                message=(
                    "Update stalled: no output from the update script for "
                    f"{self._stall_timeout_s / 60:.0f} minutes"
                ),
            )
        return None

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        emit: EmitFn,
        *,
        is_stderr: bool,
    ) -> None:
        if stream is None:
            return
        try:
            while True:
                raw = await stream.read(READ_CHUNK_BYTES)
                if not raw:
                    return
                self._last_activity = self._clock()
                text = raw.decode(errors="replace")
                if is_stderr:
                    LOGGER.warning("update stderr: %s", sanitize_log_line(text.strip()))
                    emit(ErrorOutputEvent(text))
                else:
                    LOGGER.info("update stdout: %s", sanitize_log_line(text.strip()))
                    emit(parse_output(text))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Error reading update script output", exc_info=True)
            emit(StreamErrorEvent(f"Error reading update script output: {exc}"))

    async def _drain(self, pumps: list[asyncio.Task[None]]) -> None:
        # Grandchildren of a detached script may keep the pipes open.
        try:
            await asyncio.wait_for(asyncio.gather(*pumps), timeout=PUMP_DRAIN_TIMEOUT_S)
        except TimeoutError:
            LOGGER.warning("Update script output still open after exit; detaching readers")
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                return
            except PermissionError:
                LOGGER.warning(
                    "Not permitted to signal update script (pid=%d); leaving it running",
                    proc.pid,
                )
                return
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_S)
                return
            except TimeoutError:
                continue

    async def _run_sandbox(self, emit: EmitFn) -> None:
        LOGGER.warning(
            "Non-production profile: simulating update instead of running %s",
            self._script_path,
        )
        step_delay = self._sandbox_delay_s / (len(SANDBOX_STEPS) + 1)
        for line in SANDBOX_STEPS:
            await asyncio.sleep(step_delay)
            emit(parse_output(line))
        await asyncio.sleep(step_delay)
        emit(ExitEvent(0))

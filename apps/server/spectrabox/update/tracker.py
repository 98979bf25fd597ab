"""Authoritative state machine for one update episode.

The tracker is the only owner of :class:`UpdateState`.  The trigger handler
moves it out of ``idle`` with :meth:`UpdateStatusTracker.try_begin`; after that
only :meth:`UpdateStatusTracker.apply` (fed by the process supervisor's event
stream) changes it.  Every transition gets a strictly increasing millisecond
timestamp and is handed synchronously to the registered listeners, in order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace

from .models import (
    TERMINAL_STATUSES,
    ErrorOutputEvent,
    ExitEvent,
    OutputEvent,
    StreamErrorEvent,
    SupervisorEvent,
    TimeoutEvent,
    UpdateState,
    UpdateStatus,
)
from .errors import ScriptFailed, ScriptTimedOut
from .troubleshooting import build_troubleshooting

LOGGER = logging.getLogger(__name__)

IDLE_MESSAGE = "No update in progress"
SUCCESS_MESSAGE = "Update completed successfully. Server is restarting..."
FAILURE_MESSAGE = "Update failed"
MAX_STDERR_CHARS = 16_000

StateListener = Callable[[UpdateState], None]


class UpdateStatusTracker:
    def __init__(
        self,
        *,
        success_reset_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._success_reset_s = success_reset_s
        self._last_timestamp = 0
        self._listeners: list[StateListener] = []
        self._stderr_chunks: list[str] = []
        self._stderr_len = 0
        self._reset_handle: asyncio.TimerHandle | None = None
        self._state = UpdateState(timestamp=self._next_timestamp())

    # -- observers -----------------------------------------------------------

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # -- queries -------------------------------------------------------------

    @property
    def state(self) -> UpdateState:
        """Immutable-by-convention copy of the current state."""
        return replace(self._state)

    def snapshot(self) -> UpdateState:
        return self.state

    @property
    def status(self) -> UpdateStatus:
        return self._state.status

    @property
    def busy(self) -> bool:
        return self._state.status in (UpdateStatus.updating, UpdateStatus.checking)

    def to_dict(self) -> dict:
        return self._state.to_dict()

    # -- transitions ---------------------------------------------------------

    def try_begin(self, message: str = "Starting update process...") -> bool:
        """Check-and-set ``idle`` -> ``updating``.  Returns False without mutating otherwise."""
        if self._state.status is not UpdateStatus.idle:
            return False
        self._stderr_chunks = []
        self._stderr_len = 0
        self._transition(
            status=UpdateStatus.updating,
            message=message,
            progress=0,
            started_at=self._clock(),
            error=None,
            error_code=None,
            troubleshooting=None,
        )
        return True

    def reset_if_finished(self) -> bool:
        """Return a finished episode (``success``/``error``) to ``idle``."""
        if self._state.status not in TERMINAL_STATUSES:
            return False
        self._reset()
        return True

    def apply(self, event: SupervisorEvent) -> None:
        """Fold one supervisor event into the state."""
        if self._state.status is not UpdateStatus.updating:
            LOGGER.debug("Ignoring %s while status=%s", type(event).__name__, self._state.status)
            return
        if isinstance(event, OutputEvent):
            progress = self._state.progress
            if event.progress is not None:
                progress = max(progress, min(100, max(0, event.progress)))
            self._transition(message=event.message, progress=progress)
        elif isinstance(event, ErrorOutputEvent):
            self._append_stderr(event.text)
        elif isinstance(event, ExitEvent):
            if event.returncode == 0:
                self._succeed()
            else:
                stderr = "".join(self._stderr_chunks).strip()
                self._fail(
                    FAILURE_MESSAGE,
                    stderr or f"Update script exited with code {event.returncode}",
                    ScriptFailed.error_code,
                )
        elif isinstance(event, TimeoutEvent):
            stderr = "".join(self._stderr_chunks).strip()
            detail = f"{event.message}\n{stderr}" if stderr else event.message
            self._fail(event.message, detail, ScriptTimedOut.error_code)
        elif isinstance(event, StreamErrorEvent):
            self._fail(FAILURE_MESSAGE, event.message, ScriptFailed.error_code)

    # -- internals -----------------------------------------------------------

    def _append_stderr(self, text: str) -> None:
        room = MAX_STDERR_CHARS - self._stderr_len
        if room <= 0:
            return
        chunk = text[:room]
        self._stderr_chunks.append(chunk)
        self._stderr_len += len(chunk)

    def _succeed(self) -> None:
        self._transition(
            status=UpdateStatus.success,
            message=SUCCESS_MESSAGE,
            progress=100,
            error=None,
            error_code=None,
            troubleshooting=None,
        )
        LOGGER.info("Update completed successfully")
        self._schedule_reset()

    def _fail(self, message: str, error: str, error_code: str) -> None:
        self._transition(
            status=UpdateStatus.error,
            message=message,
            error=error,
            error_code=error_code,
            troubleshooting=build_troubleshooting(error),
        )
        LOGGER.error("Update failed: %s", error.splitlines()[0] if error else message)

    def _reset(self) -> None:
        self._cancel_reset()
        self._stderr_chunks = []
        self._stderr_len = 0
        self._transition(
            status=UpdateStatus.idle,
            message=IDLE_MESSAGE,
            progress=0,
            started_at=None,
            error=None,
            error_code=None,
            troubleshooting=None,
        )

    def _schedule_reset(self) -> None:
        self._cancel_reset()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reset_handle = loop.call_later(self._success_reset_s, self._auto_reset)

    def _auto_reset(self) -> None:
        self._reset_handle = None
        if self._state.status is UpdateStatus.success:
            LOGGER.debug("Resetting update status to idle after success")
            self._reset()

    def _cancel_reset(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _next_timestamp(self) -> int:
        now_ms = int(self._clock() * 1000)
        self._last_timestamp = max(now_ms, self._last_timestamp + 1)
        return self._last_timestamp

    def _transition(self, **changes) -> None:
        for key, value in changes.items():
            setattr(self._state, key, value)
        self._state.timestamp = self._next_timestamp()
        snapshot = replace(self._state)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                LOGGER.warning("Update state listener failed", exc_info=True)

    def close(self) -> None:
        self._cancel_reset()

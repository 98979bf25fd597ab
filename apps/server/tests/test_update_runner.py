"""Tests for the update script supervisor."""

from __future__ import annotations

import stat
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from spectrabox.update.errors import ScriptMissing
from spectrabox.update.models import (
    ErrorOutputEvent,
    ExitEvent,
    OutputEvent,
    StreamErrorEvent,
    TimeoutEvent,
    UpdateStatus,
)
from spectrabox.update.runner import (
    UNMATCHED_MESSAGE,
    UpdateScriptSupervisor,
    _sudo_prefix,
    parse_output,
    sanitize_log_line,
)
from spectrabox.update.tracker import UpdateStatusTracker

# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("chunk", "progress"),
    [
        ("Downloading packages...", 25),
        ("Installing dependencies", 50),
        ("Configuring services", 75),
        ("Restarting spectrabox.service", 90),
        ("Update complete", 100),
        ("All steps finished", 100),
    ],
)
def test_progress_phrases(chunk: str, progress: int) -> None:
    event = parse_output(chunk)
    assert event.progress == progress
    assert event.message == chunk


def test_latest_matching_line_in_chunk_wins() -> None:
    event = parse_output("Downloading files\nInstalling files\n")
    assert event.progress == 50
    assert event.message == "Installing files"


def test_explicit_percent_marker() -> None:
    event = parse_output("step 3 of 7: 40%")
    assert event.progress == 40


def test_explicit_percent_never_reports_completion() -> None:
    assert parse_output("copying 100%").progress == 99


def test_unmatched_output_keeps_progress() -> None:
    event = parse_output("Reading state information")
    assert event.progress is None
    assert event.message == UNMATCHED_MESSAGE
    assert parse_output("\n\n").message == UNMATCHED_MESSAGE


def test_log_lines_are_redacted_and_capped() -> None:
    assert sanitize_log_line("export token=ghp_abc123") == "export token=***"
    assert len(sanitize_log_line("x" * 2000)) == 500


def test_sudo_prefix() -> None:
    assert _sudo_prefix(False) == []
    with patch("spectrabox.update.runner.os.geteuid", return_value=0):
        assert _sudo_prefix(True) == []
    with patch("spectrabox.update.runner.os.geteuid", return_value=1000):
        assert _sudo_prefix(True) == ["sudo", "-n"]


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


def _script(tmp_path: Path, body: str, *, executable: bool = True) -> Path:
    path = tmp_path / "update.sh"
    path.write_text("#!/bin/bash\n" + body, encoding="utf-8")
    mode = 0o755 if executable else 0o644
    path.chmod(mode)
    return path


def test_missing_script_rejected(tmp_path: Path) -> None:
    supervisor = UpdateScriptSupervisor(tmp_path / "nope.sh", use_sudo=False)
    with pytest.raises(ScriptMissing):
        supervisor.check_preconditions()


def test_non_executable_script_rejected(tmp_path: Path) -> None:
    path = _script(tmp_path, "exit 0\n", executable=False)
    assert not path.stat().st_mode & stat.S_IXUSR
    supervisor = UpdateScriptSupervisor(path, use_sudo=False)
    with pytest.raises(ScriptMissing, match="not executable"):
        supervisor.check_preconditions()


def test_executable_script_accepted(tmp_path: Path) -> None:
    supervisor = UpdateScriptSupervisor(_script(tmp_path, "exit 0\n"), use_sudo=False)
    supervisor.check_preconditions()
    assert supervisor.command() == ["bash", str(tmp_path / "update.sh")]


# ---------------------------------------------------------------------------
# Running real scripts
# ---------------------------------------------------------------------------


def _supervisor(path: Path, **kwargs) -> UpdateScriptSupervisor:
    kwargs.setdefault("overall_timeout_s", 10.0)
    kwargs.setdefault("stall_timeout_s", 5.0)
    kwargs.setdefault("poll_interval_s", 0.05)
    return UpdateScriptSupervisor(path, use_sudo=False, **kwargs)


@pytest.mark.asyncio
async def test_successful_script_emits_progress_then_exit(tmp_path: Path) -> None:
    path = _script(
        tmp_path,
        'echo "Downloading updates..."\necho "Installing packages..."\necho "Update complete"\n',
    )
    events: list = []
    await _supervisor(path).run(events.append)
    assert events[-1] == ExitEvent(0)
    outputs = [e for e in events if isinstance(e, OutputEvent)]
    assert outputs
    assert max(e.progress or 0 for e in outputs) == 100
    assert sum(isinstance(e, ExitEvent) for e in events) == 1


@pytest.mark.asyncio
async def test_failing_script_reaches_error_with_stderr(tmp_path: Path) -> None:
    path = _script(
        tmp_path,
        'echo "Downloading updates..."\necho "Error: insufficient disk space" >&2\nexit 1\n',
    )
    tracker = UpdateStatusTracker()
    assert tracker.try_begin()
    events: list = []

    def _emit(event) -> None:
        events.append(event)
        tracker.apply(event)

    await _supervisor(path).run(_emit)
    assert any(isinstance(e, ErrorOutputEvent) and "disk space" in e.text for e in events)
    assert events[-1] == ExitEvent(1)
    state = tracker.state
    assert state.status is UpdateStatus.error
    assert "disk space" in (state.error or "")
    assert state.troubleshooting is not None
    assert state.troubleshooting["canRetry"] is True


@pytest.mark.asyncio
async def test_silent_script_hits_stall_timeout(tmp_path: Path) -> None:
    path = _script(tmp_path, 'echo "Downloading updates..."\nsleep 30\n')
    events: list = []
    await _supervisor(path, stall_timeout_s=0.3).run(events.append)
    terminal = events[-1]
    assert isinstance(terminal, TimeoutEvent)
    assert terminal.kind == "stall"
    assert "stalled" in terminal.message
    assert not any(isinstance(e, ExitEvent) for e in events)


@pytest.mark.asyncio
async def test_chatty_script_hits_overall_timeout(tmp_path: Path) -> None:
    path = _script(tmp_path, "while true; do echo tick; sleep 0.05; done\n")
    events: list = []
    await _supervisor(path, overall_timeout_s=0.4, stall_timeout_s=5.0).run(events.append)
    terminal = events[-1]
    assert isinstance(terminal, TimeoutEvent)
    assert terminal.kind == "overall"
    assert "timed out" in terminal.message


@pytest.mark.asyncio
async def test_launch_failure_emits_stream_error(tmp_path: Path) -> None:
    path = _script(tmp_path, "exit 0\n")
    events: list = []
    spawn = AsyncMock(side_effect=OSError("exec format error"))
    with patch("spectrabox.update.runner.asyncio.create_subprocess_exec", spawn):
        await _supervisor(path).run(events.append)
    assert len(events) == 1
    assert isinstance(events[0], StreamErrorEvent)
    assert spawn.await_args.kwargs["start_new_session"] is True


@pytest.mark.asyncio
async def test_sandbox_simulates_without_launching(tmp_path: Path) -> None:
    supervisor = UpdateScriptSupervisor(
        tmp_path / "absent.sh",
        use_sudo=False,
        sandboxed=True,
        sandbox_delay_s=0.05,
    )
    tracker = UpdateStatusTracker()
    tracker.try_begin()
    spawn = AsyncMock()
    with patch("spectrabox.update.runner.asyncio.create_subprocess_exec", spawn):
        await supervisor.run(tracker.apply)
    spawn.assert_not_awaited()
    assert tracker.status is UpdateStatus.success
    assert tracker.state.progress == 100
    tracker.close()

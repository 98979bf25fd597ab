"""Tests for the reconnecting update monitor."""

from __future__ import annotations

import json
from typing import Any

import pytest

from spectrabox.update_client import (
    BackoffPolicy,
    ConnectionState,
    ReconnectionMachine,
    UpdateMonitor,
    websocket_url,
)


def test_backoff_grows_and_caps() -> None:
    policy = BackoffPolicy(initial_delay_s=1.0, factor=2.0, max_delay_s=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_machine_gives_up_after_bound() -> None:
    machine = ReconnectionMachine(BackoffPolicy(max_attempts=3))
    delays = [machine.next_attempt() for _ in range(3)]
    assert all(d is not None for d in delays)
    assert machine.state is ConnectionState.reconnecting
    assert machine.attempt == 3
    assert machine.next_attempt() is None
    assert machine.state is ConnectionState.failed
    assert machine.next_attempt() is None


def test_machine_resets_on_connect() -> None:
    machine = ReconnectionMachine(BackoffPolicy(max_attempts=2))
    machine.next_attempt()
    machine.next_attempt()
    machine.on_connected()
    assert machine.state is ConnectionState.connected
    assert machine.attempt == 0
    assert machine.next_attempt() is not None


def test_websocket_url() -> None:
    assert websocket_url("http://box.local:3000") == "ws://box.local:3000/ws"
    assert websocket_url("https://box.example") == "wss://box.example/ws"


# ---------------------------------------------------------------------------
# Monitor with scripted transports
# ---------------------------------------------------------------------------


class _Session:
    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self._messages = [json.dumps(m) for m in messages]

    async def __aenter__(self) -> _Session:
        return self

    async def __aexit__(self, *exc: object) -> bool:
        return False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for raw in self._messages:
            yield raw


class _FakeConnect:
    """Each call consumes one scripted session: a message list or an exception."""

    def __init__(self, sessions: list[Any]) -> None:
        self.sessions = list(sessions)
        self.urls: list[str] = []

    def __call__(self, url: str) -> _Session:
        self.urls.append(url)
        if not self.sessions:
            raise ConnectionRefusedError("server down")
        session = self.sessions.pop(0)
        if isinstance(session, Exception):
            raise session
        return _Session(session)


class _Recorder:
    def __init__(self, health: list[Any] | None = None, status: Any = None) -> None:
        self.reloads = 0
        self.manual = 0
        self.statuses: list[dict[str, Any]] = []
        self.sleeps: list[float] = []
        self.fetched: list[str] = []
        self._health = list(health or [{"status": "OK"}])
        self._status = status if status is not None else {"status": "idle"}

    def reload(self) -> None:
        self.reloads += 1

    def manual_refresh(self) -> None:
        self.manual += 1

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    async def fetch(self, url: str) -> Any:
        self.fetched.append(url)
        if url.endswith("/api/health"):
            item = self._health.pop(0) if len(self._health) > 1 else self._health[0]
            if isinstance(item, Exception):
                raise item
            return item
        if isinstance(self._status, Exception):
            raise self._status
        return self._status


def _monitor(connect: _FakeConnect, rec: _Recorder, **kwargs: Any) -> UpdateMonitor:
    kwargs.setdefault("policy", BackoffPolicy(initial_delay_s=1.0, max_attempts=3))
    return UpdateMonitor(
        "http://box.local:3000",
        on_reload=rec.reload,
        on_manual_refresh=rec.manual_refresh,
        on_status=rec.statuses.append,
        countdown_s=5.0,
        health_poll_interval_s=2.0,
        health_max_polls=3,
        fetch=rec.fetch,
        connect=connect,
        sleep=rec.sleep,
        **kwargs,
    )


def _status(status: str, progress: int) -> dict[str, Any]:
    return {"type": "updateStatus", "status": status, "message": status,
            "progress": progress, "timestamp": progress}


@pytest.mark.asyncio
async def test_success_over_live_channel_reloads() -> None:
    connect = _FakeConnect([
        [
            {"type": "connected", "message": "hi", "status": _status("idle", 0)},
            _status("updating", 25),
            _status("success", 100),
        ]
    ])
    rec = _Recorder()
    assert await _monitor(connect, rec).run() is True
    assert rec.reloads == 1
    assert rec.manual == 0
    assert [s["status"] for s in rec.statuses] == ["idle", "updating", "success"]
    assert rec.sleeps == [5.0]
    assert connect.urls == ["ws://box.local:3000/ws"]


@pytest.mark.asyncio
async def test_restart_then_reconnect_reconciles_via_status() -> None:
    connect = _FakeConnect([
        [
            _status("updating", 50),
            {"type": "serverShutdown", "message": "restarting", "expectedDowntime": 60000},
        ],
        OSError("connection refused"),
        [],
    ])
    rec = _Recorder(status={"success": True, "status": "idle", "progress": 0})
    monitor = _monitor(connect, rec)
    assert await monitor.run() is True
    assert monitor.machine.interruption_expected is True
    assert rec.reloads == 1
    assert "http://box.local:3000/api/update/status" in rec.fetched
    assert rec.sleeps[:2] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_health_polled_until_ok() -> None:
    connect = _FakeConnect([[_status("success", 100)]])
    rec = _Recorder(health=[OSError("down"), {"status": "starting"}, {"status": "OK"}])
    assert await _monitor(connect, rec).run() is True
    assert rec.reloads == 1
    assert rec.sleeps == [5.0, 2.0, 2.0]


@pytest.mark.asyncio
async def test_gives_up_and_requests_manual_refresh() -> None:
    connect = _FakeConnect([OSError("refused")] * 10)
    rec = _Recorder()
    monitor = _monitor(connect, rec)
    assert await monitor.run() is False
    assert rec.manual == 1
    assert rec.reloads == 0
    assert monitor.machine.state is ConnectionState.failed
    assert len(connect.urls) == 4
    assert rec.sleeps == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_unhealthy_server_requests_manual_refresh() -> None:
    connect = _FakeConnect([[_status("success", 100)]])
    rec = _Recorder(health=[{"status": "starting"}])
    assert await _monitor(connect, rec).run() is False
    assert rec.manual == 1
    assert rec.reloads == 0


@pytest.mark.asyncio
async def test_malformed_messages_are_ignored() -> None:
    class _RawSession(_Session):
        def __init__(self) -> None:
            self._messages = ["not json", "[1, 2]", json.dumps(_status("success", 100))]

    def _connect(url: str) -> _Session:
        return _RawSession()

    rec = _Recorder()
    monitor = UpdateMonitor(
        "http://box.local:3000",
        on_reload=rec.reload,
        on_manual_refresh=rec.manual_refresh,
        fetch=rec.fetch,
        connect=_connect,
        sleep=rec.sleep,
    )
    assert await monitor.run() is True
    assert rec.reloads == 1


@pytest.mark.asyncio
async def test_idle_greeting_after_restart_counts_as_done_when_poll_fails() -> None:
    connect = _FakeConnect([
        [{"type": "serverShutdown", "message": "restarting", "expectedDowntime": 60000}],
        [{"type": "connected", "message": "hi", "status": _status("idle", 0)}],
    ])
    rec = _Recorder(status=OSError("status endpoint not up yet"))
    assert await _monitor(connect, rec).run() is True
    assert rec.reloads == 1
    assert rec.statuses[-1]["status"] == "idle"


@pytest.mark.asyncio
async def test_idle_greeting_without_restart_keeps_waiting() -> None:
    connect = _FakeConnect([
        [{"type": "connected", "message": "hi", "status": _status("idle", 0)}],
    ])
    rec = _Recorder()
    monitor = _monitor(connect, rec)
    assert await monitor.run() is False
    assert monitor.machine.interruption_expected is False
    assert rec.reloads == 0
    assert rec.manual == 1

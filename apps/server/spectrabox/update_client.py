"""Client-side counterpart of the update channel.

:class:`UpdateMonitor` follows a running update over ``/ws``, survives the
intentional restart announced by ``serverShutdown`` and fires a reload callback
once the new server answers ``/api/health``.  Reconnection is driven by the
explicit :class:`ReconnectionMachine`, so attempt counts and give-up behaviour
can be tested without a network.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse, urlunparse
from urllib.request import Request, urlopen

import websockets

LOGGER = logging.getLogger(__name__)

MAX_RESPONSE_BYTES = 1024 * 1024
HEALTH_PATH = "/api/health"
STATUS_PATH = "/api/update/status"
WS_PATH = "/ws"


class ConnectionState(enum.StrEnum):
    connected = "connected"
    reconnecting = "reconnecting"
    failed = "failed"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    initial_delay_s: float = 2.0
    factor: float = 2.0
    max_delay_s: float = 30.0
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_s, self.initial_delay_s * self.factor ** (attempt - 1))


class ReconnectionMachine:
    """``connected`` -> ``reconnecting(attempt)`` -> ``failed``."""

    def __init__(self, policy: BackoffPolicy | None = None) -> None:
        self.policy = policy or BackoffPolicy()
        self.state = ConnectionState.connected
        self.attempt = 0
        self.interruption_expected = False

    def expect_interruption(self) -> None:
        self.interruption_expected = True

    def on_connected(self) -> None:
        self.state = ConnectionState.connected
        self.attempt = 0

    def next_attempt(self) -> float | None:
        """Record a lost channel or failed attempt.

        Returns the delay before the next attempt, or ``None`` once the attempt
        bound is exhausted (state ``failed``).
        """
        if self.state is ConnectionState.failed:
            return None
        if self.attempt >= self.policy.max_attempts:
            self.state = ConnectionState.failed
            return None
        self.attempt += 1
        self.state = ConnectionState.reconnecting
        return self.policy.delay_for(self.attempt)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _http_get_json(url: str, timeout_s: float = 5.0) -> Any:
    req = Request(url, headers={"Accept": "application/json"})
    with urlopen(req, timeout=timeout_s) as resp:  # noqa: S310
        return json.loads(resp.read(MAX_RESPONSE_BYTES).decode("utf-8"))


async def fetch_json(url: str) -> Any:
    return await asyncio.to_thread(_http_get_json, url)


def websocket_url(base_url: str) -> str:
    parsed = urlparse(base_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    return urlunparse((scheme, parsed.netloc, WS_PATH, "", "", ""))


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class UpdateMonitor:
    def __init__(
        self,
        base_url: str,
        *,
        on_reload: Callable[[], None],
        on_manual_refresh: Callable[[], None],
        on_status: Callable[[dict[str, Any]], None] | None = None,
        policy: BackoffPolicy | None = None,
        countdown_s: float = 5.0,
        health_poll_interval_s: float = 2.0,
        health_max_polls: int = 60,
        fetch: Callable[[str], Awaitable[Any]] = fetch_json,
        connect: Callable[[str], Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.ws_url = websocket_url(self.base_url)
        self.machine = ReconnectionMachine(policy)
        self._on_reload = on_reload
        self._on_manual_refresh = on_manual_refresh
        self._on_status = on_status
        self._countdown_s = countdown_s
        self._health_poll_interval_s = health_poll_interval_s
        self._health_max_polls = health_max_polls
        self._fetch = fetch
        self._connect = connect
        self._sleep = sleep

    async def run(self) -> bool:
        """Monitor until reload (True) or give-up (False)."""
        reconnecting = False
        while True:
            try:
                async with self._connect(self.ws_url) as ws:
                    self.machine.on_connected()
                    if reconnecting:
                        LOGGER.info("Reconnected to %s", self.ws_url)
                        if await self._reconcile():
                            return await self._await_restart()
                    async for raw in ws:
                        if self._handle_message(raw):
                            return await self._await_restart()
                LOGGER.info("Update channel closed")
            except Exception as exc:  # noqa: BLE001
                LOGGER.info("Update channel error: %s: %s", type(exc).__name__, exc)

            reconnecting = True
            delay = self.machine.next_attempt()
            if delay is None:
                LOGGER.warning(
                    "Giving up after %d reconnection attempts; manual refresh required",
                    self.machine.policy.max_attempts,
                )
                self._on_manual_refresh()
                return False
            if self.machine.interruption_expected:
                LOGGER.info("Server restarting; reconnect attempt %d in %.1fs",
                            self.machine.attempt, delay)
            else:
                LOGGER.warning("Connection lost; reconnect attempt %d in %.1fs",
                               self.machine.attempt, delay)
            await self._sleep(delay)

    def _handle_message(self, raw: str | bytes) -> bool:
        """Process one channel message; True when the update has succeeded."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.debug("Ignoring malformed update message")
            return False
        if not isinstance(message, dict):
            return False
        kind = message.get("type")
        if kind == "serverShutdown":
            LOGGER.info("Server announced restart (expected downtime %sms)",
                        message.get("expectedDowntime"))
            self.machine.expect_interruption()
            return False
        status = message.get("status") if kind == "connected" else message
        if kind in ("connected", "updateStatus") and isinstance(status, dict):
            self._report(status)
            return self._finished(status)
        return False

    async def _reconcile(self) -> bool:
        """Re-fetch status after a reconnect.  True when the update has finished."""
        try:
            status = await self._fetch(self.base_url + STATUS_PATH)
        except Exception as exc:  # noqa: BLE001
            LOGGER.info("Status poll after reconnect failed: %s", exc)
            return False
        if not isinstance(status, dict):
            return False
        self._report(status)
        return self._finished(status)

    def _finished(self, status: dict[str, Any]) -> bool:
        if status.get("status") == "success":
            return True
        # A restarted server starts idle; after an announced restart that means done.
        return self.machine.interruption_expected and status.get("status") == "idle"

    async def _await_restart(self) -> bool:
        LOGGER.info("Update succeeded; reloading in %.0fs once the server is healthy",
                    self._countdown_s)
        await self._sleep(self._countdown_s)
        for _ in range(self._health_max_polls):
            try:
                health = await self._fetch(self.base_url + HEALTH_PATH)
            except Exception as exc:  # noqa: BLE001
                LOGGER.debug("Health poll failed: %s", exc)
            else:
                if isinstance(health, dict) and health.get("status") == "OK":
                    self._on_reload()
                    return True
            await self._sleep(self._health_poll_interval_s)
        LOGGER.warning("Server did not become healthy; manual refresh required")
        self._on_manual_refresh()
        return False

    def _report(self, status: dict[str, Any]) -> None:
        if self._on_status is not None:
            self._on_status(status)


def main() -> None:
    parser = argparse.ArgumentParser(description="Follow a SpectraBox update until reload")
    parser.add_argument("--url", default="http://127.0.0.1:3000", help="Server base URL")
    parser.add_argument("--max-attempts", type=int, default=10)
    parser.add_argument("--countdown", type=float, default=5.0)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    def _print_status(status: dict[str, Any]) -> None:
        print(f"[{status.get('status')}] {status.get('progress', 0)}% {status.get('message', '')}")

    monitor = UpdateMonitor(
        args.url,
        on_reload=lambda: print("Server is back; reload the UI."),
        on_manual_refresh=lambda: print("Could not reconnect; refresh the page manually."),
        on_status=_print_status,
        policy=BackoffPolicy(max_attempts=args.max_attempts),
        countdown_s=args.countdown,
    )
    reloaded = asyncio.run(monitor.run())
    sys.exit(0 if reloaded else 1)


if __name__ == "__main__":
    main()

"""Fan-out of update notifications to live WebSocket subscribers.

:meth:`NotificationHub.publish` is synchronous and never awaits: it serialises
the message once and hands the text to each subscriber's ``send``.  A
:class:`WebSocketSubscriber` only enqueues; its own writer task performs the
network write, so a slow browser delays nobody but itself.  A subscriber whose
``send`` fails (queue full, socket dead) is pruned on the spot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from fastapi import WebSocket

from .json_utils import dumps_compact, sanitize_for_json

LOGGER = logging.getLogger(__name__)

_SEND_TIMEOUT_S: float = 0.5
"""Per-message send timeout; a subscriber exceeding this is dropped."""

_QUEUE_SIZE: int = 64
"""Pending messages per subscriber before it is considered too slow."""

_SEND_ERROR_LOG_INTERVAL_S: float = 10.0
"""Minimum interval between logged delivery-failure warnings."""

TRY_AGAIN_LATER = 1013
"""WebSocket close code sent to a dropped subscriber so the browser reconnects."""


class Subscriber(Protocol):
    def send(self, message: str) -> bool: ...

    def is_alive(self) -> bool: ...

    def close(self) -> None: ...


class WebSocketSubscriber:
    """Adapt a FastAPI :class:`WebSocket` to the :class:`Subscriber` interface."""

    def __init__(
        self,
        websocket: WebSocket,
        *,
        queue_size: int = _QUEUE_SIZE,
        send_timeout_s: float = _SEND_TIMEOUT_S,
    ) -> None:
        self._websocket = websocket
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._send_timeout_s = send_timeout_s
        self._alive = True
        self._writer: asyncio.Task[None] | None = None
        self._closer: asyncio.Task[None] | None = None
        self.connected_at = time.time()

    def start(self) -> None:
        self._writer = asyncio.get_running_loop().create_task(
            self._write_loop(), name="ws-subscriber-writer"
        )

    def send(self, message: str) -> bool:
        if not self._alive:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            LOGGER.debug("Subscriber queue full; dropping subscriber")
            self._alive = False
            return False
        return True

    def is_alive(self) -> bool:
        return self._alive

    def close(self) -> None:
        """Stop writing and close the socket so the client falls back to reconnecting."""
        self._alive = False
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        if self._closer is None:
            self._closer = asyncio.get_running_loop().create_task(
                self._close_socket(), name="ws-subscriber-close"
            )

    async def wait_closed(self) -> None:
        tasks = [t for t in (self._writer, self._closer) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _close_socket(self) -> None:
        try:
            await self._websocket.close(code=TRY_AGAIN_LATER)
        except Exception:
            LOGGER.debug("WebSocket already closed", exc_info=True)

    async def _write_loop(self) -> None:
        try:
            while True:
                text = await self._queue.get()
                await asyncio.wait_for(
                    self._websocket.send_text(text),
                    timeout=self._send_timeout_s,
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.debug("WebSocket send failed; subscriber marked dead", exc_info=True)
            self._alive = False


class NotificationHub:
    def __init__(self) -> None:
        self._subscribers: dict[int, Subscriber] = {}
        self._last_send_error_log_ts = 0.0
        self._send_error_log_interval_s = _SEND_ERROR_LOG_INTERVAL_S

    def __len__(self) -> int:
        return len(self._subscribers)

    def register(self, subscriber: Subscriber) -> None:
        self._subscribers[id(subscriber)] = subscriber
        LOGGER.debug("Subscriber registered (total=%d)", len(self._subscribers))

    def unregister(self, subscriber: Subscriber) -> None:
        if self._subscribers.pop(id(subscriber), None) is not None:
            LOGGER.debug("Subscriber unregistered (total=%d)", len(self._subscribers))

    def publish(self, message: dict[str, Any]) -> int:
        """Deliver *message* to every live subscriber; returns the delivery count."""
        cleaned, had_non_finite = sanitize_for_json(message)
        if had_non_finite:
            LOGGER.warning(
                "Notification %r contained NaN/Inf values; replaced with null.",
                message.get("type"),
            )
        try:
            text = dumps_compact(cleaned)
        except (TypeError, ValueError):
            LOGGER.error("Failed to serialise notification %r", message.get("type"), exc_info=True)
            return 0

        delivered = 0
        dead: list[Subscriber] = []
        for subscriber in list(self._subscribers.values()):
            try:
                ok = subscriber.is_alive() and subscriber.send(text)
            except Exception:
                self._log_send_error()
                ok = False
            if ok:
                delivered += 1
            else:
                dead.append(subscriber)
        for subscriber in dead:
            self._prune(subscriber)
        return delivered

    def close_all(self) -> None:
        for subscriber in list(self._subscribers.values()):
            self._prune(subscriber)

    def _prune(self, subscriber: Subscriber) -> None:
        self.unregister(subscriber)
        try:
            subscriber.close()
        except Exception:
            LOGGER.debug("Error closing pruned subscriber", exc_info=True)

    def _log_send_error(self) -> None:
        now = time.monotonic()
        if now - self._last_send_error_log_ts >= self._send_error_log_interval_s:
            self._last_send_error_log_ts = now
            LOGGER.warning(
                "Notification delivery failed; subscriber will be removed.",
                exc_info=True,
            )

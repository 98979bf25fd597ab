"""WebSocket endpoint for live update notifications."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..json_utils import dumps_compact
from ..ws_hub import WebSocketSubscriber
from ..ws_models import connected_message

if TYPE_CHECKING:
    from ..app import RuntimeState

LOGGER = logging.getLogger(__name__)


def create_websocket_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def ws_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        ws_cfg = state.config.websocket
        subscriber = WebSocketSubscriber(
            ws,
            queue_size=ws_cfg.queue_size,
            send_timeout_s=ws_cfg.send_timeout_s,
        )
        subscriber.start()
        # Greeting and registration happen without an await in between, so the
        # greeting always precedes the first transition this client sees.
        subscriber.send(dumps_compact(connected_message(state.update_manager.tracker.snapshot())))
        state.hub.register(subscriber)
        try:
            while subscriber.is_alive():
                # Inbound messages carry no meaning; reading detects disconnects.
                await ws.receive_text()
        except WebSocketDisconnect:
            LOGGER.debug("WebSocket client disconnected")
        except Exception:
            LOGGER.warning("WebSocket handler error", exc_info=True)
        finally:
            state.hub.unregister(subscriber)
            subscriber.close()
            await subscriber.wait_closed()

    return router

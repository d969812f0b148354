"""WebSocket handler: one coordinator session per connected peer."""

import functools
import logging

from fastapi import WebSocket, WebSocketDisconnect

from netdrops.config import CoordinatorSettings
from netdrops.protocol.connection import Connection
from netdrops.session.locality import resolve_locality
from netdrops.session.registry import SessionRegistry
from netdrops.transfer.router import Router

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Accepts peer WebSockets and feeds their traffic to the router."""

    def __init__(self, registry: SessionRegistry, router: Router,
                 settings: CoordinatorSettings, locality_resolver=None) -> None:
        self._registry = registry
        self._router = router
        self._resolve_locality = locality_resolver or functools.partial(
            resolve_locality,
            prefix_v4=settings.locality_prefix_v4,
            prefix_v6=settings.locality_prefix_v6,
        )

    async def serve(self, websocket: WebSocket) -> None:
        """Run one session until the peer disconnects."""
        await websocket.accept()
        connection = Connection(websocket.send_text, websocket.send_bytes)
        connection.start()

        host = websocket.client.host if websocket.client else None
        peer = await self._registry.register(connection, self._resolve_locality(host))
        logger.info(f"WebSocket client connected. Total: {len(self._registry.peers())}")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("text") is not None:
                    self._router.handle_text(peer.session_id, message["text"])
                elif message.get("bytes") is not None:
                    self._router.handle_binary(peer.session_id, message["bytes"])
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Session {peer.session_id} failed: {e}", exc_info=True)
        finally:
            await connection.abort()
            await self._registry.unregister(peer.session_id)
            logger.info(f"WebSocket client disconnected. Total: {len(self._registry.peers())}")

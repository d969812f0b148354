"""
Netdrops coordinator: FastAPI application entry point.

Serves the ``/ws`` endpoint every peer keeps open, plus a small read-only
REST API describing the current session state.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from netdrops.api.routes import router
from netdrops.api.websocket import ConnectionManager
from netdrops.config import API_HOST, API_PORT, CORS_ORIGINS, CoordinatorSettings
from netdrops.session.presence import PresenceBroadcaster
from netdrops.session.registry import SessionRegistry
from netdrops.transfer.router import Router

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(settings: CoordinatorSettings | None = None,
               locality_resolver=None) -> FastAPI:
    """Build a coordinator with its own, empty session state."""
    settings = settings or CoordinatorSettings()

    # --- Services ---
    registry = SessionRegistry()
    presence = PresenceBroadcaster(registry)
    relay = Router(registry, settings)
    ws_manager = ConnectionManager(registry, relay, settings, locality_resolver)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Netdrops coordinator ready: "
            f"max {settings.max_concurrent_files} files per batch, "
            f"requests expire after {settings.request_timeout}s"
        )
        try:
            yield
        finally:
            logger.info("Shutting down Netdrops coordinator...")
            relay.clear()

    app = FastAPI(
        title="Netdrops",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ws_manager.serve(websocket)

    app.state.registry = registry
    app.state.presence = presence
    app.state.relay = relay
    app.state.settings = settings
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()

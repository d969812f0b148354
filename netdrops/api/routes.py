"""REST API routes for the coordinator."""

import logging

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# Services are attached to app.state by create_app()

@router.get("/peers")
async def list_peers(request: Request):
    """Return the current peer list, as broadcast to clients."""
    registry = request.app.state.registry
    return {"users": [p.model_dump(by_alias=True) for p in registry.snapshot()]}


@router.get("/requests")
async def list_requests(request: Request):
    """Return outstanding transfer requests and open send authorizations."""
    relay = request.app.state.relay
    return {
        "requests": [r.model_dump(mode="json") for r in relay.handshake.pending()],
        "grants": [
            {"origin": g.origin, "target": g.target, "pending": sorted(g.pending)}
            for g in relay.grants()
        ],
    }


@router.get("/settings")
async def get_settings(request: Request):
    return request.app.state.settings.model_dump()

"""API v1 router composition."""

from fastapi import APIRouter

from marketrun.api.v1.endpoints import auth, events, handovers, orders

api_router: APIRouter = APIRouter()
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(handovers.router, prefix="/orders", tags=["handovers"])
api_router.include_router(events.router, tags=["events"])

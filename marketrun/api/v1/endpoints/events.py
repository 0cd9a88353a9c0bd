"""Real-time order event stream."""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from marketrun.core.security import resolve_token_user
from marketrun.db import session as db_session
from marketrun.services.realtime import connection_manager

router: APIRouter = APIRouter()
logger = logging.getLogger(__name__)


def _authenticate(token: str) -> int | None:
    with db_session.SessionLocal() as db:
        try:
            return resolve_token_user(db, token).id
        except HTTPException:
            return None


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        payload = await queue.get()
        await websocket.send_json(payload)


@router.websocket("/ws")
async def order_events(websocket: WebSocket, token: str = Query(...)) -> None:
    """Push every event addressed to the authenticated user."""
    user_id = await run_in_threadpool(_authenticate, token)
    if user_id is None:
        logger.warning("[AUTH] Rejected websocket with invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    queue = connection_manager.connect(user_id)
    sender: asyncio.Task[None] | None = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(_forward(websocket, queue))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if sender is not None:
            sender.cancel()
        connection_manager.disconnect(user_id, queue)

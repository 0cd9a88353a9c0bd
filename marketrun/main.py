"""FastAPI entrypoint for the market order lifecycle service."""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketrun.api.v1.api import api_router
from marketrun.core.config import settings
from marketrun.db import session as db_session
from marketrun.db.base import Base
from marketrun.services.event_fanout import fanout
from marketrun.services.realtime import connection_manager

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    if settings.jwt_secret_key.startswith("dev-only"):
        logger.warning("[BOOTSTRAP] JWT_SECRET_KEY not set; using development fallback secret.")
    Base.metadata.create_all(bind=db_session.engine)
    fanout.subscribe(connection_manager)
    logger.info("[BOOTSTRAP] %s started (env=%s)", settings.app_name, settings.app_env)
    yield
    fanout.unsubscribe(connection_manager)


app = FastAPI(title="Market Order Lifecycle", lifespan=lifespan)
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}

"""
FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cardgate import __version__
from cardgate.config import get_settings
from cardgate.dependencies import close_kv_store, get_kv_store
from cardgate.kv import Deadline
from cardgate.routes import root_router, router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    store = get_kv_store()
    # Fail startup when the backend is unreachable.
    store.ping(deadline=Deadline.after(settings.request_timeout_seconds))
    logger.info("KV store reachable (backend: %s)", store.backend_name)
    try:
        yield
    finally:
        try:
            close_kv_store()
        except Exception:
            logger.exception("Failed to close KV store")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="cardgate", version=__version__, lifespan=lifespan)
    app.include_router(root_router)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()

"""FastAPI server exposing the usage engine to a presentation layer."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sprt import __version__
from sprt.api.routes import router
from sprt.config import settings
from sprt.usage.service import build_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the usage service on startup and stop it on shutdown."""
    if getattr(app.state, "service", None) is None:
        app.state.service = build_service(settings)
    service = app.state.service

    try:
        await service.start()
    except Exception:
        logger.exception("Usage service failed to start")

    yield

    await service.stop()


def create_app() -> FastAPI:
    app = FastAPI(
        title="sprt - Claude Code usage monitor",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")
    return app

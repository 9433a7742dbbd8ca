"""FastAPI application factory for the reply surface."""

from __future__ import annotations

from fastapi import FastAPI

from relaybot import __version__
from relaybot.providers.backend import BackendClient
from relaybot.services.reply import ReplyService
from relaybot.settings import RelaySettings, get_settings


def create_app(
    reply_service: ReplyService,
    backend: BackendClient | None = None,
    settings: RelaySettings | None = None,
) -> FastAPI:
    s = settings or get_settings()
    app = FastAPI(title=s.app_name, version=__version__)
    app.state.reply_service = reply_service
    app.state.backend = backend

    # ── mount routers ──
    from relaybot.api.routes import health, reply

    app.include_router(health.router)
    app.include_router(reply.router, prefix="/api", tags=["reply"])

    return app

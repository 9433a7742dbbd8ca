"""Liveness endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from relaybot import __version__

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    reply_service = request.app.state.reply_service
    return {
        "status": "ok",
        "version": __version__,
        "client": reply_service.has_client,
        "mappings": len(reply_service.mappings),
    }

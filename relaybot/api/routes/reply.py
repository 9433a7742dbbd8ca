"""Reply API: let the backend push messages into XMTP conversations."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from relaybot.services.reply import ReplyService

router = APIRouter()


def get_reply_service(request: Request) -> ReplyService:
    return request.app.state.reply_service


ReplyServiceDep = Annotated[ReplyService, Depends(get_reply_service)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReplyRequest(_CamelModel):
    thread_id: str | None = Field(default=None, alias="threadId")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    message: str | None = None
    processing_id: str | None = Field(default=None, alias="processingId")
    metadata: dict[str, Any] | None = None


class CleanupRequest(_CamelModel):
    max_age_hours: float | None = Field(default=None, alias="maxAgeHours")


class SendMessageRequest(_CamelModel):
    address: str | None = None
    inbox_id: str | None = Field(default=None, alias="inboxId")
    message: str | None = None


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


@router.post("/reply")
async def send_reply(body: ReplyRequest, service: ReplyServiceDep) -> Any:
    if not (body.thread_id or body.conversation_id) or not body.message:
        return _error(400, "message and either threadId or conversationId are required")

    if body.processing_id:
        logger.debug(f"Reply for processing id {body.processing_id}")
    result = await service.send_reply(
        body.message,
        thread_id=body.thread_id,
        conversation_id=body.conversation_id,
    )
    if not result.success:
        return _error(500, result.error or "Reply failed")
    return {"success": True, "conversationId": result.conversation_id}


@router.get("/reply/status")
async def reply_status(service: ReplyServiceDep) -> dict[str, Any]:
    stats = service.mappings.stats()
    return {
        "success": True,
        "status": "active",
        "stats": {
            "totalMappings": stats.total_mappings,
            "oldestMapping": stats.oldest.isoformat() if stats.oldest else None,
            "newestMapping": stats.newest.isoformat() if stats.newest else None,
            "agentBreakdown": stats.per_agent_counts,
        },
        "endpoints": {
            "reply": "POST /api/reply",
            "status": "GET /api/reply/status",
            "cleanup": "POST /api/reply/cleanup",
            "mapping": "GET /api/reply/mapping/:threadId",
        },
    }


@router.post("/reply/cleanup")
async def cleanup_mappings(service: ReplyServiceDep, body: CleanupRequest | None = None) -> dict[str, Any]:
    max_age_hours = (body.max_age_hours if body else None) or 24
    cleaned = service.mappings.evict_older_than(max_age_hours)
    return {
        "success": True,
        "cleanedCount": cleaned,
        "maxAgeHours": max_age_hours,
        "message": f"Cleaned up {cleaned} conversation mappings older than {max_age_hours} hours",
    }


@router.get("/reply/mapping/{thread_id}")
async def get_mapping(thread_id: str, service: ReplyServiceDep) -> Any:
    mapping = service.mappings.lookup(thread_id)
    if mapping is None:
        return _error(404, "Mapping not found", threadId=thread_id)
    return {
        "success": True,
        "mapping": {
            "threadId": mapping.thread_id,
            "conversationId": mapping.conversation_id,
            "walletAddress": mapping.wallet_address,
            "lastActivity": mapping.last_activity.isoformat(),
            "agentId": mapping.agent_id,
        },
    }


@router.post("/send-message")
async def send_message(body: SendMessageRequest, service: ReplyServiceDep) -> Any:
    if not service.has_client:
        return _error(503, "Agent not available")
    if not body.message:
        return _error(400, "message is required")
    if not body.address and not body.inbox_id:
        return _error(400, "Either address or inboxId is required")

    result = await service.send_message(body.message, address=body.address, inbox_id=body.inbox_id)
    if not result.success:
        return _error(500, result.error or "Failed to send message")
    return {
        "success": True,
        "conversationId": result.conversation_id,
        "message": "Message sent successfully",
    }

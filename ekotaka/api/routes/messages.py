"""Conversation routes. Clients poll; there is no push channel."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.api.deps import get_database, get_principal
from ekotaka.api.serializers import conversation_out, message_out, paginated
from ekotaka.auth import Principal
from ekotaka.config import settings
from ekotaka.messaging.service import (
    archive_conversation,
    list_conversations,
    open_conversation,
    send_message,
    start_conversation,
    unread_total,
)

router = APIRouter(prefix="/api/messages", tags=["messages"])


class ConversationCreate(BaseModel):
    participantId: str
    subject: Optional[str] = None
    relatedOrderId: Optional[str] = None
    relatedPickupId: Optional[str] = None
    message: Optional[str] = None


class MessageCreate(BaseModel):
    content: Optional[str] = None
    attachments: Optional[list] = None


class ArchiveUpdate(BaseModel):
    archived: bool = True


@router.get("/conversations")
async def get_conversations(
    includeArchived: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    conversations, total = await list_conversations(db, principal, includeArchived, page, limit)
    return {
        "success": True,
        "conversations": [conversation_out(c, principal.role) for c in conversations],
        "unreadTotal": await unread_total(db, principal),
        "pollInterval": settings.chat_poll_interval_seconds,
        "pagination": paginated(page, limit, total),
    }


@router.post("/conversations")
async def create_conversation(
    body: ConversationCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    """Start (or reuse) a conversation, optionally with a first message."""
    conversation, created = await start_conversation(
        db,
        principal,
        body.participantId,
        subject=body.subject,
        related_order_id=body.relatedOrderId,
        related_pickup_id=body.relatedPickupId,
    )
    if body.message and body.message.strip():
        await send_message(db, principal, conversation.id, body.message)
        opened = await open_conversation(db, principal, conversation.id, limit=1)
        conversation = opened["conversation"]
    return {
        "success": True,
        "created": created,
        "conversation": conversation_out(conversation, principal.role),
    }


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    """Messages in creation order; opening marks them read for the caller."""
    opened = await open_conversation(db, principal, conversation_id, page, limit)
    return {
        "success": True,
        "conversation": conversation_out(opened["conversation"], principal.role),
        "messages": [message_out(m) for m in opened["messages"]],
        "pagination": paginated(page, limit, opened["total"]),
    }


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def post_message(
    conversation_id: str,
    body: MessageCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    message = await send_message(db, principal, conversation_id, body.content, body.attachments)
    return {"success": True, "message": message_out(message)}


@router.put("/conversations/{conversation_id}/archive")
async def set_archived(
    conversation_id: str,
    body: ArchiveUpdate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    conversation = await archive_conversation(db, principal, conversation_id, body.archived)
    return {"success": True, "conversation": conversation_out(conversation, principal.role)}

"""Brand/collector conversations.

Unread counters are kept per role on the conversation and always equal the
number of messages lacking that role's read timestamp: sending bumps the
counterpart's counter with a single UPDATE, opening a conversation stamps
every message under a row lock and recounts what is still unread for the caller.
"""

import logging
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.auth import BrandPrincipal, Principal
from ekotaka.db.models import Conversation, Message, utcnow
from ekotaka.errors import NotFound, ValidationError
from ekotaka.lifecycle.history import commit_or_conflict, next_seq

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
PREVIEW_LENGTH = 100


def _is_brand(principal: Principal) -> bool:
    return isinstance(principal, BrandPrincipal)


def _unread_column(principal: Principal):
    return Conversation.unread_brand if _is_brand(principal) else Conversation.unread_collector


def _counterpart_unread_column(principal: Principal):
    return Conversation.unread_collector if _is_brand(principal) else Conversation.unread_brand


def _read_column(principal: Principal):
    return Message.read_by_brand if _is_brand(principal) else Message.read_by_collector


def _participant_condition(principal: Principal):
    if _is_brand(principal):
        return Conversation.brand_id == principal.user_id
    return Conversation.collector_id == principal.user_id


async def _load_conversation(db: AsyncSession, conversation_id: str) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_conversation_for(
    db: AsyncSession, conversation_id: str, principal: Principal
) -> Conversation:
    """Non-participants see the conversation as missing."""
    conversation = await _load_conversation(db, conversation_id)
    if conversation is None:
        raise NotFound("Conversation", conversation_id)
    owner = conversation.brand_id if _is_brand(principal) else conversation.collector_id
    if owner != principal.user_id:
        raise NotFound("Conversation", conversation_id)
    return conversation


async def list_conversations(
    db: AsyncSession,
    principal: Principal,
    include_archived: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Conversation], int]:
    """The caller's conversations, most recent activity first."""
    conditions = [_participant_condition(principal)]
    if not include_archived:
        archived = (
            Conversation.archived_brand if _is_brand(principal) else Conversation.archived_collector
        )
        conditions.append(archived.is_(False))

    total = await db.execute(select(func.count(Conversation.id)).where(*conditions))
    rows = await db.execute(
        select(Conversation)
        .where(*conditions)
        .order_by(
            func.coalesce(Conversation.last_message_at, Conversation.created_at).desc()
        )
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(rows.scalars().all()), int(total.scalar_one())


async def start_conversation(
    db: AsyncSession,
    principal: Principal,
    counterpart_id: str,
    subject: Optional[str] = None,
    related_order_id: Optional[str] = None,
    related_pickup_id: Optional[str] = None,
) -> tuple[Conversation, bool]:
    """
    Open (or reuse) the thread between the caller and a counterpart.

    Returns:
        (conversation, created)
    """
    if not counterpart_id or not str(counterpart_id).strip():
        raise ValidationError.single("participantId", "Participant is required")
    if counterpart_id == principal.user_id:
        raise ValidationError.single("participantId", "Cannot start a conversation with yourself")

    if _is_brand(principal):
        brand_id, collector_id = principal.user_id, counterpart_id
    else:
        brand_id, collector_id = counterpart_id, principal.user_id

    order_condition = (
        Conversation.related_order_id.is_(None)
        if related_order_id is None
        else Conversation.related_order_id == related_order_id
    )
    existing = await db.execute(
        select(Conversation).where(
            Conversation.brand_id == brand_id,
            Conversation.collector_id == collector_id,
            order_condition,
        )
    )
    conversation = existing.scalars().first()
    if conversation is not None:
        return conversation, False

    now = utcnow()
    conversation = Conversation(
        brand_id=brand_id,
        collector_id=collector_id,
        subject=(subject or "").strip() or None,
        related_order_id=related_order_id,
        related_pickup_id=related_pickup_id,
        unread_brand=0,
        unread_collector=0,
        archived_brand=False,
        archived_collector=False,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    await commit_or_conflict(db, f"conversation {brand_id}/{collector_id}")
    logger.info(f"Conversation {conversation.id} started by {principal.role} {principal.user_id}")
    return conversation, True


async def open_conversation(
    db: AsyncSession,
    principal: Principal,
    conversation_id: str,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    """Conversation plus one page of messages; everything becomes read for the caller."""
    await load_conversation_for(db, conversation_id, principal)

    read_column = _read_column(principal)
    # row lock orders this against send_message bumping the same counter
    await db.execute(
        select(Conversation.id).where(Conversation.id == conversation_id).with_for_update()
    )
    await db.execute(
        update(Message)
        .where(Message.conversation_id == conversation_id, read_column.is_(None))
        .values({read_column.key: utcnow()})
        .execution_options(synchronize_session=False)
    )
    still_unread = (
        select(func.count(Message.id))
        .where(Message.conversation_id == conversation_id, read_column.is_(None))
        .scalar_subquery()
    )
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values({_unread_column(principal).key: still_unread})
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    conditions = [Message.conversation_id == conversation_id, Message.is_deleted.is_(False)]
    total = await db.execute(select(func.count(Message.id)).where(*conditions))
    rows = await db.execute(
        select(Message)
        .where(*conditions)
        .order_by(Message.seq.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return {
        "conversation": await _load_conversation(db, conversation_id),
        "messages": list(rows.scalars().all()),
        "total": int(total.scalar_one()),
    }


async def send_message(
    db: AsyncSession,
    principal: Principal,
    conversation_id: str,
    content: Any,
    attachments: Optional[list] = None,
) -> Message:
    text = str(content or "").strip()
    if not text:
        raise ValidationError.single("content", "Message content is required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError.single(
            "content", f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters"
        )

    await load_conversation_for(db, conversation_id, principal)

    now = utcnow()
    seq = await next_seq(db, Message.seq, Message.conversation_id, conversation_id)
    message = Message(
        conversation_id=conversation_id,
        seq=seq,
        sender_id=principal.user_id,
        sender_role=principal.role,
        content=text,
        attachments=attachments or [],
        is_deleted=False,
        created_at=now,
        **{_read_column(principal).key: now},
    )
    db.add(message)
    await db.flush()

    counterpart_unread = _counterpart_unread_column(principal)
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            {
                counterpart_unread.key: counterpart_unread + 1,
                "last_message": {
                    "messageId": message.id,
                    "content": text[:PREVIEW_LENGTH],
                    "senderId": principal.user_id,
                    "senderRole": principal.role,
                    "sentAt": now.isoformat(),
                },
                "last_message_at": now,
                "updated_at": now,
            }
        )
        .execution_options(synchronize_session=False)
    )
    await commit_or_conflict(db, f"conversation {conversation_id}")

    metrics.messages_sent_total.labels(sender_role=principal.role).inc()
    logger.info(f"Message {message.id} sent in {conversation_id} by {principal.role}")
    return message


async def archive_conversation(
    db: AsyncSession, principal: Principal, conversation_id: str, archived: bool = True
) -> Conversation:
    """Hide a conversation from the caller's list without touching the other side."""
    await load_conversation_for(db, conversation_id, principal)
    column = Conversation.archived_brand if _is_brand(principal) else Conversation.archived_collector
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values({column.key: archived})
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await _load_conversation(db, conversation_id)


async def unread_total(db: AsyncSession, principal: Principal) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(_unread_column(principal)), 0)).where(
            _participant_condition(principal)
        )
    )
    return int(result.scalar_one())

"""
Private message store — append, edit, soft-delete, react, and page through a
room's messages.

The store trusts its caller: room access is checked by
``app.services.access.authorize_room`` before any of these run.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, desc, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import ForbiddenError, NotFoundError, ValidationError
from app.models.message import MessageReaction, PrivateMessage
from app.utils.clock import utcnow
from app.utils.text import clean_text

logger = logging.getLogger(__name__)


async def _get_live_message(db: AsyncSession, message_id: int, room_id: Optional[str]) -> PrivateMessage:
    message = await db.get(PrivateMessage, message_id)
    if message is None or message.is_deleted:
        raise NotFoundError("Message not found.")
    if room_id is not None and message.room_id != room_id:
        raise NotFoundError("Message not found.")
    return message


async def _get_owned_message(
    db: AsyncSession, message_id: int, requester_id: int, room_id: Optional[str]
) -> PrivateMessage:
    message = await _get_live_message(db, message_id, room_id)
    if message.sender_id != requester_id:
        raise ForbiddenError("You can only change your own messages.")
    return message


async def post_message(
    db: AsyncSession,
    room_id: str,
    sender_id: int,
    content: str,
    now: Optional[datetime] = None,
) -> PrivateMessage:
    if not room_id or not room_id.strip():
        raise ValidationError("room_id", "Room id is required.")
    content = clean_text(content, "content", settings.MESSAGE_MAX_LENGTH)

    message = PrivateMessage(
        room_id=room_id,
        sender_id=sender_id,
        content=content,
        created_at=now or utcnow(),
    )
    db.add(message)
    await db.commit()
    await db.refresh(message)
    logger.debug(f"Message {message.id} stored in room {room_id}")
    return message


async def edit_message(
    db: AsyncSession,
    message_id: int,
    requester_id: int,
    new_content: str,
    room_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PrivateMessage:
    message = await _get_owned_message(db, message_id, requester_id, room_id)
    new_content = clean_text(new_content, "content", settings.MESSAGE_MAX_LENGTH)

    # Only the very first edit records the original wording.
    if not message.is_edited:
        message.original_content = message.content
    message.content = new_content
    message.is_edited = True
    message.edited_at = now or utcnow()
    await db.commit()
    await db.refresh(message)
    return message


async def delete_message(
    db: AsyncSession,
    message_id: int,
    requester_id: int,
    room_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PrivateMessage:
    message = await _get_owned_message(db, message_id, requester_id, room_id)
    message.is_deleted = True
    message.deleted_at = now or utcnow()
    await db.commit()
    await db.refresh(message)
    logger.info(f"Message {message_id} soft-deleted by user {requester_id}")
    return message


async def add_reaction(
    db: AsyncSession,
    message_id: int,
    user_id: int,
    emoji: str,
    room_id: Optional[str] = None,
) -> PrivateMessage:
    """Set ``user_id``'s reaction, replacing any earlier one on this message."""
    emoji = clean_text(emoji, "emoji", settings.REACTION_MAX_LENGTH)
    message = await _get_live_message(db, message_id, room_id)

    existing = next((r for r in message.reaction_rows if r.user_id == user_id), None)
    if existing is not None:
        existing.emoji = emoji
        existing.created_at = utcnow()
    else:
        message.reaction_rows.append(MessageReaction(user_id=user_id, emoji=emoji))
    try:
        await db.commit()
    except IntegrityError:
        # Another session inserted this user's reaction first; overwrite it.
        await db.rollback()
        result = await db.execute(
            select(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
            )
        )
        winner = result.scalar_one()
        winner.emoji = emoji
        winner.created_at = utcnow()
        await db.commit()
        logger.debug(f"Reaction race on message {message_id} by user {user_id} resolved by update")
        await db.refresh(message)
    return message


async def remove_reaction(
    db: AsyncSession,
    message_id: int,
    user_id: int,
    room_id: Optional[str] = None,
) -> PrivateMessage:
    message = await _get_live_message(db, message_id, room_id)
    existing = next((r for r in message.reaction_rows if r.user_id == user_id), None)
    if existing is not None:
        message.reaction_rows.remove(existing)
        await db.commit()
    return message


async def list_messages(
    db: AsyncSession,
    room_id: str,
    limit: Optional[int] = None,
    before: Optional[int] = None,
    include_deleted: bool = False,
) -> List[PrivateMessage]:
    """
    One page of a room's history in ascending creation order.

    The page holds the newest ``limit`` messages; with ``before`` (a message
    id) it holds the newest ``limit`` messages strictly older than it.
    """
    limit = min(limit or settings.MESSAGE_PAGE_LIMIT, settings.MESSAGE_PAGE_MAX)
    if limit < 1:
        raise ValidationError("limit", "Limit must be positive.")

    query = select(PrivateMessage).where(PrivateMessage.room_id == room_id)
    if not include_deleted:
        query = query.where(PrivateMessage.is_deleted == False)  # noqa: E712

    if before is not None:
        cursor = await db.get(PrivateMessage, before)
        if cursor is None or cursor.room_id != room_id:
            raise NotFoundError("Cursor message not found.")
        query = query.where(
            or_(
                PrivateMessage.created_at < cursor.created_at,
                and_(
                    PrivateMessage.created_at == cursor.created_at,
                    PrivateMessage.id < cursor.id,
                ),
            )
        )

    result = await db.execute(
        query.order_by(desc(PrivateMessage.created_at), desc(PrivateMessage.id)).limit(limit)
    )
    messages = list(result.scalars().all())
    messages.reverse()  # chronological order for display
    return messages


async def mark_read(
    db: AsyncSession,
    room_id: str,
    reader_id: int,
    now: Optional[datetime] = None,
) -> int:
    """Mark the other participant's unread messages in the room as read."""
    result = await db.execute(
        update(PrivateMessage)
        .where(
            PrivateMessage.room_id == room_id,
            PrivateMessage.sender_id != reader_id,
            PrivateMessage.is_read == False,  # noqa: E712
            PrivateMessage.is_deleted == False,  # noqa: E712
        )
        .values(is_read=True, read_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0

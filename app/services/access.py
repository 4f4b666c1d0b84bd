"""Room access guard — only the two participants of a live room get in."""

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ExpiredError, ForbiddenError, NotFoundError
from app.models.chat_request import ChatRequest, RequestStatus
from app.utils.clock import utcnow


@dataclass(frozen=True)
class RoomAccess:
    request: ChatRequest
    user_id: int
    participants: FrozenSet[int]
    other_participant: int

    @property
    def room_id(self) -> str:
        return self.request.room_id


async def authorize_room(
    db: AsyncSession,
    room_id: str,
    user_id: int,
    now: Optional[datetime] = None,
) -> RoomAccess:
    """
    Resolve the accepted request owning ``room_id`` and check ``user_id`` may use it.

    Raises NotFoundError when no live request owns the room, ForbiddenError
    for non-participants (checked before expiry so outsiders learn nothing
    about the room's age), ExpiredError once ``room_expiry`` has passed.
    """
    if not room_id:
        raise NotFoundError("Chat room not found.")

    result = await db.execute(
        select(ChatRequest).where(
            ChatRequest.room_id == room_id,
            ChatRequest.status == RequestStatus.ACCEPTED,
            ChatRequest.is_active == True,  # noqa: E712
        )
    )
    chat_request = result.scalar_one_or_none()
    if chat_request is None:
        raise NotFoundError("Chat room not found.")

    if user_id not in chat_request.participants:
        raise ForbiddenError("You do not have access to this chat room.")

    if chat_request.is_room_expired(now or utcnow()):
        raise ExpiredError()

    return RoomAccess(
        request=chat_request,
        user_id=user_id,
        participants=chat_request.participants,
        other_participant=chat_request.other_participant(user_id),
    )

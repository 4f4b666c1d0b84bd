"""
Chat request store — the pending → accepted / rejected / expired state machine.

Every transition out of ``pending`` is a compare-and-set UPDATE guarded by
``status = 'pending'``, so two racing responders can never both win and a
request can never end up with two room ids.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import desc, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.config import settings
from app.errors import (
    AlreadyRespondedError,
    CrossCampusError,
    DuplicatePendingError,
    ForbiddenError,
    NotFoundError,
    RequestExpiredError,
    SelfReferenceError,
    ValidationError,
)
from app.models.chat_request import ChatRequest, RequestStatus
from app.models.post import Post
from app.models.user import User
from app.utils.clock import utcnow
from app.utils.text import clean_text

logger = logging.getLogger(__name__)

DECISIONS = {
    "accept": RequestStatus.ACCEPTED,
    "reject": RequestStatus.REJECTED,
}

ROOM_ID_ATTEMPTS = 5

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class RequestListing:
    sent: List[ChatRequest] = field(default_factory=list)
    received: List[ChatRequest] = field(default_factory=list)
    active_rooms: List[ChatRequest] = field(default_factory=list)


# ── Helpers ──

def _base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if not number:
            return "".join(reversed(digits))


def generate_room_id(now: Optional[datetime] = None) -> str:
    """Timestamp component plus 64 bits from ``secrets``; unguessable."""
    millis = int((now or utcnow()).timestamp() * 1000)
    return f"room_{_base36(millis)}_{secrets.token_hex(8)}"


def _check_still_pending(chat_request: ChatRequest) -> None:
    if chat_request.status == RequestStatus.EXPIRED:
        raise RequestExpiredError()
    if chat_request.status != RequestStatus.PENDING:
        raise AlreadyRespondedError()


async def _expire_pending(db: AsyncSession, request_id: int, now: datetime) -> bool:
    result = await db.execute(
        update(ChatRequest)
        .where(ChatRequest.id == request_id, ChatRequest.status == RequestStatus.PENDING)
        .values(status=RequestStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ── Queries ──

async def get_request(db: AsyncSession, request_id: int, include_inactive: bool = False) -> ChatRequest:
    chat_request = await db.get(ChatRequest, request_id)
    if chat_request is None or (not chat_request.is_active and not include_inactive):
        raise NotFoundError("Chat request not found.")
    return chat_request


async def list_requests(
    db: AsyncSession,
    user_id: int,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> RequestListing:
    """Sent, received and active-room partitions for ``user_id``, newest first."""
    now = now or utcnow()
    limit = limit or settings.REQUEST_LIST_LIMIT

    sent = await db.execute(
        select(ChatRequest)
        .where(ChatRequest.requester_id == user_id, ChatRequest.is_active == True)  # noqa: E712
        .order_by(desc(ChatRequest.created_at), desc(ChatRequest.id))
        .limit(limit)
    )
    received = await db.execute(
        select(ChatRequest)
        .where(ChatRequest.target_id == user_id, ChatRequest.is_active == True)  # noqa: E712
        .order_by(desc(ChatRequest.created_at), desc(ChatRequest.id))
        .limit(limit)
    )
    active = await db.execute(
        select(ChatRequest)
        .where(
            or_(ChatRequest.requester_id == user_id, ChatRequest.target_id == user_id),
            ChatRequest.status == RequestStatus.ACCEPTED,
            ChatRequest.is_active == True,  # noqa: E712
            ChatRequest.room_id.is_not(None),
            ChatRequest.room_expiry > now,
        )
        .order_by(desc(ChatRequest.responded_at), desc(ChatRequest.id))
        .limit(limit)
    )
    return RequestListing(
        sent=list(sent.scalars().all()),
        received=list(received.scalars().all()),
        active_rooms=list(active.scalars().all()),
    )


# ── Transitions ──

async def create_request(
    db: AsyncSession,
    requester: User,
    target_id: int,
    context_id: int,
    message: str,
    now: Optional[datetime] = None,
) -> ChatRequest:
    """Create a pending request from ``requester`` to ``target_id`` about post ``context_id``."""
    now = now or utcnow()
    message = clean_text(message, "message", settings.REQUEST_MESSAGE_MAX_LENGTH)

    if requester.id == target_id:
        raise SelfReferenceError()

    target = await db.get(User, target_id)
    if target is None:
        raise NotFoundError("Recipient not found.")
    if target.campus != requester.campus:
        raise CrossCampusError()

    post = await db.get(Post, context_id)
    if post is None:
        raise NotFoundError("Post not found.")
    if post.campus != requester.campus:
        raise CrossCampusError("Invalid post or campus mismatch.")

    existing_result = await db.execute(
        select(ChatRequest).where(
            ChatRequest.requester_id == requester.id,
            ChatRequest.target_id == target_id,
            ChatRequest.post_id == context_id,
            ChatRequest.status == RequestStatus.PENDING,
        )
    )
    existing = existing_result.scalar_one_or_none()
    if existing is not None:
        if not existing.is_request_expired(now):
            raise DuplicatePendingError()
        # A timed-out pending request no longer blocks the triple.
        await _expire_pending(db, existing.id, now)
        set_committed_value(existing, "status", RequestStatus.EXPIRED)

    chat_request = ChatRequest(
        requester_id=requester.id,
        target_id=target_id,
        post_id=context_id,
        message=message,
        status=RequestStatus.PENDING,
        request_expiry=now + timedelta(hours=settings.REQUEST_TTL_HOURS),
        campus=requester.campus,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(chat_request)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race against an identical create: the partial unique index fired.
        await db.rollback()
        raise DuplicatePendingError()

    logger.info(f"Chat request {chat_request.id} created: user {requester.id} -> user {target_id} (post {context_id})")
    return chat_request


async def respond(
    db: AsyncSession,
    request_id: int,
    responder_id: int,
    decision: str,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ChatRequest:
    """Accept or reject a pending request. Only its target may respond."""
    now = now or utcnow()
    new_status = DECISIONS.get(decision)
    if new_status is None:
        raise ValidationError("decision", "Decision must be 'accept' or 'reject'.")
    if note is not None:
        note = note.strip() or None
        if note and len(note) > settings.REQUEST_MESSAGE_MAX_LENGTH:
            raise ValidationError("note", f"Note must be at most {settings.REQUEST_MESSAGE_MAX_LENGTH} characters.")

    chat_request = await get_request(db, request_id)
    if chat_request.target_id != responder_id:
        raise ForbiddenError("You can only respond to requests sent to you.")
    _check_still_pending(chat_request)

    pk = chat_request.id
    if chat_request.is_request_expired(now):
        await _expire_pending(db, pk, now)
        await db.commit()
        await db.refresh(chat_request)
        logger.info(f"Chat request {pk} expired on response attempt")
        raise RequestExpiredError()

    for attempt in range(1, ROOM_ID_ATTEMPTS + 1):
        values = {
            "status": new_status,
            "responded_at": now,
            "response_note": note,
            "updated_at": now,
        }
        if new_status == RequestStatus.ACCEPTED:
            values["room_id"] = generate_room_id(now)
            values["room_expiry"] = now + timedelta(hours=settings.ROOM_TTL_HOURS)

        try:
            result = await db.execute(
                update(ChatRequest)
                .where(
                    ChatRequest.id == pk,
                    ChatRequest.status == RequestStatus.PENDING,
                    ChatRequest.request_expiry >= now,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except IntegrityError:
            # Room id collision: nothing was written, mint a new id.
            await db.rollback()
            logger.warning(f"Room id collision on chat request {pk} (attempt {attempt}), retrying")
            continue

        await db.refresh(chat_request)
        if result.rowcount != 1:
            # Someone else transitioned the request between our read and our write.
            _check_still_pending(chat_request)
            await _expire_pending(db, pk, now)
            await db.commit()
            await db.refresh(chat_request)
            raise RequestExpiredError()

        logger.info(f"Chat request {pk} {chat_request.status.value} by user {responder_id}")
        if chat_request.room_id:
            logger.debug(f"Room {chat_request.room_id} opened until {chat_request.room_expiry.isoformat()}")
        return chat_request

    raise RuntimeError(f"Could not mint a unique room id for chat request {pk}")


async def sweep_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Move every pending request past its expiry to ``expired``.

    Idempotent. Accepted rooms past ``room_expiry`` are left untouched: room
    expiry is derived at read time and their history stays auditable.
    """
    now = now or utcnow()
    result = await db.execute(
        update(ChatRequest)
        .where(
            ChatRequest.status == RequestStatus.PENDING,
            ChatRequest.request_expiry < now,
        )
        .values(status=RequestStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def deactivate_request(db: AsyncSession, request_id: int) -> ChatRequest:
    """Administrative soft delete; independent of ``status``."""
    chat_request = await get_request(db, request_id, include_inactive=True)
    chat_request.is_active = False
    await db.commit()
    logger.info(f"Chat request {request_id} deactivated")
    return chat_request

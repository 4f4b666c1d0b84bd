"""
Private chat router — request lifecycle, room history, and the live channel.

Every room-scoped route and WebSocket event goes through the room access
guard first. Failures of the guard are reported as one indistinct
"not found or expired" so outsiders cannot probe for rooms. Live events are
published only after the store has committed; HTTP routes hand them to
background tasks so the response never waits on a client socket.
"""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.errors import ROOM_ACCESS_ERRORS, ChatError, ForbiddenError, ValidationError
from app.models.chat_request import ChatRequest
from app.models.user import User
from app.routers.auth import COOKIE_KEY, load_user, require_user
from app.schemas.chat import (
    ChatRequestCreate,
    ChatRequestOut,
    ChatRequestRespond,
    ChatRequestView,
    MessageCreate,
    MessageEdit,
    MessageOut,
    ReactionSet,
    RequestListOut,
    RoomOut,
    UserBrief,
)
from app.services import messages as message_store
from app.services import requests as request_store
from app.services.access import RoomAccess, authorize_room
from app.services.realtime import (
    MESSAGE_CREATED,
    MESSAGE_DELETED,
    MESSAGE_REACTION,
    MESSAGE_UPDATED,
    ChannelSession,
    campus_topic,
    hub,
    message_data,
    notify_message,
    notify_read,
    notify_request_created,
    notify_request_resolved,
    notify_typing,
    room_topic,
)
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

ROOM_UNAVAILABLE = "Chat room not found or expired"


# ==============================================================================
# Helpers
# ==============================================================================

async def _users_by_id(db: AsyncSession, user_ids: Iterable[int]) -> Dict[int, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in result.scalars()}


def _brief(user: Optional[User]) -> Optional[UserBrief]:
    return UserBrief(**user.brief()) if user else None


def _view(chat_request: ChatRequest, viewer_id: int, users: Dict[int, User], now: datetime) -> ChatRequestView:
    other = users.get(chat_request.other_participant(viewer_id))
    return ChatRequestView(
        **ChatRequestOut.model_validate(chat_request).model_dump(),
        other_user=_brief(other),
        is_room_expired=chat_request.is_room_expired(now),
    )


async def room_access(
    room_id: str,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> RoomAccess:
    try:
        return await authorize_room(db, room_id, current_user.id)
    except ROOM_ACCESS_ERRORS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ROOM_UNAVAILABLE)


# ==============================================================================
# Requests
# ==============================================================================

@router.post("/requests", response_model=ChatRequestOut, status_code=status.HTTP_201_CREATED)
async def submit_request(
    payload: ChatRequestCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Ask another student on the same campus for a private chat about a post."""
    chat_request = await request_store.create_request(
        db, current_user, payload.target_id, payload.context_id, payload.message
    )
    background_tasks.add_task(notify_request_created, chat_request, current_user)
    return chat_request


@router.get("/requests", response_model=RequestListOut)
async def my_requests(
    limit: Optional[int] = Query(None, ge=1, le=50),
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Sent, received and active-room partitions for the current user."""
    now = utcnow()
    listing = await request_store.list_requests(db, current_user.id, limit=limit, now=now)

    everything = listing.sent + listing.received + listing.active_rooms
    users = await _users_by_id(db, (r.other_participant(current_user.id) for r in everything))

    return RequestListOut(
        sent=[_view(r, current_user.id, users, now) for r in listing.sent],
        received=[_view(r, current_user.id, users, now) for r in listing.received],
        active_rooms=[_view(r, current_user.id, users, now) for r in listing.active_rooms],
    )


@router.post("/requests/{request_id}/respond", response_model=ChatRequestOut)
async def respond_to_request(
    request_id: int,
    payload: ChatRequestRespond,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Accept (opening a private room) or reject a request sent to you."""
    chat_request = await request_store.respond(
        db, request_id, current_user.id, payload.decision, note=payload.note
    )
    background_tasks.add_task(notify_request_resolved, chat_request, current_user, payload.decision)
    return chat_request


# ==============================================================================
# Rooms & messages
# ==============================================================================

@router.get("/rooms/{room_id}", response_model=RoomOut)
async def open_room(
    limit: Optional[int] = Query(None, ge=1),
    before: Optional[int] = None,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    """The other participant plus the latest page of the room's history."""
    users = await _users_by_id(db, [access.other_participant])
    messages = await message_store.list_messages(db, access.room_id, limit=limit, before=before)
    return RoomOut(
        room_id=access.room_id,
        request_id=access.request.id,
        room_expiry=access.request.room_expiry,
        other_user=_brief(users.get(access.other_participant)),
        messages=[MessageOut.model_validate(m) for m in messages],
    )


@router.get("/rooms/{room_id}/messages", response_model=List[MessageOut])
async def room_messages(
    limit: Optional[int] = Query(None, ge=1),
    before: Optional[int] = None,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    return await message_store.list_messages(db, access.room_id, limit=limit, before=before)


@router.post("/rooms/{room_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: MessageCreate,
    background_tasks: BackgroundTasks,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    message = await message_store.post_message(db, access.room_id, access.user_id, payload.content)
    background_tasks.add_task(notify_message, MESSAGE_CREATED, message)
    return message


@router.patch("/rooms/{room_id}/messages/{message_id}", response_model=MessageOut)
async def edit_message(
    message_id: int,
    payload: MessageEdit,
    background_tasks: BackgroundTasks,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    message = await message_store.edit_message(
        db, message_id, access.user_id, payload.content, room_id=access.room_id
    )
    background_tasks.add_task(notify_message, MESSAGE_UPDATED, message)
    return message


@router.delete("/rooms/{room_id}/messages/{message_id}")
async def delete_message(
    message_id: int,
    background_tasks: BackgroundTasks,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    message = await message_store.delete_message(db, message_id, access.user_id, room_id=access.room_id)
    background_tasks.add_task(notify_message, MESSAGE_DELETED, message)
    return {"id": message.id, "deleted": True}


@router.put("/rooms/{room_id}/messages/{message_id}/reaction", response_model=MessageOut)
async def set_reaction(
    message_id: int,
    payload: ReactionSet,
    background_tasks: BackgroundTasks,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    message = await message_store.add_reaction(
        db, message_id, access.user_id, payload.emoji, room_id=access.room_id
    )
    background_tasks.add_task(notify_message, MESSAGE_REACTION, message)
    return message


@router.delete("/rooms/{room_id}/messages/{message_id}/reaction", response_model=MessageOut)
async def clear_reaction(
    message_id: int,
    background_tasks: BackgroundTasks,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    message = await message_store.remove_reaction(db, message_id, access.user_id, room_id=access.room_id)
    background_tasks.add_task(notify_message, MESSAGE_REACTION, message)
    return message


@router.post("/rooms/{room_id}/read")
async def mark_room_read(
    background_tasks: BackgroundTasks,
    access: RoomAccess = Depends(room_access),
    db: AsyncSession = Depends(get_db),
):
    count = await message_store.mark_read(db, access.room_id, access.user_id)
    if count:
        background_tasks.add_task(notify_read, access.room_id, access.user_id, count)
    return {"room_id": access.room_id, "count": count}


# ==============================================================================
# WebSocket channel
# ==============================================================================

class _RoomUnavailable(Exception):
    pass


async def _guard(db: AsyncSession, session: ChannelSession, frame: dict) -> RoomAccess:
    try:
        return await authorize_room(db, str(frame.get("room_id") or ""), session.user_id)
    except ROOM_ACCESS_ERRORS:
        raise _RoomUnavailable()


async def _send(session: ChannelSession, event: str, data: dict) -> None:
    await session.socket.send_json({"event": event, "data": data})


async def _on_join_room(db, session, frame):
    access = await _guard(db, session, frame)
    hub.subscribe(session, room_topic(access.room_id))
    await _send(session, "joined", {"room_id": access.room_id, "other_participant": access.other_participant})


async def _on_leave_room(db, session, frame):
    room_id = str(frame.get("room_id") or "")
    hub.unsubscribe(session, room_topic(room_id))
    await _send(session, "left", {"room_id": room_id})


async def _on_join_campus(db, session, frame):
    campus = frame.get("campus") or session.campus
    if campus != session.campus:
        raise ForbiddenError("You can only follow your own campus.")
    hub.subscribe(session, campus_topic(campus))
    await _send(session, "joined", {"campus": campus})


async def _on_send_message(db, session, frame):
    access = await _guard(db, session, frame)
    message = await message_store.post_message(db, access.room_id, session.user_id, frame.get("content"))
    delivered_to_sender = room_topic(access.room_id) in session.topics
    await notify_message(MESSAGE_CREATED, message)
    if not delivered_to_sender:
        await _send(session, MESSAGE_CREATED, message_data(message))


async def _on_edit_message(db, session, frame):
    access = await _guard(db, session, frame)
    message = await message_store.edit_message(
        db, int(frame["message_id"]), session.user_id, frame.get("content"), room_id=access.room_id
    )
    await notify_message(MESSAGE_UPDATED, message)


async def _on_delete_message(db, session, frame):
    access = await _guard(db, session, frame)
    message = await message_store.delete_message(
        db, int(frame["message_id"]), session.user_id, room_id=access.room_id
    )
    await notify_message(MESSAGE_DELETED, message)


async def _on_react(db, session, frame):
    access = await _guard(db, session, frame)
    message_id = int(frame["message_id"])
    if frame.get("emoji"):
        message = await message_store.add_reaction(
            db, message_id, session.user_id, frame["emoji"], room_id=access.room_id
        )
    else:
        message = await message_store.remove_reaction(db, message_id, session.user_id, room_id=access.room_id)
    await notify_message(MESSAGE_REACTION, message)


async def _on_typing(db, session, frame):
    access = await _guard(db, session, frame)
    await notify_typing(access.room_id, session.user_id, bool(frame.get("is_typing", True)))


async def _on_mark_read(db, session, frame):
    access = await _guard(db, session, frame)
    count = await message_store.mark_read(db, access.room_id, session.user_id)
    if count:
        await notify_read(access.room_id, session.user_id, count)


FRAME_HANDLERS = {
    "join_room": _on_join_room,
    "leave_room": _on_leave_room,
    "join_campus": _on_join_campus,
    "send_message": _on_send_message,
    "edit_message": _on_edit_message,
    "delete_message": _on_delete_message,
    "react": _on_react,
    "typing": _on_typing,
    "mark_read": _on_mark_read,
}


async def handle_frame(session: ChannelSession, raw: str, session_factory: async_sessionmaker) -> None:
    """Dispatch one client frame; errors are answered on the socket, never raised."""
    try:
        frame = json.loads(raw)
    except ValueError:
        frame = None
    if not isinstance(frame, dict):
        await _send(session, "error", {"code": "invalid_payload", "message": "Frames must be JSON objects."})
        return

    event = frame.get("event")
    handler = FRAME_HANDLERS.get(event) if isinstance(event, str) else None
    if handler is None:
        await _send(session, "error", {"code": "unknown_event", "message": f"Unknown event: {event}"})
        return

    try:
        async with session_factory() as db:
            await handler(db, session, frame)
    except _RoomUnavailable:
        await _send(session, "error", {"code": "room_unavailable", "message": ROOM_UNAVAILABLE, "event": event})
    except ChatError as e:
        payload = {"code": e.code, "message": e.message, "event": event}
        if isinstance(e, ValidationError):
            payload["field"] = e.field
        await _send(session, "error", payload)
    except (KeyError, TypeError, ValueError):
        await _send(session, "error", {"code": "invalid_payload", "message": "Malformed frame.", "event": event})


@router.websocket("/ws")
async def websocket_channel(
    websocket: WebSocket,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Live channel. Authenticate with ``?token=`` (or the auth cookie), then
    explicitly join rooms or your campus. Frames: ``{"event": ..., ...}``.
    """
    token = websocket.query_params.get("token") or websocket.cookies.get(COOKIE_KEY)
    async with session_factory() as db:
        user = await load_user(db, token)
    if user is None:
        await websocket.close(code=4001)  # invalid/expired token
        return

    await websocket.accept()
    session = hub.register(websocket, user.id, user.campus)
    logger.info(f"User {user.id} connected to the live channel")
    try:
        await _send(session, "welcome", {"user_id": user.id})
        while True:
            raw = await websocket.receive_text()
            await handle_frame(session, raw, session_factory)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(session)
        logger.info(f"User {user.id} disconnected from the live channel")

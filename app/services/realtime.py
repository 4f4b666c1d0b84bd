"""
Real-time channel — topic-keyed publish/subscribe fan-out over WebSockets.

The stores are the source of truth. Everything published here is a
best-effort notification: a client that misses one recovers by re-reading
requests or messages, never by replay. ``publish`` therefore never raises.

Each connection is registered as an explicit ``ChannelSession`` carrying the
authenticated identity before any of its frames are handled, and it only
ever receives topics it was explicitly subscribed to.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from fastapi.encoders import jsonable_encoder

from app.config import settings
from app.models.chat_request import ChatRequest
from app.models.message import PrivateMessage
from app.models.user import User
from app.schemas.chat import ChatRequestOut, MessageOut

logger = logging.getLogger(__name__)

# ── Event names ──
REQUEST_CREATED = "chat.request.created"
REQUEST_RESOLVED = "chat.request.resolved"
MESSAGE_CREATED = "chat.message.created"
MESSAGE_UPDATED = "chat.message.updated"
MESSAGE_DELETED = "chat.message.deleted"
MESSAGE_REACTION = "chat.message.reaction"
MESSAGES_READ = "chat.messages.read"
TYPING = "chat.typing"


def user_topic(user_id: int) -> str:
    return f"user:{user_id}"


def room_topic(room_id: str) -> str:
    return f"room:{room_id}"


def campus_topic(campus: str) -> str:
    return f"campus:{campus}"


@dataclass(eq=False)
class ChannelSession:
    """One authenticated connection and the topics it is subscribed to."""
    user_id: int
    campus: str
    socket: Any
    topics: Set[str] = field(default_factory=set)


class ChannelHub:
    def __init__(self, send_timeout: Optional[float] = None):
        if send_timeout is None:
            send_timeout = settings.PUBLISH_SEND_TIMEOUT_SECONDS
        # Upper bound on one socket write; a stalled client is dropped.
        self.send_timeout = send_timeout
        self._sessions: Dict[Any, ChannelSession] = {}
        self._topics: Dict[str, Set[ChannelSession]] = {}

    # ── Membership ──

    def register(self, socket: Any, user_id: int, campus: str) -> ChannelSession:
        """Attach an authenticated identity to ``socket`` and give it its personal topic."""
        session = ChannelSession(user_id=user_id, campus=campus, socket=socket)
        self._sessions[socket] = session
        self.subscribe(session, user_topic(user_id))
        return session

    def session_for(self, socket: Any) -> Optional[ChannelSession]:
        return self._sessions.get(socket)

    def subscribe(self, session: ChannelSession, topic: str) -> None:
        session.topics.add(topic)
        self._topics.setdefault(topic, set()).add(session)

    def unsubscribe(self, session: ChannelSession, topic: str) -> None:
        session.topics.discard(topic)
        members = self._topics.get(topic)
        if members is not None:
            members.discard(session)
            if not members:
                del self._topics[topic]

    def disconnect(self, session: ChannelSession) -> None:
        for topic in list(session.topics):
            self.unsubscribe(session, topic)
        self._sessions.pop(session.socket, None)

    def subscribers(self, topic: str) -> List[ChannelSession]:
        return list(self._topics.get(topic, ()))

    # ── Fan-out ──

    async def publish(
        self,
        topic: str,
        event: str,
        data: dict,
        exclude_user: Optional[int] = None,
    ) -> int:
        """Send ``event`` to every subscriber of ``topic``; returns how many got it."""
        try:
            frame = jsonable_encoder({"event": event, "data": data})
        except Exception as e:
            logger.error(f"Could not encode {event} for {topic}: {e}")
            return 0

        delivered = 0
        dead = []
        for session in self.subscribers(topic):
            if exclude_user is not None and session.user_id == exclude_user:
                continue
            try:
                await asyncio.wait_for(session.socket.send_json(frame), self.send_timeout)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping connection of user {session.user_id} after failed send of {event}: {e}")
                dead.append(session)
        for session in dead:
            self.disconnect(session)
        return delivered


hub = ChannelHub()


# ── Event helpers used by the routers ──

def message_data(message: PrivateMessage) -> dict:
    return MessageOut.model_validate(message).model_dump(mode="json")


async def notify_request_created(chat_request: ChatRequest, requester: User, channel: ChannelHub = hub) -> int:
    return await channel.publish(
        user_topic(chat_request.target_id),
        REQUEST_CREATED,
        {
            "request_id": chat_request.id,
            "message": chat_request.message,
            "context_id": chat_request.post_id,
            "request_expiry": chat_request.request_expiry,
            "requester": requester.brief(),
        },
    )


async def notify_request_resolved(
    chat_request: ChatRequest, responder: User, decision: str, channel: ChannelHub = hub
) -> int:
    request = ChatRequestOut.model_validate(chat_request)
    return await channel.publish(
        user_topic(chat_request.requester_id),
        REQUEST_RESOLVED,
        {
            "request_id": request.id,
            "decision": decision,
            "status": request.status,
            "room_id": request.room_id,
            "room_expiry": request.room_expiry,
            "note": request.response_note,
            "responder": responder.brief(),
        },
    )


async def notify_message(event: str, message: PrivateMessage, channel: ChannelHub = hub) -> int:
    if event == MESSAGE_DELETED:
        data = {"id": message.id, "room_id": message.room_id}
    else:
        data = message_data(message)
    return await channel.publish(room_topic(message.room_id), event, data)


async def notify_read(room_id: str, reader_id: int, count: int, channel: ChannelHub = hub) -> int:
    return await channel.publish(
        room_topic(room_id),
        MESSAGES_READ,
        {"room_id": room_id, "reader_id": reader_id, "count": count},
        exclude_user=reader_id,
    )


async def notify_typing(room_id: str, user_id: int, is_typing: bool, channel: ChannelHub = hub) -> int:
    """Ephemeral: goes to the other participant's sockets in the room only."""
    return await channel.publish(
        room_topic(room_id),
        TYPING,
        {"room_id": room_id, "user_id": user_id, "is_typing": is_typing},
        exclude_user=user_id,
    )

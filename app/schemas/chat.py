"""Private chat Pydantic schemas — request lifecycle, rooms and messages."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel

from app.models.chat_request import RequestStatus


# ── Inbound ──

class ChatRequestCreate(BaseModel):
    target_id: int
    context_id: int
    message: str


class ChatRequestRespond(BaseModel):
    decision: Literal["accept", "reject"]
    note: Optional[str] = None


class MessageCreate(BaseModel):
    content: str


class MessageEdit(BaseModel):
    content: str


class ReactionSet(BaseModel):
    emoji: str


# ── Outbound ──

class UserBrief(BaseModel):
    id: int
    name: str
    avatar_url: Optional[str] = None


class ChatRequestOut(BaseModel):
    id: int
    requester_id: int
    target_id: int
    post_id: int
    message: str
    status: RequestStatus
    room_id: Optional[str] = None
    room_expiry: Optional[datetime] = None
    request_expiry: datetime
    response_note: Optional[str] = None
    responded_at: Optional[datetime] = None
    campus: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ChatRequestView(ChatRequestOut):
    """A request as listed for one of its participants."""
    other_user: Optional[UserBrief] = None
    is_room_expired: bool = False


class RequestListOut(BaseModel):
    sent: List[ChatRequestView]
    received: List[ChatRequestView]
    active_rooms: List[ChatRequestView]


class MessageOut(BaseModel):
    id: int
    room_id: str
    sender_id: int
    content: str
    created_at: datetime
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    reactions: Dict[int, str] = {}

    model_config = {"from_attributes": True}


class RoomOut(BaseModel):
    room_id: str
    request_id: int
    room_expiry: datetime
    other_user: UserBrief
    messages: List[MessageOut]

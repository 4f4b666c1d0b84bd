"""Private chat request model — the request/accept/expire lifecycle and its room."""

import enum
from datetime import datetime
from typing import FrozenSet, Optional

from sqlalchemy import Boolean, Enum, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.types import UTCDateTime
from app.utils.clock import utcnow


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ChatRequest(Base):
    __tablename__ = "chat_requests"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    requester_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    target_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    post_id: Mapped[int] = mapped_column(ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)

    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        Enum(
            RequestStatus,
            name="request_status",
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=RequestStatus.PENDING,
        nullable=False,
    )

    # ── Room (set on acceptance only) ──
    room_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True)
    room_expiry: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    request_expiry: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    response_note: Mapped[Optional[str]] = mapped_column(Text)
    responded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Copied from the requester at creation so listings need no join.
    campus: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # At most one pending request per (requester, target, post).
        Index(
            "uq_chat_requests_pending_triple",
            "requester_id", "target_id", "post_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_chat_requests_target_status", "target_id", "status", "created_at"),
    )

    # ── Derived, read-time state ──

    def is_request_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.request_expiry

    def is_room_expired(self, now: Optional[datetime] = None) -> bool:
        if self.room_expiry is None:
            return False
        return (now or utcnow()) > self.room_expiry

    @property
    def participants(self) -> FrozenSet[int]:
        return frozenset((self.requester_id, self.target_id))

    def other_participant(self, user_id: int) -> int:
        return self.target_id if user_id == self.requester_id else self.requester_id

"""Private room message and reaction models."""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.types import UTCDateTime
from app.utils.clock import utcnow


class PrivateMessage(Base):
    __tablename__ = "private_messages"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    # Not a foreign key: room validity is checked at the access boundary.
    room_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # ── Read receipt ──
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # ── Edit provenance ──
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edited_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    original_content: Mapped[Optional[str]] = mapped_column(Text)

    # ── Soft delete ──
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    reaction_rows: Mapped[List["MessageReaction"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageReaction.id",
    )

    __table_args__ = (
        Index("ix_private_messages_room_created", "room_id", "created_at", "id"),
    )

    @property
    def reactions(self) -> Dict[int, str]:
        return {r.user_id: r.emoji for r in self.reaction_rows}


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("private_messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    emoji: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    message: Mapped[PrivateMessage] = relationship(back_populates="reaction_rows")

    __table_args__ = (
        # One reaction per user per message.
        UniqueConstraint("message_id", "user_id", name="uq_reaction_message_user"),
    )

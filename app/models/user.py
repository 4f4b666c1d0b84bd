"""User model — the identity a chat participant is resolved to."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.types import UTCDateTime


class User(Base):
    __tablename__ = "users"

    # ── Identity ──
    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False
    )
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))

    # ── Campus info ──
    campus: Mapped[str] = mapped_column(String(100), index=True, nullable=False)

    # ── Timestamps ──
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now()
    )

    def brief(self) -> dict:
        return {"id": self.id, "name": self.full_name, "avatar_url": self.avatar_url}

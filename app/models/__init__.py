"""
Campus Whisper – SQLAlchemy ORM models package.

Imports all model classes so the app can discover them
through a single ``import app.models``.
"""

from app.models.user import User                                   # noqa: F401
from app.models.post import Post                                   # noqa: F401
from app.models.chat_request import ChatRequest, RequestStatus     # noqa: F401
from app.models.message import MessageReaction, PrivateMessage     # noqa: F401

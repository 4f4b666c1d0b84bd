import os
import tempfile

# Configure the app before anything under app/ is imported: a throwaway
# database, no SQL echo, and no background sweeper.
_TMP_DIR = tempfile.mkdtemp(prefix="campus-whisper-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/app.db"
os.environ["DEBUG"] = "false"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"

from datetime import datetime, timedelta, timezone  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

import app.models  # noqa: E402,F401
from app.database import Base  # noqa: E402
from app.models.post import Post  # noqa: E402
from app.models.user import User  # noqa: E402

CAMPUS_X = "x-university"
CAMPUS_Y = "y-college"


class Clock:
    """A hand-driven clock threaded through the services' ``now=`` parameters."""

    def __init__(self, start: datetime):
        self.now = start

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_engine(path):
    # NullPool: no connection outlives the event loop that opened it.
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    return engine, factory


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_campus(db: AsyncSession) -> SimpleNamespace:
    alice = User(email="alice@x.edu", full_name="Alice Kim", campus=CAMPUS_X)
    bob = User(email="bob@x.edu", full_name="Bob Lee", campus=CAMPUS_X, avatar_url="/avatars/bob.png")
    dave = User(email="dave@x.edu", full_name="Dave Park", campus=CAMPUS_X)
    carol = User(email="carol@y.edu", full_name="Carol Cho", campus=CAMPUS_Y)
    db.add_all([alice, bob, dave, carol])
    await db.commit()

    post = Post(author_id=bob.id, campus=CAMPUS_X, content="Anyone up for the robotics club demo?")
    second_post = Post(author_id=bob.id, campus=CAMPUS_X, content="Selling my calculus textbook.")
    foreign_post = Post(author_id=carol.id, campus=CAMPUS_Y, content="Study group at the Y library.")
    db.add_all([post, second_post, foreign_post])
    await db.commit()

    return SimpleNamespace(
        alice=alice, bob=bob, dave=dave, carol=carol,
        post=post, second_post=second_post, foreign_post=foreign_post,
    )


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = make_engine(tmp_path / "chat.db")
    await create_schema(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def campus(db):
    return await seed_campus(db)

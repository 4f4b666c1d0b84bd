import asyncio

import pytest

from app.errors import ForbiddenError, NotFoundError, ValidationError
from app.models.message import PrivateMessage
from app.services.messages import (
    add_reaction,
    delete_message,
    edit_message,
    list_messages,
    mark_read,
    post_message,
    remove_reaction,
)

ROOM = "room_test_0123456789abcdef"
OTHER_ROOM = "room_test_fedcba9876543210"


async def test_post_message_is_stored_trimmed(db, campus, clock):
    message = await post_message(db, ROOM, campus.alice.id, "  hello there  ", now=clock.now)

    assert message.id is not None
    assert message.content == "hello there"
    assert message.created_at == clock.now
    assert message.is_read is False
    assert message.is_edited is False
    assert message.reactions == {}


@pytest.mark.parametrize("content", ["", "   ", "y" * 1001])
async def test_post_message_bounds(db, campus, content):
    with pytest.raises(ValidationError) as exc:
        await post_message(db, ROOM, campus.alice.id, content)
    assert exc.value.field == "content"


async def test_post_message_needs_a_room(db, campus):
    with pytest.raises(ValidationError) as exc:
        await post_message(db, "", campus.alice.id, "hi")
    assert exc.value.field == "room_id"


async def test_history_is_chronological_with_id_tiebreak(db, campus, clock):
    first = await post_message(db, ROOM, campus.alice.id, "one", now=clock.now)
    second = await post_message(db, ROOM, campus.bob.id, "two", now=clock.now)
    third = await post_message(db, ROOM, campus.alice.id, "three", now=clock.advance(seconds=1))
    await post_message(db, OTHER_ROOM, campus.alice.id, "elsewhere", now=clock.now)

    history = await list_messages(db, ROOM)

    assert [m.id for m in history] == [first.id, second.id, third.id]


async def test_paging_backwards_with_a_cursor(db, campus, clock):
    ids = []
    for n in range(5):
        message = await post_message(db, ROOM, campus.alice.id, f"msg {n}", now=clock.advance(seconds=1))
        ids.append(message.id)

    latest = await list_messages(db, ROOM, limit=2)
    assert [m.id for m in latest] == ids[3:]

    older = await list_messages(db, ROOM, limit=2, before=latest[0].id)
    assert [m.id for m in older] == ids[1:3]

    oldest = await list_messages(db, ROOM, limit=2, before=older[0].id)
    assert [m.id for m in oldest] == ids[:1]


async def test_cursor_from_another_room_is_not_found(db, campus):
    elsewhere = await post_message(db, OTHER_ROOM, campus.alice.id, "elsewhere")

    with pytest.raises(NotFoundError):
        await list_messages(db, ROOM, before=elsewhere.id)


async def test_edit_keeps_the_first_original(db, campus, clock):
    message = await post_message(db, ROOM, campus.alice.id, "first draft", now=clock.now)

    await edit_message(db, message.id, campus.alice.id, "second draft", now=clock.advance(minutes=1))
    edited = await edit_message(db, message.id, campus.alice.id, "final", now=clock.advance(minutes=1))

    assert edited.content == "final"
    assert edited.is_edited is True
    assert edited.original_content == "first draft"
    assert edited.edited_at == clock.now


async def test_only_the_sender_may_edit_or_delete(db, campus):
    message = await post_message(db, ROOM, campus.alice.id, "mine")

    with pytest.raises(ForbiddenError):
        await edit_message(db, message.id, campus.bob.id, "hijacked")
    with pytest.raises(ForbiddenError):
        await delete_message(db, message.id, campus.bob.id)

    await db.refresh(message)
    assert message.content == "mine"
    assert message.is_deleted is False


async def test_edit_validation_and_missing_messages(db, campus):
    message = await post_message(db, ROOM, campus.alice.id, "mine")

    with pytest.raises(ValidationError):
        await edit_message(db, message.id, campus.alice.id, "z" * 1001)
    with pytest.raises(NotFoundError):
        await edit_message(db, 424242, campus.alice.id, "ghost")
    with pytest.raises(NotFoundError):
        await edit_message(db, message.id, campus.alice.id, "wrong room", room_id=OTHER_ROOM)


async def test_soft_delete_hides_the_message(db, campus, clock):
    kept = await post_message(db, ROOM, campus.alice.id, "kept", now=clock.now)
    gone = await post_message(db, ROOM, campus.alice.id, "gone", now=clock.advance(seconds=1))

    deleted = await delete_message(db, gone.id, campus.alice.id, now=clock.advance(seconds=1))

    assert deleted.is_deleted is True
    assert deleted.deleted_at == clock.now
    assert deleted.content == "gone"
    assert [m.id for m in await list_messages(db, ROOM)] == [kept.id]
    assert [m.id for m in await list_messages(db, ROOM, include_deleted=True)] == [kept.id, gone.id]

    with pytest.raises(NotFoundError):
        await edit_message(db, gone.id, campus.alice.id, "too late")
    with pytest.raises(NotFoundError):
        await delete_message(db, gone.id, campus.alice.id)


async def test_reactions_replace_per_user(db, campus):
    message = await post_message(db, ROOM, campus.alice.id, "react to me")

    await add_reaction(db, message.id, campus.bob.id, "👍")
    await add_reaction(db, message.id, campus.bob.id, "😂")
    result = await add_reaction(db, message.id, campus.alice.id, "❤️")

    assert result.reactions == {campus.bob.id: "😂", campus.alice.id: "❤️"}
    assert len(result.reaction_rows) == 2


async def test_remove_reaction(db, campus):
    message = await post_message(db, ROOM, campus.alice.id, "react to me")
    await add_reaction(db, message.id, campus.bob.id, "👍")

    result = await remove_reaction(db, message.id, campus.bob.id)
    assert result.reactions == {}

    # Removing a reaction that is not there is a no-op.
    result = await remove_reaction(db, message.id, campus.bob.id)
    assert result.reactions == {}


async def test_reaction_bounds_and_deleted_messages(db, campus):
    message = await post_message(db, ROOM, campus.alice.id, "soon gone")

    with pytest.raises(ValidationError) as exc:
        await add_reaction(db, message.id, campus.bob.id, "")
    assert exc.value.field == "emoji"
    with pytest.raises(ValidationError):
        await add_reaction(db, message.id, campus.bob.id, "x" * 11)

    await delete_message(db, message.id, campus.alice.id)
    with pytest.raises(NotFoundError):
        await add_reaction(db, message.id, campus.bob.id, "👍")


async def test_mark_read_counts_only_the_other_side(db, campus, clock):
    await post_message(db, ROOM, campus.alice.id, "from alice", now=clock.now)
    from_bob = await post_message(db, ROOM, campus.bob.id, "from bob", now=clock.now)
    await post_message(db, ROOM, campus.bob.id, "again", now=clock.now)
    await post_message(db, OTHER_ROOM, campus.bob.id, "elsewhere", now=clock.now)

    assert await mark_read(db, ROOM, campus.alice.id, now=clock.advance(minutes=1)) == 2
    assert await mark_read(db, ROOM, campus.alice.id) == 0

    await db.refresh(from_bob)
    assert from_bob.is_read is True
    assert from_bob.read_at == clock.now


async def test_reaction_from_a_stale_session_overwrites_instead_of_failing(db, campus, session_factory):
    message = await post_message(db, ROOM, campus.alice.id, "react to me")
    bob_id = campus.bob.id

    async with session_factory() as stale, session_factory() as other:
        # ``stale`` has the message cached without any reactions.
        await stale.get(PrivateMessage, message.id)
        await add_reaction(other, message.id, bob_id, "👍")

        result = await add_reaction(stale, message.id, bob_id, "🎉")

    assert result.reactions == {bob_id: "🎉"}
    assert len(result.reaction_rows) == 1


async def test_simultaneous_reactions_by_one_user_leave_one_row(db, campus, session_factory):
    message = await post_message(db, ROOM, campus.alice.id, "react to me")
    bob_id = campus.bob.id

    async with session_factory() as first, session_factory() as second:
        results = await asyncio.gather(
            add_reaction(first, message.id, bob_id, "a"),
            add_reaction(second, message.id, bob_id, "b"),
            return_exceptions=True,
        )

    assert not [r for r in results if isinstance(r, Exception)]
    await db.refresh(message)
    assert len(message.reaction_rows) == 1
    assert message.reactions[bob_id] in {"a", "b"}

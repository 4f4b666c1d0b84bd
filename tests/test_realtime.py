import asyncio
from datetime import datetime, timedelta, timezone

from app.models.chat_request import ChatRequest, RequestStatus
from app.models.user import User
from app.services.messages import delete_message, post_message
from app.services.realtime import (
    MESSAGE_CREATED,
    MESSAGE_DELETED,
    MESSAGES_READ,
    REQUEST_CREATED,
    REQUEST_RESOLVED,
    TYPING,
    ChannelHub,
    campus_topic,
    notify_message,
    notify_read,
    notify_request_created,
    notify_request_resolved,
    notify_typing,
    room_topic,
    user_topic,
)

ROOM = "room_live_0123456789abcdef"
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakeSocket:
    def __init__(self, broken=False, stall=0):
        self.frames = []
        self.broken = broken
        self.stall = stall

    async def send_json(self, data):
        if self.stall:
            await asyncio.sleep(self.stall)
        if self.broken:
            raise RuntimeError("connection reset")
        self.frames.append(data)

    def events(self):
        return [f["event"] for f in self.frames]


def _pending_request(**overrides):
    fields = dict(
        id=7, requester_id=1, target_id=2, post_id=3, message="hi there",
        status=RequestStatus.PENDING, request_expiry=NOW + timedelta(hours=48),
        campus="x-university", is_active=True, created_at=NOW,
    )
    fields.update(overrides)
    return ChatRequest(**fields)


def _user(user_id, name):
    return User(id=user_id, email=f"{name.lower()}@x.edu", full_name=name, campus="x-university")


async def test_register_subscribes_only_the_personal_topic():
    hub = ChannelHub()
    socket = FakeSocket()
    session = hub.register(socket, user_id=1, campus="x-university")

    assert session.topics == {user_topic(1)}
    assert hub.session_for(socket) is session

    assert await hub.publish(room_topic(ROOM), "ping", {}) == 0
    assert await hub.publish(user_topic(1), "ping", {"n": 1}) == 1
    assert socket.frames == [{"event": "ping", "data": {"n": 1}}]


async def test_subscribe_unsubscribe_and_disconnect():
    hub = ChannelHub()
    session = hub.register(FakeSocket(), user_id=1, campus="x-university")

    hub.subscribe(session, room_topic(ROOM))
    hub.subscribe(session, campus_topic("x-university"))
    assert hub.subscribers(room_topic(ROOM)) == [session]

    hub.unsubscribe(session, room_topic(ROOM))
    assert hub.subscribers(room_topic(ROOM)) == []

    hub.disconnect(session)
    assert hub.subscribers(campus_topic("x-university")) == []
    assert hub.subscribers(user_topic(1)) == []
    assert hub.session_for(session.socket) is None


async def test_failed_send_drops_that_connection_only():
    hub = ChannelHub()
    healthy, broken = FakeSocket(), FakeSocket(broken=True)
    good = hub.register(healthy, user_id=1, campus="x-university")
    bad = hub.register(broken, user_id=2, campus="x-university")
    hub.subscribe(good, room_topic(ROOM))
    hub.subscribe(bad, room_topic(ROOM))

    delivered = await hub.publish(room_topic(ROOM), "ping", {"at": NOW})

    assert delivered == 1
    assert healthy.frames == [{"event": "ping", "data": {"at": NOW.isoformat()}}]
    assert hub.subscribers(room_topic(ROOM)) == [good]
    assert hub.session_for(broken) is None


async def test_typing_skips_every_socket_of_the_typist():
    hub = ChannelHub()
    alice_phone, alice_laptop, bob = FakeSocket(), FakeSocket(), FakeSocket()
    for socket, user_id in ((alice_phone, 1), (alice_laptop, 1), (bob, 2)):
        hub.subscribe(hub.register(socket, user_id=user_id, campus="x-university"), room_topic(ROOM))

    assert await notify_typing(ROOM, 1, True, channel=hub) == 1

    assert alice_phone.frames == alice_laptop.frames == []
    assert bob.frames == [{"event": TYPING, "data": {"room_id": ROOM, "user_id": 1, "is_typing": True}}]


async def test_request_created_goes_to_the_target_only():
    hub = ChannelHub()
    requester, target = FakeSocket(), FakeSocket()
    hub.register(requester, user_id=1, campus="x-university")
    hub.register(target, user_id=2, campus="x-university")

    await notify_request_created(_pending_request(), _user(1, "Alice"), channel=hub)

    assert requester.frames == []
    frame = target.frames[0]
    assert frame["event"] == REQUEST_CREATED
    assert frame["data"]["request_id"] == 7
    assert frame["data"]["context_id"] == 3
    assert frame["data"]["requester"] == {"id": 1, "name": "Alice", "avatar_url": None}


async def test_request_resolved_goes_to_the_requester():
    hub = ChannelHub()
    requester = FakeSocket()
    hub.register(requester, user_id=1, campus="x-university")
    accepted = _pending_request(
        status=RequestStatus.ACCEPTED,
        room_id=ROOM,
        room_expiry=NOW + timedelta(hours=24),
        responded_at=NOW,
        response_note="see you there",
    )

    await notify_request_resolved(accepted, _user(2, "Bob"), "accept", channel=hub)

    data = requester.frames[0]["data"]
    assert requester.frames[0]["event"] == REQUEST_RESOLVED
    assert data["status"] == "accepted"
    assert data["room_id"] == ROOM
    assert data["note"] == "see you there"
    assert data["responder"]["name"] == "Bob"


async def test_message_events_reach_room_subscribers(db, campus):
    hub = ChannelHub()
    watcher = FakeSocket()
    hub.subscribe(hub.register(watcher, user_id=campus.bob.id, campus=campus.bob.campus), room_topic(ROOM))

    message = await post_message(db, ROOM, campus.alice.id, "hello")
    await notify_message(MESSAGE_CREATED, message, channel=hub)
    await delete_message(db, message.id, campus.alice.id)
    await notify_message(MESSAGE_DELETED, message, channel=hub)

    created, deleted = watcher.frames
    assert created["event"] == MESSAGE_CREATED
    assert created["data"]["content"] == "hello"
    assert created["data"]["sender_id"] == campus.alice.id
    assert deleted == {"event": MESSAGE_DELETED, "data": {"id": message.id, "room_id": ROOM}}


async def test_read_receipt_goes_to_the_sender_side():
    hub = ChannelHub()
    reader, sender = FakeSocket(), FakeSocket()
    hub.subscribe(hub.register(reader, user_id=1, campus="x-university"), room_topic(ROOM))
    hub.subscribe(hub.register(sender, user_id=2, campus="x-university"), room_topic(ROOM))

    await notify_read(ROOM, 1, 3, channel=hub)

    assert reader.frames == []
    assert sender.events() == [MESSAGES_READ]
    assert sender.frames[0]["data"]["count"] == 3


async def test_stalled_socket_is_dropped_after_the_send_timeout():
    hub = ChannelHub(send_timeout=0.05)
    stalled, healthy = FakeSocket(stall=5), FakeSocket()
    slow = hub.register(stalled, user_id=1, campus="x-university")
    fast = hub.register(healthy, user_id=2, campus="x-university")
    hub.subscribe(slow, room_topic(ROOM))
    hub.subscribe(fast, room_topic(ROOM))

    delivered = await asyncio.wait_for(hub.publish(room_topic(ROOM), "ping", {}), timeout=2)

    assert delivered == 1
    assert healthy.events() == ["ping"]
    assert stalled.frames == []
    assert hub.subscribers(room_topic(ROOM)) == [fast]

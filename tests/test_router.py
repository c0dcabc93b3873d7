"""
Parley - Message router tests.

Covers destination resolution, per-recipient encryption, permission gating
and fan-out to live connections.
"""

import asyncio
import gc

import pytest
import pytest_asyncio

from parley import crypto
from parley.errors import (
    ErrorCode,
    GroupError,
    InvalidDestination,
    InvalidPayload,
    PermissionDenied,
    RecipientKeyUnavailable,
    StorageFailure,
)
from parley.message import FileDescriptor
from parley.protocol import Event
from parley.router import Destination, OutgoingPayload


@pytest_asyncio.fixture
async def world(stores):
    """Alice, Bob and Carol with keys; group Team = {alice (creator), bob}."""
    accounts = stores["accounts"]
    users = {}
    for name in ("alice", "bob", "carol"):
        _, private_pem, user = await accounts.signup(name.title(), f"{name}@example.org", "pw")
        users[name] = (user, private_pem)

    group = await stores["groups"].create_group("Team", users["alice"][0].user_id)
    await stores["groups"].add_member(group.group_id, users["alice"][0].user_id, users["bob"][0].user_id)
    return dict(stores, users=users, group=group)


def uid(world, name):
    return world["users"][name][0].user_id


def private_key(world, name):
    return world["users"][name][1]


async def connect(world, name, fake_writer):
    writer = fake_writer()
    await world["registry"].admit(uid(world, name), writer)
    return writer


def test_destination_requires_exactly_one():
    with pytest.raises(InvalidDestination):
        Destination()
    with pytest.raises(InvalidDestination):
        Destination(recipient_id="a", group_id="g")
    assert Destination.private("a").is_private
    assert not Destination.group("g").is_private


def test_payload_requires_exactly_one():
    file = {"name": "a.txt", "url": "/uploads/a.txt", "size": 3, "mime_type": "text/plain"}

    with pytest.raises(InvalidPayload):
        OutgoingPayload.from_request()
    with pytest.raises(InvalidPayload):
        OutgoingPayload.from_request(content="hi", file=file)
    with pytest.raises(InvalidPayload):
        OutgoingPayload.from_request(content="   ")
    with pytest.raises(InvalidPayload):
        OutgoingPayload.from_request(file={"name": "a.txt"})
    assert OutgoingPayload.from_request(file=file).file.name == "a.txt"


@pytest.mark.asyncio
async def test_private_message_encrypted_per_recipient(world, fake_writer):
    alice_writer = await connect(world, "alice", fake_writer)
    bob_writer = await connect(world, "bob", fake_writer)
    carol_writer = await connect(world, "carol", fake_writer)

    message_id = await world["router"].send(
        uid(world, "alice"), Destination.private(uid(world, "bob")), OutgoingPayload(text="secret"), "t1"
    )

    [to_bob] = bob_writer.events(Event.MESSAGE)
    [to_alice] = alice_writer.events(Event.MESSAGE)
    assert carol_writer.events(Event.MESSAGE) == []

    assert to_bob["data"]["message_id"] == message_id
    assert to_bob["data"]["temp_id"] == "t1"
    assert to_bob["data"]["kind"] == "encrypted_text"
    assert to_bob["data"]["content"] is None
    assert crypto.decrypt_with_private_key(
        to_bob["data"]["encrypted_content"], private_key(world, "bob")
    ) == "secret"

    # The sender's echo carries the plaintext
    assert to_alice["data"]["content"] == "secret"
    assert to_alice["data"]["temp_id"] == "t1"


@pytest.mark.asyncio
async def test_private_message_persisted(world):
    await world["router"].send(
        uid(world, "alice"), Destination.private(uid(world, "bob")), OutgoingPayload(text="hi")
    )

    bob_view = world["router"].private_history(uid(world, "bob"), uid(world, "alice"))
    alice_view = world["router"].private_history(uid(world, "alice"), uid(world, "bob"))

    assert len(bob_view) == len(alice_view) == 1
    assert bob_view[0]["content"] is None
    assert alice_view[0]["content"] == "hi"
    assert world["router"].private_history(uid(world, "carol"), uid(world, "alice")) == []


@pytest.mark.asyncio
async def test_group_message_reaches_each_member_once(world, fake_writer):
    alice_writers = [await connect(world, "alice", fake_writer) for _ in range(2)]
    bob_writer = await connect(world, "bob", fake_writer)
    carol_writer = await connect(world, "carol", fake_writer)
    group_id = world["group"].group_id

    await world["router"].send(
        uid(world, "alice"), Destination.group(group_id), OutgoingPayload(text="hi"), "t1"
    )

    for writer in alice_writers + [bob_writer]:
        [frame] = writer.events(Event.MESSAGE)
        assert frame["data"]["content"] == "hi"
        assert frame["data"]["kind"] == "text"
        assert frame["data"]["sender_id"] == uid(world, "alice")
    assert carol_writer.events(Event.MESSAGE) == []


@pytest.mark.asyncio
async def test_non_member_denied(world, fake_writer):
    bob_writer = await connect(world, "bob", fake_writer)
    group_id = world["group"].group_id

    with pytest.raises(PermissionDenied) as exc_info:
        await world["router"].send(
            uid(world, "carol"), Destination.group(group_id), OutgoingPayload(text="let me in")
        )

    assert exc_info.value.code == ErrorCode.E004_PERMISSION_DENIED
    assert world["messages"].group_history(group_id) == []
    assert bob_writer.events(Event.MESSAGE) == []


@pytest.mark.asyncio
async def test_member_without_send_right_denied(world):
    group_id = world["group"].group_id

    with pytest.raises(PermissionDenied):
        await world["router"].send(uid(world, "bob"), Destination.group(group_id), OutgoingPayload(text="hi"))

    await world["groups"].set_permission(group_id, uid(world, "alice"), uid(world, "bob"), True)
    await world["router"].send(uid(world, "bob"), Destination.group(group_id), OutgoingPayload(text="hi"))

    assert len(world["messages"].group_history(group_id)) == 1


@pytest.mark.asyncio
async def test_revoked_permission_applies_to_next_send(world):
    group_id = world["group"].group_id
    alice, bob = uid(world, "alice"), uid(world, "bob")
    await world["groups"].set_permission(group_id, alice, bob, True)
    await world["router"].send(bob, Destination.group(group_id), OutgoingPayload(text="one"))

    await world["groups"].set_permission(group_id, alice, bob, False)

    with pytest.raises(PermissionDenied):
        await world["router"].send(bob, Destination.group(group_id), OutgoingPayload(text="two"))
    assert [m.content.text for m in world["messages"].group_history(group_id)] == ["one"]


@pytest.mark.asyncio
async def test_unknown_recipient(world):
    with pytest.raises(InvalidDestination):
        await world["router"].send(uid(world, "alice"), Destination.private("nobody"), OutgoingPayload(text="hi"))
    assert world["messages"].messages == []


@pytest.mark.asyncio
async def test_unknown_group(world):
    with pytest.raises(GroupError):
        await world["router"].send(uid(world, "alice"), Destination.group("missing"), OutgoingPayload(text="hi"))


@pytest.mark.asyncio
async def test_recipient_without_key(world):
    world["accounts"].users[uid(world, "bob")].public_key = None

    with pytest.raises(RecipientKeyUnavailable):
        await world["router"].send(
            uid(world, "alice"), Destination.private(uid(world, "bob")), OutgoingPayload(text="hi")
        )
    assert world["messages"].messages == []


@pytest.mark.asyncio
async def test_recipient_with_corrupt_key(world):
    world["accounts"].users[uid(world, "bob")].public_key = "garbage"

    with pytest.raises(RecipientKeyUnavailable):
        await world["router"].send(
            uid(world, "alice"), Destination.private(uid(world, "bob")), OutgoingPayload(text="hi")
        )


@pytest.mark.asyncio
async def test_text_length_limit(world):
    world["router"].max_text_length = 10

    with pytest.raises(InvalidPayload) as exc_info:
        await world["router"].send(
            uid(world, "alice"), Destination.group(world["group"].group_id), OutgoingPayload(text="x" * 11)
        )
    assert exc_info.value.code == ErrorCode.E403_MESSAGE_TOO_LARGE


@pytest.mark.asyncio
async def test_file_message_not_encrypted(world, fake_writer):
    bob_writer = await connect(world, "bob", fake_writer)
    descriptor = FileDescriptor("cat.png", "/uploads/abc_cat.png", 2048, "image/png")

    await world["router"].send(
        uid(world, "alice"), Destination.private(uid(world, "bob")), OutgoingPayload(file=descriptor)
    )

    [frame] = bob_writer.events(Event.MESSAGE)
    assert frame["data"]["kind"] == "file"
    assert frame["data"]["file"] == descriptor.to_dict()
    assert frame["data"]["encrypted_content"] is None


@pytest.mark.asyncio
async def test_failed_connection_does_not_stop_fan_out(world, fake_writer):
    await world["registry"].admit(uid(world, "bob"), fake_writer(fail=True))
    bob_writer = await connect(world, "bob", fake_writer)

    await world["router"].send(
        uid(world, "alice"), Destination.group(world["group"].group_id), OutgoingPayload(text="hi")
    )

    assert len(bob_writer.events(Event.MESSAGE)) == 1


@pytest.mark.asyncio
async def test_storage_failure_sends_nothing(world, fake_writer, monkeypatch):
    bob_writer = await connect(world, "bob", fake_writer)

    async def fail(path, data):
        raise StorageFailure("disk full")

    monkeypatch.setattr("parley.message.write_json_atomic", fail)

    with pytest.raises(StorageFailure):
        await world["router"].send(
            uid(world, "alice"), Destination.group(world["group"].group_id), OutgoingPayload(text="hi")
        )
    assert bob_writer.events(Event.MESSAGE) == []
    assert world["messages"].messages == []


@pytest.mark.asyncio
async def test_delivery_follows_persistence_order(world, fake_writer):
    bob_writer = await connect(world, "bob", fake_writer)
    group_id = world["group"].group_id
    texts = [f"m{i}" for i in range(10)]

    await asyncio.gather(
        *(
            world["router"].send(uid(world, "alice"), Destination.group(group_id), OutgoingPayload(text=t))
            for t in texts
        )
    )

    stored = [m.message_id for m in world["messages"].group_history(group_id)]
    delivered = [f["data"]["message_id"] for f in bob_writer.events(Event.MESSAGE)]
    assert delivered == stored


@pytest.mark.asyncio
async def test_group_history_requires_membership(world):
    group_id = world["group"].group_id
    await world["router"].send(uid(world, "alice"), Destination.group(group_id), OutgoingPayload(text="hi"))

    assert len(world["router"].group_history(uid(world, "bob"), group_id)) == 1
    with pytest.raises(PermissionDenied):
        world["router"].group_history(uid(world, "carol"), group_id)


@pytest.mark.asyncio
async def test_conversation_locks_released_after_send(world, fake_writer):
    await connect(world, "alice", fake_writer)
    router = world["router"]

    await asyncio.gather(
        router.send(uid(world, "alice"), Destination.private(uid(world, "bob")), OutgoingPayload(text="a")),
        router.send(uid(world, "alice"), Destination.private(uid(world, "carol")), OutgoingPayload(text="b")),
        router.send(uid(world, "alice"), Destination.group(world["group"].group_id), OutgoingPayload(text="c")),
    )
    gc.collect()

    assert len(router._locks) == 0

"""
Parley - End-to-end tests against a running server.

Starts a real ParleyServer on an ephemeral port and drives it with
ChatSession clients.
"""

import asyncio

import pytest
import pytest_asyncio

from parley import crypto
from parley.attachment import AttachmentStore
from parley.client import ParleyClient
from parley.constants import DECRYPTION_FAILED_PLACEHOLDER, PERMISSION_DENIED_NOTICE
from parley.errors import AuthenticationFailure, ErrorCode, ParleyError, PermissionDenied
from parley.group import GroupManager
from parley.identity import AccountStore
from parley.message import MessageStore
from parley.protocol import Command, Event
from parley.reconcile import MessageState, group_conversation, private_conversation
from parley.server import ParleyServer
from parley.session import ChatSession


@pytest_asyncio.fixture
async def server(temp_dir, kdf_params):
    server = ParleyServer(
        AccountStore(temp_dir / "users.json", kdf_params=kdf_params),
        GroupManager(temp_dir / "groups.json"),
        MessageStore(temp_dir / "messages.json"),
        AttachmentStore(temp_dir / "uploads"),
        host="127.0.0.1",
        port=0,
        read_timeout=0.5,
    )
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@pytest_asyncio.fixture
async def sessions(server):
    """Signed-in sessions for alice, bob and carol."""
    opened = {}
    for name in ("alice", "bob", "carol"):
        session = ChatSession("127.0.0.1", server.port)
        await session.signup(name.title(), f"{name}@example.org", "pw", location="Remote")
        opened[name] = session
    try:
        yield opened
    finally:
        for session in opened.values():
            await session.close()


@pytest.mark.asyncio
async def test_identity_assigned_on_admission(sessions, server):
    alice = sessions["alice"]
    await alice.refresh_users()

    assert alice.user_id == alice.user["user_id"]
    assert server.registry.is_online(alice.user_id)
    assert {u["name"] for u in alice.users.values()} >= {"Alice", "Bob", "Carol"}


@pytest.mark.asyncio
async def test_private_message_roundtrip(sessions, wait_until):
    alice, bob = sessions["alice"], sessions["bob"]
    await alice.open_private(bob.user_id)
    await bob.open_private(alice.user_id)

    pending = await alice.send_text("secret", recipient_id=bob.user_id)
    assert pending.state == MessageState.PENDING

    await wait_until(lambda: alice.engine.get_by_temp_id(pending.temp_id).state == MessageState.CONFIRMED)
    await wait_until(lambda: len(bob.engine.conversation(private_conversation(alice.user_id))) == 1)

    alice_view = alice.engine.conversation(private_conversation(bob.user_id))
    [bob_entry] = bob.engine.conversation(private_conversation(alice.user_id))
    assert [e.text for e in alice_view] == ["secret"]
    assert bob_entry.text == "secret"
    assert bob_entry.state == MessageState.REMOTE
    assert [line.plain for line in bob.transcript()] == ["Alice: secret"]


@pytest.mark.asyncio
async def test_history_refetch_does_not_duplicate(sessions, wait_until):
    alice, bob = sessions["alice"], sessions["bob"]
    await alice.send_text("one", recipient_id=bob.user_id)
    await wait_until(lambda: len(bob.engine.entries) == 1)

    entries = await bob.open_private(alice.user_id)
    entries_again = await bob.open_private(alice.user_id)

    assert [e.text for e in entries] == ["one"]
    assert len(entries_again) == 1


@pytest.mark.asyncio
async def test_group_permissions_enforced(sessions, server, wait_until):
    alice, bob, carol = sessions["alice"], sessions["bob"], sessions["carol"]
    group = await alice.create_group("Team")
    await alice.add_member(group.group_id, bob.user_id)
    await bob.refresh_groups()
    await bob.open_group(group.group_id)

    assert alice.can_send_in_group(group.group_id)
    assert not bob.can_send_in_group(group.group_id)

    await alice.send_text("hi", group_id=group.group_id)
    await wait_until(lambda: len(bob.engine.conversation(group_conversation(group.group_id))) == 1)
    [entry] = bob.engine.conversation(group_conversation(group.group_id))
    assert entry.sender_id == alice.user_id
    assert entry.text == "hi"

    # Carol is not a member: her pending copy is withdrawn and she is told why
    await carol.send_text("let me in", group_id=group.group_id)
    await wait_until(lambda: not carol.engine.pending())
    assert carol.engine.conversation(group_conversation(group.group_id)) == []
    assert PERMISSION_DENIED_NOTICE in [n.text for n in carol.notifications.active()]
    assert len(server.messages.group_history(group.group_id)) == 1

    # Bob is a member without send rights until granted
    await bob.send_text("me too", group_id=group.group_id)
    await wait_until(lambda: not bob.engine.pending())
    assert len(server.messages.group_history(group.group_id)) == 1

    await alice.set_permission(group.group_id, bob.user_id, True)
    await bob.send_text("me too", group_id=group.group_id)
    await wait_until(lambda: len(server.messages.group_history(group.group_id)) == 2)


@pytest.mark.asyncio
async def test_group_message_delivered_once_to_each_member(sessions, wait_until):
    alice, bob = sessions["alice"], sessions["bob"]
    group = await alice.create_group("Pair")
    await alice.add_member(group.group_id, bob.user_id, can_send_messages=True)
    await alice.open_group(group.group_id)

    sent = await bob.send_text("hello all", group_id=group.group_id)
    await wait_until(lambda: bob.engine.get_by_temp_id(sent.temp_id).state == MessageState.CONFIRMED)
    await wait_until(lambda: len(alice.engine.entries) == 1)
    await asyncio.sleep(0.1)

    assert len(alice.engine.entries) == 1
    assert len(bob.engine.entries) == 1
    # Alice is viewing the group, so nothing is counted unread
    assert alice.notifications.unread_count(group_conversation(group.group_id)) == 0
    assert "Bob: hello all" in [n.text for n in alice.notifications.active()]


@pytest.mark.asyncio
async def test_file_message(sessions, server, wait_until):
    alice, bob = sessions["alice"], sessions["bob"]

    pending = await alice.send_file("cat.png", b"\x89PNG....", recipient_id=bob.user_id)
    await wait_until(lambda: len(bob.engine.entries) == 1)

    [entry] = bob.engine.entries.values()
    assert entry.is_file
    assert entry.file.name == "cat.png"
    assert entry.file.is_image
    assert server.attachments.path_for(entry.file).read_bytes() == b"\x89PNG...."
    assert pending.file == entry.file
    assert "Alice sent a file" in [n.text for n in bob.notifications.active()]
    assert bob.notifications.unread_count(private_conversation(alice.user_id)) == 1


@pytest.mark.asyncio
async def test_replaced_private_key_renders_placeholder(sessions, wait_until):
    alice, bob = sessions["alice"], sessions["bob"]
    bob.replace_private_key(crypto.KeyPair().private_pem())

    await alice.send_text("lost", recipient_id=bob.user_id)
    await wait_until(lambda: len(bob.engine.entries) == 1)

    [entry] = bob.engine.entries.values()
    assert entry.text == DECRYPTION_FAILED_PLACEHOLDER
    assert bob.signed_in


@pytest.mark.asyncio
async def test_presence_updates(sessions, server, wait_until):
    alice = sessions["alice"]
    dave = ChatSession("127.0.0.1", server.port)
    await dave.signup("Dave", "dave@example.org", "pw")

    await wait_until(lambda: alice.presence.is_online(dave.user_id))
    dave_id = dave.user_id
    await dave.close()

    await wait_until(lambda: not alice.presence.is_online(dave_id))
    assert not server.registry.is_online(dave_id)


@pytest.mark.asyncio
async def test_login_restores_private_key(sessions, server, wait_until):
    alice, bob = sessions["alice"], sessions["bob"]
    await alice.send_text("before relogin", recipient_id=bob.user_id)
    await wait_until(lambda: len(bob.engine.entries) == 1)

    again = ChatSession("127.0.0.1", server.port)
    try:
        await again.login("bob@example.org", "pw")
        entries = await again.open_private(alice.user_id)
    finally:
        await again.close()

    assert [e.text for e in entries] == ["before relogin"]


@pytest.mark.asyncio
async def test_fetch_profile(sessions):
    alice, bob = sessions["alice"], sessions["bob"]

    profile = await alice.fetch_profile(bob.user_id)

    assert profile["name"] == "Bob"
    assert profile["location"] == "Remote"
    assert profile["fingerprint"]
    assert "password_hash" not in profile


@pytest.mark.asyncio
async def test_unauthenticated_connection_refused(server):
    client = ParleyClient("127.0.0.1", server.port)
    await client.connect()
    try:
        assert await client.ping()

        with pytest.raises(ParleyError) as exc_info:
            await client.fetch_users()
        assert exc_info.value.code == ErrorCode.E303_AUTHENTICATION_FAILED

        with pytest.raises(ParleyError) as exc_info:
            await client.authenticate("forged")
        assert exc_info.value.code == ErrorCode.E303_AUTHENTICATION_FAILED
        assert server.registry.connection_count() == 0
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_unknown_command_and_invalid_frame(server, sessions, wait_until):
    alice = sessions["alice"]
    errors = []
    alice.client.on(Event.ERROR, errors.append)

    with pytest.raises(ParleyError) as exc_info:
        await alice.client.request("teleport")
    assert exc_info.value.code == ErrorCode.E208_UNKNOWN_COMMAND

    alice.client.writer.write(b"this is not json\n")
    await wait_until(lambda: len(errors) == 1)
    assert errors[0]["code"] == ErrorCode.E206_INVALID_FRAME.value

    # The connection survives
    assert await alice.client.ping()


@pytest.mark.asyncio
async def test_join_group_requires_membership(sessions, server, wait_until):
    alice, carol = sessions["alice"], sessions["carol"]
    group = await alice.create_group("Private")
    errors = []
    carol.client.on(Event.ERROR, errors.append)

    await carol.client.join_group(group.group_id)
    await wait_until(lambda: len(errors) == 1)

    assert errors[0]["code"] == ErrorCode.E004_PERMISSION_DENIED.value
    assert server.registry.group_viewers(group.group_id) == set()
    notices = [n.text for n in carol.notifications.active()]
    assert PERMISSION_DENIED_NOTICE not in notices
    assert "Not a member of this group" in notices


@pytest.mark.asyncio
async def test_group_history_hidden_from_non_members(sessions):
    alice, carol = sessions["alice"], sessions["carol"]
    group = await alice.create_group("Private")

    with pytest.raises(PermissionDenied) as exc_info:
        await carol.open_group(group.group_id)
    assert exc_info.value.code == ErrorCode.E004_PERMISSION_DENIED


@pytest.mark.asyncio
async def test_upload_rejects_bad_base64(sessions):
    with pytest.raises(ParleyError) as exc_info:
        await sessions["alice"].client.request(
            Command.UPLOAD_ATTACHMENT, {"name": "a.txt", "data": "***"}
        )
    assert exc_info.value.code == ErrorCode.E402_INVALID_PAYLOAD


@pytest.mark.asyncio
async def test_closed_session_cannot_send(sessions):
    alice, bob = sessions["alice"], sessions["bob"]
    await alice.close()

    with pytest.raises(AuthenticationFailure):
        await alice.send_text("hi", recipient_id=bob.user_id)

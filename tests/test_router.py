"""Tests for direct-message routing across personal stores."""

import pytest

from openchat.errors import MissingField, StoreUnreachable
from openchat.models import FILE_PLACEHOLDER_TEXT, FileMeta, MessageKind

from conftest import store_of


class TestSendDirect:
    @pytest.mark.asyncio
    async def test_alice_bob_scenario(self, core, world, linked, live):
        bob_live = live("bob")
        alice_live = live("alice")

        ack = await core.send_message("alice", "bob", "hi")
        await core.drain()

        assert ack.cross_store
        assert ack.delivered_live

        alice_store = await store_of(core, world, "alice")
        bob_store = await store_of(core, world, "bob")
        alice_copy = alice_store.messages[ack.message_id]
        bob_copy = bob_store.messages[ack.message_id]

        # Self-archival copy readable with alice's symmetric key only
        assert alice_copy.payload != "hi"
        alice_profile = alice_store.profiles["alice"]
        assert core.keys.decrypt_self(alice_copy.payload, alice_profile.symmetric_key) == "hi"

        # Delivered copy readable with bob's private key
        assert bob_copy.payload != "hi"
        bob_profile = bob_store.profiles["bob"]
        assert core.keys.decrypt_own(bob_copy.payload, bob_profile.private_key) == "hi"

        assert [m.payload for m in await core.load_history("alice", "bob")] == ["hi"]
        assert [m.payload for m in await core.load_history("bob", "alice")] == ["hi"]

        event = bob_live.named("chat message")[0]
        assert event["from"] == "alice" and event["msg"] == "hi" and event["messageId"] == ack.message_id
        assert bob_live.named("notification") == ["New message from alice"]
        assert alice_live.named("chat message")[0]["messageId"] == ack.message_id

    @pytest.mark.asyncio
    async def test_conversation_history_both_directions(self, core, linked):
        await core.send_message("alice", "bob", "ping")
        await core.drain()
        await core.send_message("bob", "alice", "pong")
        await core.drain()

        alice_view = await core.load_history("alice", "bob")
        bob_view = await core.load_history("bob", "alice")

        assert [(m.sender, m.payload) for m in alice_view] == [("alice", "ping"), ("bob", "pong")]
        assert [(m.sender, m.payload) for m in bob_view] == [("alice", "ping"), ("bob", "pong")]

    @pytest.mark.asyncio
    async def test_unlinked_receiver_gets_no_cross_store_copy(self, core, world, alice_bob):
        ack = await core.send_message("alice", "bob", "hello?")
        await core.drain()

        assert not ack.cross_store
        bob_store = await store_of(core, world, "bob")
        assert bob_store.messages == {}
        assert [m.payload for m in await core.load_history("alice", "bob")] == ["hello?"]

    @pytest.mark.asyncio
    async def test_receiver_store_failure_does_not_fail_send(self, core, world, linked):
        bob_store = await store_of(core, world, "bob")
        bob_store.unreachable = True

        ack = await core.send_message("alice", "bob", "are you there")
        await core.drain()

        assert ack.cross_store
        alice_store = await store_of(core, world, "alice")
        assert ack.message_id in alice_store.messages

    @pytest.mark.asyncio
    async def test_sender_store_failure_fails_send(self, core, world, linked):
        alice_store = await store_of(core, world, "alice")
        alice_store.unreachable = True

        with pytest.raises(StoreUnreachable):
            await core.send_message("alice", "bob", "lost")

    @pytest.mark.asyncio
    async def test_caller_message_id_is_idempotent(self, core, world, linked):
        await core.send_message("alice", "bob", "once", message_id="msg_1_abc")
        await core.send_message("alice", "bob", "once", message_id="msg_1_abc")
        await core.drain()

        alice_store = await store_of(core, world, "alice")
        bob_store = await store_of(core, world, "bob")
        assert list(alice_store.messages) == ["msg_1_abc"]
        assert list(bob_store.messages) == ["msg_1_abc"]

    @pytest.mark.asyncio
    async def test_file_message(self, core, world, linked, live):
        bob_live = live("bob")
        file = FileMeta(url="https://files.example.net/a.png", name="a.png", type="image/png", size=1234)

        ack = await core.send_message("alice", "bob", kind=MessageKind.FILE, file=file)
        await core.drain()

        bob_store = await store_of(core, world, "bob")
        stored = bob_store.messages[ack.message_id]
        assert stored.payload == FILE_PLACEHOLDER_TEXT
        assert stored.file.url != file.url
        assert stored.file.size == 1234

        [history] = await core.load_history("bob", "alice")
        assert history.file == file
        assert bob_live.named("file message")[0]["fileName"] == "a.png"
        assert bob_live.named("notification") == ["New file from alice"]

    @pytest.mark.asyncio
    async def test_copy_without_recipient_key_is_stored_in_clear(self, core, world, alice_bob):
        _, bob = alice_bob
        bob_store = await store_of(core, world, "bob")
        saved_key = bob_store.profiles["bob"].public_key
        bob_store.profiles["bob"].public_key = None
        await core.link_database("alice", bob.authenticator)
        bob_store.profiles["bob"].public_key = saved_key

        ack = await core.send_message("alice", "bob", "no key yet")
        await core.drain()

        alice_store = await store_of(core, world, "alice")
        assert alice_store.messages[ack.message_id].is_encrypted
        delivered = bob_store.messages[ack.message_id]
        assert not delivered.is_encrypted
        assert delivered.payload == "no key yet"
        assert [m.payload for m in await core.load_history("bob", "alice")] == ["no key yet"]

    @pytest.mark.asyncio
    async def test_oversized_payload_is_stored_in_clear_for_peer(self, core, world, linked):
        text = "x" * 300

        ack = await core.send_message("alice", "bob", text)
        await core.drain()

        bob_store = await store_of(core, world, "bob")
        delivered = bob_store.messages[ack.message_id]
        assert not delivered.is_encrypted
        assert delivered.payload == text
        alice_store = await store_of(core, world, "alice")
        assert alice_store.messages[ack.message_id].is_encrypted
        assert [m.payload for m in await core.load_history("alice", "bob")] == [text]

    @pytest.mark.asyncio
    async def test_offline_receiver(self, core, linked, live):
        alice_live = live("alice")

        ack = await core.send_message("alice", "bob", "later")
        await core.drain()

        assert not ack.delivered_live
        assert len(alice_live.named("chat message")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"receiver": "", "payload": "x"},
        {"receiver": "bob", "payload": ""},
        {"receiver": "bob", "payload": None, "kind": MessageKind.FILE},
    ])
    async def test_validation(self, core, alice_bob, kwargs):
        with pytest.raises(MissingField):
            await core.router.send_direct("alice", **kwargs)

    @pytest.mark.asyncio
    async def test_history_without_peer_is_empty(self, core, alice_bob):
        assert await core.load_history("alice", None) == []

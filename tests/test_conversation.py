"""
AnonChat - Conversation sync tests.

Tests history loading, live folding, de-duplication, sending and closing
against in-memory stand-ins for the message store and live feed.
"""

import asyncio
import json

import pytest

from anonchat.conversation import ConversationSync
from anonchat.errors import ErrorCode, SendError, SyncError
from anonchat.payload import PayloadCodec
from anonchat.session import SessionState
from anonchat.sync_state import SyncState


@pytest.fixture
def plain_session():
    return SessionState("alice", "bob")


@pytest.fixture
def alice_session(alice_keys, bob_keys):
    return SessionState("alice", "bob", alice_keys.private_jwk, bob_keys.public_jwk)


def _payloads(conversation):
    return [m.payload for m in conversation.messages]


@pytest.mark.asyncio
class TestStart:
    """History loading."""

    async def test_loads_history_in_order(self, plain_session, store, feed, message_factory):
        store.history = [
            message_factory("alice", "bob", "one"),
            message_factory("bob", "alice", "two"),
            message_factory("alice", "carol", "elsewhere"),
            message_factory("alice", "bob", "three"),
        ]
        conversation = ConversationSync(plain_session, store, feed)

        history = await conversation.start()

        assert [m.payload for m in history] == ["one", "two", "three"]
        assert _payloads(conversation) == ["one", "two", "three"]
        assert conversation.state == SyncState.LIVE
        assert store.fetch_calls == [("alice", "bob")]

    async def test_subscribes_after_history(self, plain_session, store, feed):
        seen_at_fetch = []
        original = store.fetch_history

        async def fetch(local, peer):
            seen_at_fetch.append(feed.open_subscriptions)
            return await original(local, peer)

        store.fetch_history = fetch
        conversation = ConversationSync(plain_session, store, feed)

        await conversation.start()

        assert seen_at_fetch == [0]
        assert feed.open_subscriptions == 1
        assert feed.subscriptions[0][0] == "alice"

    async def test_duplicate_history_ids_kept_once(self, plain_session, store, feed, message_factory):
        message = message_factory("bob", "alice", "hi")
        store.history = [message, message]
        conversation = ConversationSync(plain_session, store, feed)

        await conversation.start()

        assert _payloads(conversation) == ["hi"]

    async def test_fetch_failure(self, plain_session, store, feed, message_factory):
        store.history = [message_factory("bob", "alice", "hi")]
        store.fetch_error = SyncError("get dialog: 500")
        conversation = ConversationSync(plain_session, store, feed)

        with pytest.raises(SyncError):
            await conversation.start()

        assert conversation.messages == ()
        assert conversation.state == SyncState.IDLE
        assert feed.subscriptions == []

        # The caller may retry
        store.fetch_error = None
        await conversation.start()
        assert _payloads(conversation) == ["hi"]

    async def test_unexpected_fetch_error_is_wrapped(self, plain_session, store, feed):
        store.fetch_error = RuntimeError("socket exploded")
        conversation = ConversationSync(plain_session, store, feed)

        with pytest.raises(SyncError):
            await conversation.start()
        assert conversation.state == SyncState.IDLE

    async def test_start_twice(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        with pytest.raises(SyncError) as exc_info:
            await conversation.start()

        assert exc_info.value.code == ErrorCode.E211_INVALID_STATE
        assert len(feed.subscriptions) == 1

    async def test_closed_while_loading(self, plain_session, store, feed, message_factory):
        store.history = [message_factory("bob", "alice", "hi")]
        release = asyncio.Event()
        original = store.fetch_history

        async def slow_fetch(local, peer):
            await release.wait()
            return await original(local, peer)

        store.fetch_history = slow_fetch
        conversation = ConversationSync(plain_session, store, feed)

        task = asyncio.ensure_future(conversation.start())
        await asyncio.sleep(0)
        await conversation.close()
        release.set()

        assert await task == []
        assert conversation.messages == ()
        assert feed.subscriptions == []
        assert conversation.state == SyncState.CLOSED


@pytest.mark.asyncio
class TestIncoming:
    """Folding live feed items."""

    async def test_appends_in_arrival_order(self, plain_session, store, feed, message_factory):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        feed.deliver(message_factory("bob", "alice", "first"))
        feed.deliver(message_factory("alice", "bob", "second"))

        assert _payloads(conversation) == ["first", "second"]

    async def test_ignores_other_conversations(self, plain_session, store, feed, message_factory):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        assert conversation.on_incoming(message_factory("carol", "alice", "psst")) is None
        assert conversation.on_incoming(message_factory("bob", "carol", "psst")) is None
        assert conversation.messages == ()

    async def test_redelivered_history_is_suppressed(
        self, plain_session, store, feed, message_factory
    ):
        old = message_factory("bob", "alice", "old")
        store.history = [old]
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        assert conversation.on_incoming(old) is None
        assert _payloads(conversation) == ["old"]

    async def test_same_item_twice(self, plain_session, store, feed, message_factory):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()
        message = message_factory("bob", "alice", "hi")

        first = conversation.on_incoming(message)
        second = conversation.on_incoming(message)

        assert first == message
        assert second is None
        assert len(conversation.messages) == 1

    async def test_decrypts_live_items(self, alice_session, store, feed, alice_keys, bob_keys, message_factory):
        conversation = ConversationSync(alice_session, store, feed)
        await conversation.start()
        payload = PayloadCodec().encrypt("secret", bob_keys.private_jwk, alice_keys.public_jwk)

        appended = conversation.on_incoming(message_factory("bob", "alice", payload))

        assert appended.payload == "secret"
        assert _payloads(conversation) == ["secret"]

    async def test_undecryptable_live_item_is_dropped(
        self, alice_session, store, feed, alice_keys, bob_keys, message_factory
    ):
        conversation = ConversationSync(alice_session, store, feed)
        await conversation.start()
        payload = json.loads(
            PayloadCodec().encrypt("secret", bob_keys.private_jwk, alice_keys.public_jwk)
        )
        payload["ciphertext"][0] ^= 0xFF
        bad = message_factory("bob", "alice", json.dumps(payload))

        assert conversation.on_incoming(bad) is None
        assert conversation.on_incoming(bad) is None

        assert conversation.messages == ()
        assert len(conversation.failed_messages) == 1
        # The feed keeps working
        assert conversation.on_incoming(message_factory("bob", "alice", "plain")) is not None

    async def test_ignored_before_start_and_after_close(
        self, plain_session, store, feed, message_factory
    ):
        conversation = ConversationSync(plain_session, store, feed)

        assert conversation.on_incoming(message_factory("bob", "alice", "early")) is None

        await conversation.start()
        await conversation.close()

        assert conversation.on_incoming(message_factory("bob", "alice", "late")) is None
        assert conversation.messages == ()

    async def test_on_message_hook(self, plain_session, store, feed, message_factory):
        store.history = [message_factory("bob", "alice", "old")]
        conversation = ConversationSync(plain_session, store, feed)
        seen = []
        conversation.on_message = lambda message: seen.append(message.payload)
        await conversation.start()

        feed.deliver(message_factory("bob", "alice", "new"))
        await conversation.send("reply")

        assert seen == ["new", "reply"]

    async def test_hook_errors_do_not_break_sync(self, plain_session, store, feed, message_factory):
        conversation = ConversationSync(plain_session, store, feed)

        def broken(message):
            raise RuntimeError("render failed")

        conversation.on_message = broken
        await conversation.start()

        assert conversation.on_incoming(message_factory("bob", "alice", "hi")) is not None
        assert len(conversation.messages) == 1


@pytest.mark.asyncio
class TestSend:
    """Outgoing messages."""

    async def test_send_plaintext(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        created = await conversation.send("hello")

        assert created.payload == "hello"
        assert store.sent[0].payload == "hello"
        assert conversation.messages == (created,)

    async def test_send_encrypted(self, alice_session, store, feed, alice_keys, bob_keys):
        conversation = ConversationSync(alice_session, store, feed)
        await conversation.start()

        created = await conversation.send("hello")

        wire = store.sent[0].payload
        assert PayloadCodec.is_encrypted(wire)
        assert "hello" not in wire
        assert PayloadCodec().decrypt(wire, bob_keys.private_jwk, alice_keys.public_jwk) == "hello"
        assert created.payload == "hello"
        assert created.id == store.sent[0].id
        assert _payloads(conversation) == ["hello"]

    async def test_echo_after_send_is_suppressed(self, alice_session, store, feed):
        conversation = ConversationSync(alice_session, store, feed)
        await conversation.start()

        await conversation.send("hello")
        feed.deliver(store.sent[0])

        assert _payloads(conversation) == ["hello"]

    async def test_echo_before_send_returns(self, alice_session, store, feed):
        conversation = ConversationSync(alice_session, store, feed)
        await conversation.start()
        original = store.create_message

        async def create_and_echo(sender, recipient, payload):
            created = await original(sender, recipient, payload)
            feed.deliver(created)
            return created

        store.create_message = create_and_echo

        result = await conversation.send("hello")

        assert result.payload == "hello"
        assert _payloads(conversation) == ["hello"]

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_blank_text_rejected(self, plain_session, store, feed, text):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        with pytest.raises(ValueError):
            await conversation.send(text)
        assert store.sent == []

    async def test_send_requires_live(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)

        with pytest.raises(SyncError):
            await conversation.send("too early")

        await conversation.start()
        await conversation.close()
        with pytest.raises(SyncError):
            await conversation.send("too late")
        assert store.sent == []

    async def test_send_failure(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()
        store.send_error = SendError("send: 503")

        with pytest.raises(SendError):
            await conversation.send("hello")
        assert conversation.messages == ()

    async def test_send_completing_after_close(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()
        release = asyncio.Event()
        original = store.create_message

        async def slow_create(sender, recipient, payload):
            await release.wait()
            return await original(sender, recipient, payload)

        store.create_message = slow_create

        task = asyncio.ensure_future(conversation.send("hello"))
        await asyncio.sleep(0)
        await conversation.close()
        release.set()

        result = await task
        assert result.payload == "hello"
        assert conversation.messages == ()


@pytest.mark.asyncio
class TestClose:
    """Releasing the live feed."""

    async def test_close_is_idempotent(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()

        await conversation.close()
        await conversation.close()

        assert conversation.state == SyncState.CLOSED
        assert feed.open_subscriptions == 0

    async def test_close_before_start(self, plain_session, store, feed):
        conversation = ConversationSync(plain_session, store, feed)

        await conversation.close()

        assert conversation.state == SyncState.CLOSED
        with pytest.raises(SyncError):
            await conversation.start()

    async def test_context_manager(self, plain_session, store, feed, message_factory):
        store.history = [message_factory("bob", "alice", "hi")]

        async with ConversationSync(plain_session, store, feed) as conversation:
            assert conversation.state == SyncState.LIVE
            assert _payloads(conversation) == ["hi"]

        assert conversation.state == SyncState.CLOSED
        assert feed.open_subscriptions == 0

    async def test_messages_is_a_snapshot(self, plain_session, store, feed, message_factory):
        conversation = ConversationSync(plain_session, store, feed)
        await conversation.start()
        snapshot = conversation.messages

        feed.deliver(message_factory("bob", "alice", "new"))

        assert snapshot == ()
        assert len(conversation.messages) == 1

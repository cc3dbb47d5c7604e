"""
AnonChat - Chat client.

Created for the AnonChat client.

Wires local storage, the session policy and the message store together for
front-ends. A ChatClient holds at most one open conversation; opening a new
one closes the previous one first.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .account import AccountManager
from .api import FeedSource, LiveFeed, MessageStore, MessageStoreClient
from .config import Config
from .constants import CONFIG_FILENAME, KEYPAIR_FILENAME, PEER_KEYS_FILENAME, PROFILE_FILENAME
from .contact import PeerKeyStore
from .conversation import ConversationSync
from .identity import IdentityLabelStore, KeyPairStore
from .payload import PayloadCodec
from .session import SessionPolicy

logger = logging.getLogger(__name__)


class ChatClient:
    """Entry point for front-ends: stores, session policy and conversations."""

    def __init__(
        self,
        data_dir: Union[str, Path],
        config: Optional[Config] = None,
        store: Optional[MessageStore] = None,
        feed: Optional[FeedSource] = None,
    ):
        """
        Initialize client.

        Args:
            data_dir: Directory holding the key pair, profile and peer keys
            config: Configuration (defaults are used when omitted)
            store: Message store (an HTTP client for the configured server
                by default)
            feed: Live feed source (a WebSocket feed by default)
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config = config or Config(self.data_dir / CONFIG_FILENAME)

        self.keypair_store = KeyPairStore(self.data_dir / KEYPAIR_FILENAME)
        self.label_store = IdentityLabelStore(self.data_dir / PROFILE_FILENAME)
        self.peer_key_store = PeerKeyStore(str(self.data_dir / PEER_KEYS_FILENAME))
        self.accounts = AccountManager(self.keypair_store, self.label_store, self.peer_key_store)
        self.policy = SessionPolicy(self.keypair_store)
        # One codec for every conversation so derived keys are reused
        self.codec = PayloadCodec()

        self._store = store
        self._feed = feed
        self._owns_store = store is None

        self.conversation: Optional[ConversationSync] = None

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def store(self) -> MessageStore:
        """Message store, created on first use from the server config."""
        if self._store is None:
            self._store = MessageStoreClient(
                self.config.get("server", "base_url"),
                timeout=self.config.get("server", "timeout"),
            )
        return self._store

    @property
    def feed(self) -> FeedSource:
        """Live feed source, created on first use from the server config."""
        if self._feed is None:
            delay = self.config.get("server", "reconnect_delay")
            self._feed = LiveFeed(
                self.config.get("server", "base_url"),
                reconnect_delay=delay if delay and delay > 0 else None,
            )
        return self._feed

    @property
    def my_id(self) -> str:
        return self.label_store.get()

    async def open_conversation(
        self,
        peer_identity: str,
        peer_public_key: Optional[str] = None,
        local_identity: Optional[str] = None,
    ) -> ConversationSync:
        """
        Open a conversation and load its history.

        Args:
            peer_identity: Identity to talk to
            peer_public_key: Peer public JWK; None falls back to the key
                remembered for this peer, "" forces an unencrypted
                conversation
            local_identity: Identity to use; None uses the stored label

        Returns:
            The live conversation

        Raises:
            ValueError: If an identity is blank
            MissingKeyPairError: If a peer key is given without a local key pair
            KeyFormatError: If the peer key is not a P-256 public JWK
            SyncError: If the history cannot be loaded
        """
        local = local_identity if local_identity is not None else self.label_store.get()
        if peer_public_key is None:
            peer_public_key = self.peer_key_store.get_peer_key(peer_identity)

        session = self.policy.resolve(local, peer_identity, peer_public_key)

        await self.close_conversation()
        conversation = ConversationSync(session, self.store, self.feed, self.codec)
        await conversation.start()

        # Remember what worked for next time
        self.label_store.set(session.local_identity)
        if session.encryption_active:
            self.peer_key_store.set_peer_key(session.peer_identity, session.peer_public_key)

        self.conversation = conversation
        return conversation

    async def close_conversation(self) -> None:
        """Close the open conversation, if any."""
        conversation, self.conversation = self.conversation, None
        if conversation is not None:
            await conversation.close()

    async def close(self) -> None:
        """Close the conversation and release the HTTP client."""
        await self.close_conversation()
        if self._owns_store and isinstance(self._store, MessageStoreClient):
            await self._store.aclose()
            self._store = None

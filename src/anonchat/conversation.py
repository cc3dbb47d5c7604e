"""
AnonChat - Conversation synchronization.

Created for the AnonChat client.

A ConversationSync owns the ordered message list of one open conversation.
It merges two sources:

1. A one-shot history fetch from the message store, decrypted in full
   before anything else is shown.
2. The live feed, subscribed only after the history list is materialized,
   whose items are appended in arrival order.

The message id is the only deduplication key: the feed may redeliver items
already fetched as history, and the echo of our own send arrives through
the feed as well. Once an id is in the list it is never removed, replaced
or reordered.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from .api import FeedSource, MessageStore, Subscription
from .errors import CryptoError, ErrorCode, SyncError
from .message import Message
from .payload import PayloadCodec
from .session import SessionState
from .sync_state import SyncEvent, SyncState, SyncStateMachine

logger = logging.getLogger(__name__)


class ConversationSync:
    """
    Ordered, de-duplicated, decrypted view of one conversation.

    Lifecycle: IDLE -> LOADING -> LIVE -> CLOSED (see sync_state).
    """

    def __init__(
        self,
        session: SessionState,
        store: MessageStore,
        feed: FeedSource,
        codec: Optional[PayloadCodec] = None,
    ):
        """
        Initialize a conversation.

        Args:
            session: Identities and keys resolved by SessionPolicy
            store: Message store used for history and sends
            feed: Live feed source
            codec: Payload codec (a fresh one by default)
        """
        self.session = session
        self.store = store
        self.feed = feed
        self.codec = codec or PayloadCodec()
        self.fsm = SyncStateMachine()

        self._messages: List[Message] = []
        self._ids: Set[str] = set()
        # Ids that failed to decrypt; redeliveries would fail identically
        self._rejected: Dict[str, CryptoError] = {}
        self._failed: List[Tuple[Message, CryptoError]] = []
        self._subscription: Optional[Subscription] = None

        # Called after every append (history items excluded)
        self.on_message: Optional[Callable[[Message], None]] = None

    async def __aenter__(self) -> "ConversationSync":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def state(self) -> SyncState:
        return self.fsm.get_state()

    @property
    def local_identity(self) -> str:
        return self.session.local_identity

    @property
    def peer_identity(self) -> str:
        return self.session.peer_identity

    @property
    def encryption_active(self) -> bool:
        return self.session.encryption_active

    @property
    def messages(self) -> Tuple[Message, ...]:
        """Snapshot of the ordered message list."""
        return tuple(self._messages)

    @property
    def failed_messages(self) -> Tuple[Tuple[Message, CryptoError], ...]:
        """Messages that could not be decrypted, with the error for each."""
        return tuple(self._failed)

    def _decrypt(self, message: Message) -> Message:
        plaintext = self.codec.decrypt_if_applicable(
            message.payload, self.session.local_private_key, self.session.peer_public_key
        )
        return message.with_payload(plaintext)

    def _reject(self, message: Message, error: CryptoError) -> None:
        logger.error(f"Could not decrypt message {message.id}: {error}")
        self._rejected[message.id] = error
        self._failed.append((message, error))

    async def _open_history_item(self, message: Message) -> Optional[Message]:
        try:
            return self._decrypt(message)
        except CryptoError as e:
            self._reject(message, e)
            return None

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        self._ids.add(message.id)

    def _notify(self, message: Message) -> None:
        if self.on_message:
            try:
                self.on_message(message)
            except Exception as e:
                logger.error(f"Error in message callback: {e}", exc_info=True)

    async def start(self) -> List[Message]:
        """
        Load history and go live.

        Fetches the full history for the identity pair, decrypts every item,
        materializes the ordered list and only then subscribes to the live
        feed.

        Returns:
            The ordered, decrypted history

        Raises:
            SyncError: If the history fetch fails (nothing is kept) or the
                conversation was already started
        """
        if not self.fsm.transition(SyncEvent.START_REQUESTED):
            raise SyncError(
                f"Conversation cannot start from state {self.state.name}",
                code=ErrorCode.E211_INVALID_STATE,
            )

        logger.info(f"Loading conversation {self.local_identity} <-> {self.peer_identity}")
        try:
            raw = await self.store.fetch_history(self.local_identity, self.peer_identity)
        except SyncError:
            self.fsm.transition(SyncEvent.HISTORY_FAILED)
            raise
        except Exception as e:
            self.fsm.transition(SyncEvent.HISTORY_FAILED)
            raise SyncError(f"Failed to load conversation history: {e}") from e

        # Items are independent; gather keeps the original fetch order
        opened = await asyncio.gather(*(self._open_history_item(m) for m in raw))

        if self.fsm.is_closed():
            logger.debug("Conversation closed while loading; discarding history")
            return []

        for message in opened:
            if message is not None and message.id not in self._ids:
                self._append(message)

        self.fsm.transition(SyncEvent.HISTORY_LOADED)
        self._subscription = self.feed.subscribe(self.local_identity, self.on_incoming)
        logger.info(
            f"Conversation live with {len(self._messages)} messages "
            f"(encryption {'on' if self.encryption_active else 'off'})"
        )
        return list(self._messages)

    def on_incoming(self, message: Message) -> Optional[Message]:
        """
        Fold one live feed item into the list.

        Filters, in order: conversation closed or not live, relevance to the
        identity pair (either direction), duplicate id. Surviving items are
        decrypted and appended.

        Returns:
            The appended (decrypted) message, or None if it was suppressed
        """
        if not self.fsm.is_live():
            logger.debug(f"Ignoring feed message in state {self.state.name}")
            return None
        if not message.involves(self.local_identity, self.peer_identity):
            return None
        if message.id in self._ids or message.id in self._rejected:
            logger.debug(f"Suppressing duplicate message {message.id}")
            return None

        try:
            decrypted = self._decrypt(message)
        except CryptoError as e:
            self._reject(message, e)
            return None

        self._append(decrypted)
        self._notify(decrypted)
        return decrypted

    async def send(self, plaintext: str) -> Message:
        """
        Send a message to the peer.

        The text is encrypted when the session has both keys, handed to the
        message store, and appended under the server-assigned id with the
        original plaintext. A feed echo with the same id is suppressed later.

        Returns:
            The created message carrying the plaintext

        Raises:
            ValueError: If the text is blank
            SyncError: If the conversation is not live
            SendError: If the message store rejects the message
        """
        if not plaintext.strip():
            raise ValueError("Cannot send an empty message")
        if not self.fsm.is_live():
            raise SyncError(
                f"Cannot send in state {self.state.name}", code=ErrorCode.E211_INVALID_STATE
            )

        payload = self.codec.encrypt_if_applicable(
            plaintext, self.session.local_private_key, self.session.peer_public_key
        )
        created = await self.store.create_message(self.local_identity, self.peer_identity, payload)
        record = created.with_payload(plaintext)

        if not self.fsm.is_live():
            logger.debug(f"Send of {created.id} completed after close; not appending")
            return record
        if created.id not in self._ids:
            self._append(record)
            self._notify(record)
        return record

    async def close(self) -> None:
        """Release the live feed. Safe to call more than once."""
        self.fsm.transition(SyncEvent.CLOSE_REQUESTED)
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()
            logger.info(f"Conversation with {self.peer_identity} closed")

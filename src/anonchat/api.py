"""
AnonChat - Message store client and live feed.

Created for the AnonChat client.

The message store is an HTTP service:
- GET  /messages?sender_id=..&recipient_id=..  -> conversation history
- POST /messages                               -> create a message
- WS   /ws?user_id=..                          -> push channel of every
                                                  message to or from user_id

The core treats these through two small protocols (MessageStore and
FeedSource) so a conversation can run against in-memory fakes in tests.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .constants import (
    CONNECT_TIMEOUT,
    DEFAULT_SERVER_URL,
    MESSAGES_PATH,
    REQUEST_TIMEOUT,
    WEBSOCKET_PATH,
)
from .errors import NetworkError, SendError, SyncError
from .message import Message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], Union[None, Awaitable[None]]]


class MessageStore(Protocol):
    """Request/response side of the message store."""

    async def fetch_history(self, local_identity: str, peer_identity: str) -> List[Message]:
        ...

    async def create_message(
        self, sender_identity: str, recipient_identity: str, payload: str
    ) -> Message:
        ...


class FeedSource(Protocol):
    """Push side of the message store."""

    def subscribe(self, local_identity: str, on_message: MessageCallback) -> "Subscription":
        ...


class Subscription:
    """
    Handle for a live feed listener.

    close() stops delivery deterministically: once it returns, the callback
    is never invoked again. Closing twice is harmless.
    """

    def __init__(self, task: Optional["asyncio.Task"] = None):
        self._task = task
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, task: "asyncio.Task") -> None:
        """Bind the listener task driving this subscription."""
        self._task = task

    async def close(self) -> None:
        """Cancel the listener and wait for it to finish."""
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug("Live feed subscription closed")


async def _invoke(callback: MessageCallback, message: Message) -> None:
    """Run a sync or async callback."""
    result = callback(message)
    if asyncio.iscoroutine(result):
        await result


class MessageStoreClient:
    """Async HTTP client for the message store."""

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            base_url: Message store base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "MessageStoreClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self.client.aclose()

    async def fetch_history(self, local_identity: str, peer_identity: str) -> List[Message]:
        """
        Fetch every message exchanged between two identities.

        Raises:
            SyncError: If the request fails or the body is malformed
        """
        params = {"sender_id": local_identity, "recipient_id": peer_identity}
        try:
            response = await self.client.get(MESSAGES_PATH, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"History fetch rejected: {status}")
            raise SyncError(f"get dialog: {status}", {"status": status}) from e
        except httpx.HTTPError as e:
            logger.warning(f"History fetch failed: {e}")
            raise SyncError(f"get dialog: {e}") from e
        except ValueError as e:
            raise SyncError("get dialog: response is not JSON") from e

        # An empty conversation may come back as null
        if data is None:
            return []
        if not isinstance(data, list):
            raise SyncError("get dialog: expected a list of messages")
        try:
            return [Message.from_dict(item) for item in data]
        except NetworkError as e:
            raise SyncError(f"get dialog: {e.message}", e.details) from e

    async def create_message(
        self, sender_identity: str, recipient_identity: str, payload: str
    ) -> Message:
        """
        Store an outgoing message and return the created record.

        Raises:
            SendError: If the request fails or the body is malformed
        """
        body = {
            "sender_id": sender_identity,
            "recipient_id": recipient_identity,
            "payload": payload,
        }
        try:
            response = await self.client.post(MESSAGES_PATH, json=body)
            response.raise_for_status()
            return Message.from_dict(response.json())
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"Send rejected: {status}")
            raise SendError(f"send: {status}", {"status": status}) from e
        except httpx.HTTPError as e:
            logger.warning(f"Send failed: {e}")
            raise SendError(f"send: {e}") from e
        except ValueError as e:
            raise SendError("send: response is not JSON") from e
        except NetworkError as e:
            raise SendError(f"send: {e.message}", e.details) from e


def websocket_url(base_url: str, local_identity: str) -> str:
    """Build the live feed URL for an identity from the HTTP base URL."""
    url = httpx.URL(base_url)
    scheme = "wss" if url.scheme == "https" else "ws"
    ws_url = url.copy_with(scheme=scheme, path=WEBSOCKET_PATH)
    return str(ws_url.copy_set_param("user_id", local_identity))


def decode_frame(frame: Any) -> Optional[Message]:
    """Decode one feed frame; malformed frames yield None."""
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        return Message.from_dict(json.loads(frame))
    except (ValueError, TypeError, NetworkError):
        return None


class LiveFeed:
    """WebSocket push channel from the message store."""

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        reconnect_delay: Optional[float] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        """
        Initialize feed.

        Args:
            base_url: Message store base URL (http/https)
            reconnect_delay: Seconds to wait before reconnecting after the
                connection drops; None disables reconnection
            connect: WebSocket connect factory
        """
        self.base_url = base_url
        self.reconnect_delay = reconnect_delay
        self._connect = connect

    def subscribe(self, local_identity: str, on_message: MessageCallback) -> Subscription:
        """
        Start listening for messages to or from local_identity.

        Must be called from a running event loop. Every decoded message is
        handed to on_message in delivery order; relevance filtering is the
        consumer's job.
        """
        subscription = Subscription()
        task = asyncio.get_running_loop().create_task(
            self._listen(websocket_url(self.base_url, local_identity), on_message, subscription)
        )
        subscription.attach(task)
        return subscription

    async def _listen(
        self, url: str, on_message: MessageCallback, subscription: Subscription
    ) -> None:
        """Background task receiving frames until the subscription closes."""
        logger.debug(f"Live feed listener started: {url}")
        try:
            while not subscription.closed:
                try:
                    async with self._connect(url) as ws:
                        logger.info("Live feed connected")
                        async for frame in ws:
                            if subscription.closed:
                                break
                            message = decode_frame(frame)
                            if message is None:
                                logger.debug("Dropping malformed feed frame")
                                continue
                            try:
                                await _invoke(on_message, message)
                            except Exception as e:
                                logger.error(f"Error in feed callback: {e}", exc_info=True)
                except ConnectionClosed as e:
                    logger.warning(f"Live feed connection closed: {e}")
                except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
                    logger.warning(f"Live feed connection failed: {e}")

                if subscription.closed or self.reconnect_delay is None:
                    break
                await asyncio.sleep(self.reconnect_delay)
        finally:
            logger.debug("Live feed listener ended")

"""
Pytest configuration and fixtures for AnonChat tests.

Provides temporary directories, key pairs and in-memory stand-ins for the
message store and the live feed.
"""

import itertools
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator, List, Optional, Tuple

import pytest

from anonchat import crypto
from anonchat.api import Subscription
from anonchat.message import Message


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="anonchat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def alice_keys() -> crypto.KeyPair:
    return crypto.KeyPair()


@pytest.fixture
def bob_keys() -> crypto.KeyPair:
    return crypto.KeyPair()


_message_ids = itertools.count(1)


def make_message(
    sender: str,
    recipient: str,
    payload: str,
    message_id: Optional[str] = None,
    created_at: str = "2025-01-01T12:00:00Z",
) -> Message:
    """Build a Message with a unique id unless one is given."""
    if message_id is None:
        message_id = f"m{next(_message_ids)}"
    return Message(message_id, sender, recipient, payload, created_at)


class FakeMessageStore:
    """In-memory message store.

    fetch_history returns the stored messages for the identity pair;
    create_message assigns increasing ids and records what was sent.
    """

    def __init__(self, history: Optional[List[Message]] = None):
        self.history: List[Message] = list(history or [])
        self.sent: List[Message] = []
        self.fetch_calls: List[Tuple[str, str]] = []
        self.fetch_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self._ids = itertools.count(1000)

    async def fetch_history(self, local_identity: str, peer_identity: str) -> List[Message]:
        self.fetch_calls.append((local_identity, peer_identity))
        if self.fetch_error is not None:
            raise self.fetch_error
        return [m for m in self.history if m.involves(local_identity, peer_identity)]

    async def create_message(
        self, sender_identity: str, recipient_identity: str, payload: str
    ) -> Message:
        if self.send_error is not None:
            raise self.send_error
        message = make_message(
            sender_identity, recipient_identity, payload, message_id=str(next(self._ids))
        )
        self.sent.append(message)
        self.history.append(message)
        return message


class FakeFeed:
    """In-memory live feed; deliver() pushes a message to open subscriptions."""

    def __init__(self):
        self.subscriptions: List[Tuple[str, Callable, Subscription]] = []

    def subscribe(self, local_identity: str, on_message: Callable) -> Subscription:
        subscription = Subscription()
        self.subscriptions.append((local_identity, on_message, subscription))
        return subscription

    @property
    def open_subscriptions(self) -> int:
        return sum(1 for _, _, sub in self.subscriptions if not sub.closed)

    def deliver(self, message: Message) -> list:
        """Hand a message to every open subscription; returns callback results."""
        return [
            callback(message)
            for _, callback, subscription in self.subscriptions
            if not subscription.closed
        ]


@pytest.fixture
def store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def message_factory() -> Callable[..., Message]:
    return make_message


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

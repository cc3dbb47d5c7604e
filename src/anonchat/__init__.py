"""
AnonChat - Messenger client with optional end-to-end encryption

Messages go through a shared message store; when both sides have
exchanged public keys, payloads are encrypted with ECDH P-256 and
AES-256-GCM so the store only ever sees ciphertext.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .conversation import ConversationSync
from .errors import (
    AnonChatError,
    AuthenticationError,
    ConfigError,
    CryptoError,
    ErrorCode,
    IdentityError,
    KeyFormatError,
    MissingKeyPairError,
    NetworkError,
    PayloadFormatError,
    SendError,
    StorageError,
    SyncError,
)
from .message import Message
from .payload import EncryptedPayload, PayloadCodec, Plaintext, parse_payload
from .session import SessionPolicy, SessionState

__all__ = [
    "APP_NAME",
    "VERSION",
    "AnonChatError",
    "AuthenticationError",
    "Config",
    "ConfigError",
    "ConversationSync",
    "CryptoError",
    "EncryptedPayload",
    "ErrorCode",
    "IdentityError",
    "KeyFormatError",
    "Message",
    "MissingKeyPairError",
    "NetworkError",
    "PayloadCodec",
    "PayloadFormatError",
    "Plaintext",
    "SendError",
    "SessionPolicy",
    "SessionState",
    "StorageError",
    "SyncError",
    "__license__",
    "__version__",
    "parse_payload",
]

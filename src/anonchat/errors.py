"""
AnonChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the AnonChat client. Each error has a unique code for logging and debugging.

Author: anonchat contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all AnonChat error codes."""

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E108_KEY_DERIVATION_FAILED = "E108"
    E109_INVALID_PAYLOAD = "E109"
    E110_AUTHENTICATION_FAILED = "E110"

    # Network Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E204_SEND_FAILED = "E204"
    E206_INVALID_MESSAGE = "E206"
    E210_HISTORY_FETCH_FAILED = "E210"
    E211_INVALID_STATE = "E211"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E306_KEYPAIR_MISSING = "E306"

    # Storage Errors (E400-E499)
    E400_STORAGE_ERROR = "E400"
    E403_STORAGE_LOAD_FAILED = "E403"
    E404_STORAGE_SAVE_FAILED = "E404"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class AnonChatError(Exception):
    """Base exception class for all AnonChat errors.

    All custom exceptions in AnonChat inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize an AnonChat error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(AnonChatError):
    """Exception raised for cryptographic operation failures.

    This includes key handling, encryption, decryption and key agreement.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyFormatError(CryptoError):
    """Key material is malformed or uses an unsupported curve."""

    def __init__(
        self,
        message: str = "Malformed or unsupported key material",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E103_INVALID_KEY, message, details)


class PayloadFormatError(CryptoError):
    """A wire payload is not a well-formed encrypted envelope."""

    def __init__(
        self,
        message: str = "Invalid encrypted payload",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E109_INVALID_PAYLOAD, message, details)


class AuthenticationError(CryptoError):
    """Authenticated decryption rejected the ciphertext.

    Raised for tampered or corrupted ciphertext and for a key mismatch.
    Retrying with the same inputs reproduces the failure.
    """

    def __init__(
        self,
        message: str = "Message authentication failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E110_AUTHENTICATION_FAILED, message, details)


class IdentityError(AnonChatError):
    """Exception raised for local identity and key pair failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MissingKeyPairError(IdentityError):
    """Encryption was requested but no local key pair exists.

    User-correctable: generate or import a key pair and try again.
    """

    def __init__(
        self,
        message: str = "Create an encryption key pair first",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E306_KEYPAIR_MISSING, message, details)


class NetworkError(AnonChatError):
    """Exception raised for message store and live feed failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SyncError(NetworkError):
    """History could not be fetched, or the conversation is not live."""

    def __init__(
        self,
        message: str = "Failed to load conversation history",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E210_HISTORY_FETCH_FAILED,
    ):
        super().__init__(code, message, details)


class SendError(NetworkError):
    """The message store rejected or did not receive an outgoing message."""

    def __init__(
        self,
        message: str = "Failed to send message",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E204_SEND_FAILED, message, details)


class StorageError(AnonChatError):
    """Exception raised for local persistence failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_STORAGE_ERROR,
        message: str = "Storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(AnonChatError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
